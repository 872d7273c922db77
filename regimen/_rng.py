from __future__ import annotations

import numpy as np


def as_generator(rng: np.random.Generator | int | None, default_seed: int) -> np.random.Generator:
    """
    Normalise a generator argument. ``None`` gives a fresh generator seeded
    with ``default_seed``; an int is used as a seed; a ``Generator`` is used
    as-is and advanced by the caller's draws.
    """
    if rng is None:
        return np.random.default_rng(default_seed)
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(int(rng))
