"""
Bundled HIV treatment datasets with a known average treatment effect.

All three scenarios share the same story: ``a0``/``a1`` indicate
antiretroviral treatment at two clinic visits, ``z0``/``z1`` (or ``z``) are
viral-load indicators measured before each decision, and ``y`` is the CD4
count measured after the last visit. The true ATE of always versus never
treating is ``TRUE_EFFECT`` in every scenario.
"""
from __future__ import annotations

import numpy as np
import pandas as pd

from .design import StudyDesign
from ._rng import as_generator

TRUE_EFFECT = 50.0

_DEFAULT_SEED = 2024


def static_table() -> pd.DataFrame:
    """
    Single-visit aggregated table: ``n`` patients per (z, a) stratum with
    mean CD4 count ``y``. High viral load (``z=1``) makes treatment more
    likely and lowers CD4, so the naive comparison is confounded.
    """
    return pd.DataFrame({
        "z": [0, 0, 1, 1],
        "a": [0, 1, 0, 1],
        "y": [100.0, 150.0, 80.0, 130.0],
        "n": [300, 200, 150, 350],
    })


def static_design() -> StudyDesign:
    design = StudyDesign(outcome="y", count="n")
    design.period(0).measures("z").treats("a")
    return design


def time_varying_table() -> pd.DataFrame:
    """
    Two-visit aggregated table with a time-varying confounder.

    ``z0`` is the same for everyone. Treatment at the first visit halves the
    chance of high viral load at the second (``P(z1=1)`` is 0.5 untreated,
    0.25 treated), and high viral load at the second visit makes treatment
    more likely and lowers CD4. Stratum means follow
    ``y = 100 + 20·a0 + 25·a1 - 20·z1``.
    """
    return pd.DataFrame({
        "z0": [0, 0, 0, 0, 0, 0, 0, 0],
        "a0": [0, 0, 0, 0, 1, 1, 1, 1],
        "z1": [0, 0, 1, 1, 0, 0, 1, 1],
        "a1": [0, 1, 0, 1, 0, 1, 0, 1],
        "y":  [100.0, 125.0, 80.0, 105.0, 120.0, 145.0, 100.0, 125.0],
        "n":  [40_000, 10_000, 25_000, 25_000, 37_500, 37_500, 5_000, 20_000],
    })


def time_varying_design(count: str | None = "n") -> StudyDesign:
    """Design for the two-visit scenarios; pass ``count=None`` for individual rows."""
    design = StudyDesign(outcome="y", count=count)
    design.period(0).measures("z0").treats("a0")
    design.period(1).measures("z1").treats("a1")
    return design


def simulate_nonlinear(
    n: int = 20_000,
    rng: np.random.Generator | int | None = None,
) -> pd.DataFrame:
    """
    Individual-level two-visit data with a continuous confounder and an
    outcome that is quadratic in it.

    Data-generating process::

        z0 = 0
        a0 ~ Bernoulli(0.5)
        z1 ~ Normal(2 - a0, 1)                  [treatment lowers viral load]
        a1 ~ Bernoulli(expit(z1 - 2))           [high viral load → treatment]
        y  ~ Normal(110 + 15·a0 + 20·a1 - 5·z1², 5)

    Since ``E[z1² | a0] = (2 - a0)² + 1``, ``E[y(1,1)] = 135`` and
    ``E[y(0,0)] = 85``: the true ATE is 50. A model linear in ``z1`` is
    misspecified; one with a ``z1²`` term is correct.
    """
    rng = as_generator(rng, _DEFAULT_SEED)
    a0 = rng.binomial(1, 0.5, size=n)
    z1 = 2.0 - a0 + rng.normal(size=n)
    a1 = rng.binomial(1, 1.0 / (1.0 + np.exp(-(z1 - 2.0))))
    y = 110.0 + 15.0 * a0 + 20.0 * a1 - 5.0 * z1 ** 2 + rng.normal(scale=5.0, size=n)
    return pd.DataFrame({"z0": np.zeros(n, dtype=int), "a0": a0, "z1": z1, "a1": a1, "y": y})
