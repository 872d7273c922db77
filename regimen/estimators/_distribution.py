from __future__ import annotations

import numpy as np
import pandas as pd
import statsmodels.api as sm

from ..design import StudyDesign
from ..models import additive_formula, fit_glm
from .._logging import logger

# Confounders with more distinct values than this are treated as continuous:
# they cannot be standardized over empirically.
_MAX_LEVELS = 50


# ── Empirical (nonparametric) conditional quantities ──────────────────────────

def _match(data: pd.DataFrame, conditions: dict) -> np.ndarray:
    mask = np.ones(len(data), dtype=bool)
    for column, value in conditions.items():
        mask &= data[column].to_numpy() == value
    return mask


def empirical_probability(
    data: pd.DataFrame,
    weights: np.ndarray,
    column: str,
    value,
    conditions: dict,
) -> float:
    """
    ``P(column = value | conditions)`` as a ratio of weighted counts.

    Returns ``NaN`` when no weight falls in the conditioning group: the
    probability is undefined (0/0), which is not the same as a genuine zero.
    """
    mask = _match(data, conditions)
    denominator = weights[mask].sum()
    if denominator == 0:
        return float("nan")
    numerator = weights[mask & (data[column].to_numpy() == value)].sum()
    return float(numerator / denominator)


def empirical_mean(
    data: pd.DataFrame,
    weights: np.ndarray,
    column: str,
    conditions: dict,
) -> float:
    """Weighted mean of ``column`` among rows matching ``conditions``; ``NaN`` if none."""
    mask = _match(data, conditions)
    denominator = weights[mask].sum()
    if denominator == 0:
        return float("nan")
    return float(np.dot(weights[mask], data.loc[mask, column].to_numpy(dtype=float)) / denominator)


def conditional_table(
    data: pd.DataFrame,
    weights: np.ndarray,
    column: str,
    history: list[str],
) -> pd.DataFrame:
    """
    Empirical distribution of ``column`` within every observed ``history``
    group: one row per (history, value) with its weighted ``count`` and
    ``probability``. Groups with zero total weight get ``NaN`` probabilities.
    """
    frame = data[history + [column]].assign(count=weights)
    if history:
        table = frame.groupby(history + [column], as_index=False)["count"].sum()
        totals = table.groupby(history)["count"].transform("sum")
    else:
        table = frame.groupby([column], as_index=False)["count"].sum()
        totals = table["count"].sum()
    table["probability"] = table["count"] / totals
    return table


def support(data: pd.DataFrame, weights: np.ndarray, column: str) -> list:
    """Sorted values of ``column`` observed with positive weight."""
    values = np.unique(data.loc[weights > 0, column].to_numpy())
    if len(values) > _MAX_LEVELS:
        raise ValueError(
            f"Confounder '{column}' takes {len(values)} distinct values; "
            f"empirical standardization needs a discrete confounder "
            f"(at most {_MAX_LEVELS} levels). Use ParametricGFormula instead."
        )
    return values.tolist()


def is_discrete(data: pd.DataFrame, columns: list[str]) -> bool:
    """``True`` when every column has few enough levels to standardize over."""
    return all(data[c].nunique() <= _MAX_LEVELS for c in columns)


def varying(data: pd.DataFrame, weights: np.ndarray, columns: list[str]) -> list[str]:
    """Columns that take more than one value among rows with positive weight."""
    observed = data.loc[weights > 0]
    return [c for c in columns if observed[c].nunique() > 1]


def is_binary(series: pd.Series) -> bool:
    return set(series.dropna().unique()) <= {0, 1}


# ── Parametric confounder models ──────────────────────────────────────────────

class ConfounderModel:
    """
    Fitted joint distribution of the confounders given past treatment.

    Baseline confounders (measured before the first treatment) are resampled
    from their weighted empirical joint distribution. Every later confounder
    gets a GLM on its history: Binomial (logit link) for 0/1 columns, Gaussian
    otherwise, whose residual scale is used when drawing values. ``formulas``
    maps a confounder to a custom patsy formula.
    """

    def __init__(self, design: StudyDesign, formulas: dict[str, str] | None = None) -> None:
        self._design = design
        self._formulas = dict(formulas or {})
        self._fits: dict[str, tuple] = {}
        self._baseline: pd.DataFrame | None = None
        self._baseline_p: np.ndarray | None = None

    @property
    def fits(self) -> dict:
        """Fitted statsmodels results keyed by confounder."""
        return {c: fit for c, (fit, _, _) in self._fits.items()}

    def fit(self, data: pd.DataFrame, weights: np.ndarray) -> ConfounderModel:
        design = self._design
        baseline = design.baseline_confounders

        self._baseline = data[baseline].reset_index(drop=True)
        self._baseline_p = weights / weights.sum()

        for column in design.confounders:
            if column in baseline:
                continue
            formula = self._formulas.get(column) or additive_formula(
                column, varying(data, weights, design.history(column))
            )
            binary = is_binary(data[column])
            family = sm.families.Binomial() if binary else sm.families.Gaussian()
            result = fit_glm(formula, data, family, weights)
            sigma = 0.0 if binary else float(np.sqrt(result.scale))
            self._fits[column] = (result, binary, sigma)
            logger.debug(
                f"Confounder model for '{column}': {formula} "
                f"({'logit' if binary else f'gaussian, sigma={sigma:.4f}'})"
            )
        return self

    def simulate(self, regime: tuple[int, ...], n: int, rng: np.random.Generator) -> pd.DataFrame:
        """
        Draw ``n`` confounder trajectories with every treatment held at
        ``regime``. Columns are filled in time order so each draw conditions
        only on already simulated history.
        """
        if self._baseline is None:
            raise RuntimeError("Call fit() before simulate().")
        design = self._design
        idx = rng.choice(len(self._baseline), size=n, p=self._baseline_p)
        sim = self._baseline.iloc[idx].reset_index(drop=True)
        treatment_values = dict(zip(design.treatments, regime))

        for column in design.columns:
            if column in treatment_values:
                sim[column] = treatment_values[column]
            elif column in self._fits:
                result, binary, sigma = self._fits[column]
                mean = np.asarray(result.predict(sim), dtype=float)
                if binary:
                    sim[column] = rng.binomial(1, np.clip(mean, 0.0, 1.0))
                else:
                    sim[column] = mean + rng.normal(0.0, sigma, size=n)
        return sim
