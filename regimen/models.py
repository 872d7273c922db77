"""
Outcome and nuisance models used by the estimators.

Every estimator talks to regression libraries through the small
``OutcomeModel`` interface (``fit(data, weights)`` / ``predict(data)``), so
statsmodels formulas and scikit-learn ensembles are interchangeable in the
parametric g-formula and the model-comparison harness. Weights are passed
straight to the library (``freq_weights`` / ``sample_weight``); aggregated
tables are never expanded to one row per unit.
"""
from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from sklearn.ensemble import RandomForestRegressor
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationWarning

from ._exceptions import ModelFitError
from ._logging import logger


def fit_glm(
    formula: str,
    data: pd.DataFrame,
    family,
    weights: np.ndarray | None = None,
):
    """
    Fit a statsmodels GLM with optional frequency weights.

    Any failure (bad formula, singular design, perfect separation, IRLS that
    does not converge, non-finite coefficients) is raised as ``ModelFitError``
    with the original exception chained.
    """
    logger.debug(f"Fitting GLM {formula!r} ({family.__class__.__name__}) on {len(data)} rows")
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", PerfectSeparationWarning)
            warnings.simplefilter("error", ConvergenceWarning)
            result = smf.glm(
                formula, data=data, family=family,
                freq_weights=None if weights is None else np.asarray(weights, dtype=float),
            ).fit()
    except Exception as exc:
        raise ModelFitError(f"Could not fit {formula!r}: {exc}") from exc

    if not np.all(np.isfinite(np.asarray(result.params))):
        raise ModelFitError(f"Fit of {formula!r} produced non-finite coefficients.")
    return result


class OutcomeModel:
    """
    Fit/predict interface for an outcome regression.

    Subclasses implement ``fit(data, weights, rng)`` returning ``self`` and
    ``predict(data)`` returning a 1-D array of expected outcomes. ``rng`` is
    only consulted by models with internal randomness.
    """

    name = "model"

    def fit(
        self,
        data: pd.DataFrame,
        weights: np.ndarray | None = None,
        rng: np.random.Generator | None = None,
    ) -> OutcomeModel:
        raise NotImplementedError

    def predict(self, data: pd.DataFrame) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name})"


class FormulaRegression(OutcomeModel):
    """
    Least-squares outcome model given as a patsy formula, fitted as a
    Gaussian GLM with frequency weights.

    Covers ordinary linear regression (``"y ~ a0 + z1 + a1"``) and polynomial
    terms (``"y ~ a0 + a1 + z1 + I(z1**2)"``).
    """

    def __init__(self, formula: str) -> None:
        if "~" not in formula:
            raise ValueError(f"Formula {formula!r} must have the form 'outcome ~ terms'.")
        self._formula = formula
        self._result = None
        self.name = formula

    @property
    def formula(self) -> str:
        return self._formula

    @property
    def statsmodels_result(self):
        """The fitted statsmodels result, or ``None`` before ``fit()``."""
        return self._result

    def fit(self, data, weights=None, rng=None) -> FormulaRegression:
        self._result = fit_glm(self._formula, data, sm.families.Gaussian(), weights)
        return self

    def predict(self, data: pd.DataFrame) -> np.ndarray:
        if self._result is None:
            raise RuntimeError("Call fit() before predict().")
        return np.asarray(self._result.predict(data), dtype=float)


class RandomForestRegression(OutcomeModel):
    """
    Random-forest outcome model backed by scikit-learn.

    ``features`` are the predictor columns, ``outcome`` the target. Extra
    keyword arguments go to ``RandomForestRegressor``. When no
    ``random_state`` is given, one is drawn from the generator passed to
    ``fit()`` so results stay reproducible without a global seed.
    """

    def __init__(self, outcome: str, features: list[str], **params) -> None:
        if not features:
            raise ValueError("RandomForestRegression needs at least one feature.")
        self._outcome = outcome
        self._features = list(features)
        self._params = {"n_estimators": 200, "min_samples_leaf": 5, **params}
        self._forest = None
        self.name = f"random forest ({', '.join(self._features)})"

    @property
    def forest(self):
        """The fitted ``RandomForestRegressor``, or ``None`` before ``fit()``."""
        return self._forest

    def fit(self, data, weights=None, rng=None) -> RandomForestRegression:
        params = dict(self._params)
        if "random_state" not in params and rng is not None:
            params["random_state"] = int(rng.integers(0, 2**31 - 1))
        logger.debug(f"Fitting random forest on {len(data)} rows with {params}")
        try:
            self._forest = RandomForestRegressor(**params).fit(
                data[self._features].to_numpy(dtype=float),
                data[self._outcome].to_numpy(dtype=float),
                sample_weight=None if weights is None else np.asarray(weights, dtype=float),
            )
        except Exception as exc:
            raise ModelFitError(f"Could not fit random forest: {exc}") from exc
        return self

    def predict(self, data: pd.DataFrame) -> np.ndarray:
        if self._forest is None:
            raise RuntimeError("Call fit() before predict().")
        return self._forest.predict(data[self._features].to_numpy(dtype=float))


def additive_formula(target: str, terms: list[str]) -> str:
    """``target ~ t1 + t2 + ...``, or an intercept-only formula with no terms."""
    rhs = " + ".join(terms) if terms else "1"
    return f"{target} ~ {rhs}"
