from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf

from ..design import StudyDesign
from ..models import additive_formula, fit_glm
from .._exceptions import ModelFitError
from .._logging import logger
from .._rng import as_generator
from ..refutations._check import Assumption
from ._distribution import varying
from .gformula import _BOOTSTRAP_N, _BOOTSTRAP_SEED, _naive_effect, _resample_weights

IPW_ASSUMPTIONS: list[Assumption] = [
    Assumption("Sequential exchangeability: no unmeasured confounding of any treatment decision", testable=False),
    Assumption("Positivity: every treatment is possible within every observed history", testable=True),
    Assumption("Correct specification of the treatment models", testable=True),
    Assumption("Correct specification of the marginal structural model", testable=False),
    Assumption("Stable Unit Treatment Value Assumption (SUTVA)", testable=False),
]

# Weights above this are reported as extreme.
_EXTREME_WEIGHT = 100.0

_METHODS = ("logit", "empirical")


# ── Private helpers (also imported by regimen/refutations/ipw.py) ─────────────

def _treatment_probabilities(
    data: pd.DataFrame,
    weights: np.ndarray,
    treatment: str,
    history: list[str],
    method: str,
    formula: str | None = None,
) -> np.ndarray:
    """``P(treatment = 1 | history)`` for every row, as a 1-D array."""
    if method == "empirical":
        a = data[treatment].to_numpy(dtype=float)
        if not history:
            return np.full(len(data), np.dot(weights, a) / weights.sum())
        frame = data[history].assign(_w=weights, _wa=weights * a)
        grouped = frame.groupby(history)
        total = grouped["_w"].transform("sum").to_numpy()
        treated = grouped["_wa"].transform("sum").to_numpy()
        with np.errstate(invalid="ignore", divide="ignore"):
            return treated / total

    formula = formula or additive_formula(treatment, varying(data, weights, history))
    result = fit_glm(formula, data, sm.families.Binomial(), weights)
    return np.asarray(result.predict(data), dtype=float)


def _observed_probability(data: pd.DataFrame, treatment: str, p_treated: np.ndarray) -> np.ndarray:
    """Probability of each row's observed treatment value."""
    a = data[treatment].to_numpy()
    return np.where(a == 1, p_treated, 1.0 - p_treated)


def _weighted_quantile(values: np.ndarray, weights: np.ndarray, q: float) -> float:
    order = np.argsort(values)
    cumulative = np.cumsum(weights[order]) / weights.sum()
    idx = min(int(np.searchsorted(cumulative, q)), len(values) - 1)
    return float(values[order][idx])


def _ipw(
    data: pd.DataFrame,
    weights: np.ndarray,
    design: StudyDesign,
    method: str,
    formulas: dict[str, str],
    stabilized: bool,
    truncate: float | None,
) -> tuple[np.ndarray, dict[str, np.ndarray]]:
    """
    Product over periods of inverse probabilities of the observed treatment.

    Returns the per-row weights and, per treatment, the per-period inverse
    probability weights ``1 / P(A_t = a_t | history)``. Rows with zero count get
    weight 0 throughout; their history may have no support at all.
    """
    denominator = np.ones(len(data))
    numerator = np.ones(len(data))
    per_period: dict[str, np.ndarray] = {}

    for t, treatment in enumerate(design.treatments):
        history = design.history(treatment)
        p = _treatment_probabilities(data, weights, treatment, history, method, formulas.get(treatment))
        observed = _observed_probability(data, treatment, p)
        with np.errstate(divide="ignore", invalid="ignore"):
            per_period[treatment] = np.where(weights > 0, 1.0 / observed, 0.0)
        denominator *= observed

        if stabilized:
            past = design.treatments[:t]
            p_marginal = _treatment_probabilities(data, weights, treatment, past, method)
            numerator *= _observed_probability(data, treatment, p_marginal)

    with np.errstate(divide="ignore", invalid="ignore"):
        w = numerator / denominator
    # Rows with no replication carry no information; keep them out of the fit.
    w = np.where(weights > 0, w, 0.0)

    if truncate is not None:
        positive = weights > 0
        lo = _weighted_quantile(w[positive], weights[positive], truncate)
        hi = _weighted_quantile(w[positive], weights[positive], 1.0 - truncate)
        w = np.where(positive, np.clip(w, lo, hi), 0.0)
        logger.debug(f"Weights truncated to [{lo:.4f}, {hi:.4f}]")

    if not np.all(np.isfinite(w)):
        raise ModelFitError(
            "Inverse probability weights are not finite: some observed treatment "
            "has estimated probability 0. Positivity is violated for this data."
        )
    return w, per_period


def _fit_msm(data: pd.DataFrame, formula: str, weights: np.ndarray):
    logger.debug(f"Fitting MSM {formula!r} by weighted least squares")
    try:
        result = smf.wls(formula, data=data, weights=weights).fit()
    except Exception as exc:
        raise ModelFitError(f"Could not fit marginal structural model {formula!r}: {exc}") from exc
    if not np.all(np.isfinite(np.asarray(result.params))):
        raise ModelFitError(f"Marginal structural model {formula!r} produced non-finite coefficients.")
    return result


def _predict_regime(msm, design: StudyDesign, regime: tuple[int, ...]) -> float:
    row = pd.DataFrame([dict(zip(design.treatments, regime))])
    return float(np.asarray(msm.predict(row))[0])


def _balance(
    data: pd.DataFrame,
    weights: np.ndarray,
    design: StudyDesign,
    per_period: dict[str, np.ndarray],
) -> pd.DataFrame:
    """
    Confounder means by treatment arm at each decision point, before and after
    weighting by that period's inverse probability weights.
    """
    rows = []
    for t, treatment in enumerate(design.treatments):
        a = data[treatment].to_numpy()
        w_t = weights * per_period[treatment]
        for confounder in design.history(treatment):
            if confounder not in design.confounders:
                continue
            z = data[confounder].to_numpy(dtype=float)
            raw = _arm_difference(z, a, weights)
            adjusted = _arm_difference(z, a, w_t)
            rows.append({
                "period": t,
                "treatment": treatment,
                "confounder": confounder,
                "mean_treated": adjusted[0],
                "mean_untreated": adjusted[1],
                "smd": adjusted[2],
                "raw_smd": raw[2],
            })
    return pd.DataFrame(rows, columns=[
        "period", "treatment", "confounder",
        "mean_treated", "mean_untreated", "smd", "raw_smd",
    ])


def _arm_difference(z: np.ndarray, a: np.ndarray, w: np.ndarray) -> tuple[float, float, float]:
    """Weighted arm means of ``z`` and their standardized mean difference."""
    stats = []
    for arm in (1, 0):
        mask = (a == arm) & (w > 0)
        if not mask.any():
            stats.append((float("nan"), float("nan")))
            continue
        mean = np.average(z[mask], weights=w[mask])
        var = np.average((z[mask] - mean) ** 2, weights=w[mask])
        stats.append((float(mean), float(var)))
    (m1, v1), (m0, v0) = stats
    pooled = np.sqrt((v1 + v0) / 2.0)
    diff = m1 - m0
    if pooled > 0:
        smd = diff / pooled
    else:
        smd = 0.0 if np.isclose(diff, 0.0) else float("inf")
    return m1, m0, float(smd)


# ── Result ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WeightSummary:
    """
    Distribution of the inverse probability weights, counting each row as
    many times as its replication count.

    Large ``max`` values or an ``effective_sample_size`` far below the
    sample size signal near-violations of positivity.
    """

    mean: float
    std: float
    min: float
    max: float
    pseudo_population: float
    """Sum of count × weight: the size of the reweighted population."""
    effective_sample_size: float
    """Kish effective sample size, ``(Σ n·w)² / Σ n·w²``."""

    @classmethod
    def from_weights(cls, w: np.ndarray, counts: np.ndarray) -> WeightSummary:
        keep = counts > 0
        w, counts = w[keep], counts[keep]
        mean = float(np.average(w, weights=counts))
        std = float(np.sqrt(np.average((w - mean) ** 2, weights=counts)))
        total = float(np.dot(counts, w))
        ess = total ** 2 / float(np.dot(counts, w ** 2))
        return cls(mean, std, float(w.min()), float(w.max()), total, ess)

    def __str__(self) -> str:
        return (
            f"mean {self.mean:.4f}, sd {self.std:.4f}, "
            f"range [{self.min:.4f}, {self.max:.4f}], "
            f"pseudo-population {self.pseudo_population:,.1f}, "
            f"ESS {self.effective_sample_size:,.1f}"
        )


class IPWResult:
    """
    The result of a marginal structural model fitted by inverse probability
    weighting.

    The MSM regresses the outcome on the treatment history only; the weights
    have already removed the confounders' influence. Potential outcomes are
    MSM predictions at each regime.
    """

    def __init__(
        self,
        msm,
        design: StudyDesign,
        weights: np.ndarray,
        counts: np.ndarray,
        per_period: dict[str, np.ndarray],
        balance: pd.DataFrame,
        naive_effect: float,
        bootstrap_effects: np.ndarray,
        stabilized: bool,
        truncate: float | None,
    ) -> None:
        self._msm = msm
        self._design = design
        self._weights = weights
        self._counts = counts
        self._per_period = per_period
        self._balance = balance
        self._naive_effect = naive_effect
        self._bootstrap_effects = bootstrap_effects
        self._stabilized = stabilized
        self._truncate = truncate

    @property
    def design(self) -> StudyDesign:
        return self._design

    def potential_outcome(self, regime) -> float:
        """MSM prediction of the mean outcome under ``regime``."""
        return _predict_regime(self._msm, self._design, self._design.validate_regime(regime))

    def contrast(self, regime_1, regime_0) -> float:
        """``potential_outcome(regime_1) - potential_outcome(regime_0)``."""
        return self.potential_outcome(regime_1) - self.potential_outcome(regime_0)

    @property
    def treated_mean(self) -> float:
        return self.potential_outcome(self._design.always_treated())

    @property
    def untreated_mean(self) -> float:
        return self.potential_outcome(self._design.never_treated())

    @property
    def effect(self) -> float:
        """ATE: always-treated minus never-treated MSM prediction."""
        return self.treated_mean - self.untreated_mean

    @property
    def naive_effect(self) -> float:
        """Observed mean outcome of always-treated minus never-treated units."""
        return self._naive_effect

    def bias(self, truth: float) -> float:
        """Estimated ATE minus a known true effect."""
        return self.effect - truth

    @property
    def std_err(self) -> float:
        """Bootstrap standard error of the ATE (``NaN`` without bootstrap)."""
        if len(self._bootstrap_effects) < 2:
            return float("nan")
        return float(np.std(self._bootstrap_effects, ddof=1))

    @property
    def conf_int(self) -> tuple[float, float]:
        """Bootstrap percentile 95% confidence interval."""
        if len(self._bootstrap_effects) < 2:
            return (float("nan"), float("nan"))
        return (
            float(np.percentile(self._bootstrap_effects, 2.5)),
            float(np.percentile(self._bootstrap_effects, 97.5)),
        )

    @property
    def pvalue(self) -> float:
        """Two-sided p-value for the ATE (``H0: ATE = 0``), via z-test."""
        import scipy.stats as _st
        se = self.std_err
        if not np.isfinite(se) or se == 0:
            return float("nan")
        return float(2.0 * _st.norm.sf(abs(self.effect) / se))

    @property
    def bootstrap_effects(self) -> np.ndarray:
        return self._bootstrap_effects.copy()

    @property
    def weights(self) -> np.ndarray:
        """Per-row inverse probability weights (before multiplying by counts)."""
        return self._weights.copy()

    @property
    def period_weights(self) -> dict[str, np.ndarray]:
        """
        Per-row ``1 / P(A_t = a_t | history)`` for each treatment; 0 for rows
        with zero count.
        """
        return {k: v.copy() for k, v in self._per_period.items()}

    @property
    def weight_summary(self) -> WeightSummary:
        return WeightSummary.from_weights(self._weights, self._counts)

    def balance(self) -> pd.DataFrame:
        """
        Confounder means by arm at each decision point after weighting, with
        weighted (``smd``) and unweighted (``raw_smd``) standardized mean
        differences.
        """
        return self._balance.copy()

    @property
    def statsmodels_result(self):
        """The underlying weighted least-squares MSM fit."""
        return self._msm

    @property
    def assumptions(self) -> list[Assumption]:
        """Modelling assumptions required for a causal interpretation."""
        return list(IPW_ASSUMPTIONS)

    def executive_summary(self) -> str:
        """Narrative explanation of the method, design, assumptions, and result."""
        from .._explain import explain_ipw
        return explain_ipw(self)

    def summary(self) -> str:
        d = self._design
        lo, hi = self.conf_int
        bias = self.naive_effect - self.effect
        ws = self.weight_summary
        kind = "stabilized" if self._stabilized else "unstabilized"
        if self._truncate is not None:
            kind += f", truncated at {self._truncate:.1%}/{1 - self._truncate:.1%}"

        lines = [
            "",
            f"IPW Marginal Structural Model: {', '.join(d.treatments)} → {d.outcome}",
            f"  Estimand: ATE, regimes {d.always_treated()} vs {d.never_treated()}",
            "─" * 54,
            f"  Treated mean         : {self.treated_mean:>10.4f}",
            f"  Untreated mean       : {self.untreated_mean:>10.4f}",
            f"  ATE estimate         : {self.effect:>10.4f}  (weighted for: {', '.join(d.confounders) or 'none'})",
            f"  Naive estimate       : {self.naive_effect:>10.4f}  (observed mean difference)",
            f"  Confounding bias     : {bias:>+10.4f}",
            "",
            f"  Std. error           : {self.std_err:>10.4f}  (bootstrap, N={len(self._bootstrap_effects)})",
            f"  95% CI               : [{lo:.4f}, {hi:.4f}]  (bootstrap percentile)",
            f"  p-value              : {self.pvalue:>10.4f}",
            "",
            f"  Weights ({kind})",
            f"    mean {ws.mean:.4f}   sd {ws.std:.4f}   min {ws.min:.4f}   max {ws.max:.4f}",
            f"    pseudo-population {ws.pseudo_population:,.1f}   ESS {ws.effective_sample_size:,.1f}",
            "",
            "  Assumptions",
            "  " + "┄" * 48,
        ]
        for a in IPW_ASSUMPTIONS:
            lines.append(f"  {a.fmt_tag()}  {a.name}")
        lines.append("")
        return "\n".join(lines)

    def refute(self, data: pd.DataFrame, max_weight: float = _EXTREME_WEIGHT):
        """
        Run refutation checks against this IPW estimation.

        Currently runs:

        - **Covariate balance**: every confounder's weighted standardized
          mean difference between arms should be below 0.1 at every
          decision point.
        - **Positivity**: no weight should exceed ``max_weight``.

        Parameters
        ----------
        data : pd.DataFrame
            The same dataframe passed to ``fit()``.
        """
        from ..refutations.ipw import (
            IPWRefutationReport,
            _check_covariate_balance,
            _check_positivity,
        )
        checks = [
            _check_covariate_balance(self._balance),
            _check_positivity(self._weights, self._counts, max_weight),
        ]
        return IPWRefutationReport(checks, self._design)

    def __repr__(self) -> str:
        return self.summary()


# ── Estimator ──────────────────────────────────────────────────────────────────

class InverseProbabilityWeighting:
    """
    Marginal structural model estimated by inverse probability weighting.

    For each decision point the probability of the observed treatment given
    its history is estimated, either by a logistic GLM (``method="logit"``,
    additive in the history unless ``treatment_formulas`` says otherwise) or
    by empirical cell proportions (``method="empirical"``). Each row is
    weighted by the reciprocal of the product of those probabilities, and a
    weighted least-squares regression of the outcome on the treatments alone
    (``msm_formula``, additive by default) gives the potential outcomes.

    Two optional adjustments are off by default: ``stabilized=True``
    multiplies by the probability of the observed treatment given past
    treatments only, and ``truncate=q`` clips weights to their ``q`` and
    ``1 - q`` quantiles.

    Example::

        result = InverseProbabilityWeighting(design).fit(df)
        print(result.summary())
        print(result.balance())
    """

    def __init__(
        self,
        design: StudyDesign,
        method: str = "logit",
        treatment_formulas: dict[str, str] | None = None,
        msm_formula: str | None = None,
        stabilized: bool = False,
        truncate: float | None = None,
        n_bootstrap: int = _BOOTSTRAP_N,
    ) -> None:
        if method not in _METHODS:
            raise ValueError(f"method must be one of {_METHODS}. Got {method!r}.")
        if truncate is not None and not 0.0 < truncate < 0.5:
            raise ValueError("truncate must lie strictly between 0 and 0.5.")
        if n_bootstrap < 0:
            raise ValueError("n_bootstrap must be non-negative.")
        design.require_complete()
        formulas = dict(treatment_formulas or {})
        for column in formulas:
            if column not in design.treatments:
                raise ValueError(
                    f"Formula given for '{column}', which is not a design treatment. "
                    f"Known treatments: {design.treatments}"
                )
        if formulas and method == "empirical":
            raise ValueError("treatment_formulas only apply to method='logit'.")

        self._design = design
        self._method = method
        self._formulas = formulas
        self._msm_formula = msm_formula or additive_formula(design.outcome, design.treatments)
        self._stabilized = stabilized
        self._truncate = truncate
        self._n_bootstrap = n_bootstrap

    def _estimate(self, data, weights):
        w, per_period = _ipw(
            data, weights, self._design, self._method,
            self._formulas, self._stabilized, self._truncate,
        )
        msm = _fit_msm(data, self._msm_formula, weights * w)
        return msm, w, per_period

    def fit(
        self,
        data: pd.DataFrame,
        rng: np.random.Generator | int | None = None,
    ) -> IPWResult:
        """
        Estimate treatment probabilities, build weights and fit the MSM.

        Parameters
        ----------
        data : pd.DataFrame
            Columns for every design variable plus the outcome (and count,
            if the design declares one).
        rng : numpy Generator or int, optional
            Source of randomness for the bootstrap.

        Raises
        ------
        ``IdentificationError``
            If a design confounder is absent from the dataframe.
        ``ModelFitError``
            If a treatment model or the MSM cannot be fitted, or a weight is
            infinite.
        """
        design = self._design
        design.check_data(data)
        counts = design.counts(data)

        msm, w, per_period = self._estimate(data, counts)
        summary = WeightSummary.from_weights(w, counts)
        logger.info(f"IPW weights: {summary}")
        if summary.max > _EXTREME_WEIGHT:
            logger.warning(
                f"Extreme inverse probability weight {summary.max:.1f} "
                f"(> {_EXTREME_WEIGHT:.0f}); estimates may be unstable."
            )

        rng = as_generator(rng, _BOOTSTRAP_SEED)
        boot = []
        for _ in range(self._n_bootstrap):
            bw = _resample_weights(counts, rng)
            try:
                b_msm, _, _ = self._estimate(data, bw)
            except ModelFitError:
                # Degenerate resample (e.g. a treatment arm vanished); skip it.
                continue
            boot.append(
                _predict_regime(b_msm, design, design.always_treated())
                - _predict_regime(b_msm, design, design.never_treated())
            )
        logger.debug(f"Bootstrap kept {len(boot)} of {self._n_bootstrap} replicates")

        return IPWResult(
            msm=msm,
            design=design,
            weights=w,
            counts=counts,
            per_period=per_period,
            balance=_balance(data, counts, design, per_period),
            naive_effect=_naive_effect(data, counts, design),
            bootstrap_effects=np.array(boot),
            stabilized=self._stabilized,
            truncate=self._truncate,
        )
