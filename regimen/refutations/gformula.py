from __future__ import annotations

import numpy as np
import pandas as pd

from ._check import RefutationCheck, RefutationReport
from ..design import StudyDesign
from ..estimators._distribution import is_discrete

# Absolute slack on top of Monte Carlo error, for fits that are correct up to
# IRLS convergence.
_AGREEMENT_ATOL = 0.05
_AGREEMENT_SE   = 3.0


def _check_stratum_support(empty_strata: list) -> RefutationCheck:
    """
    Every stratum the standardization needed should have been observed.

    Dropped strata mean part of the confounder distribution under some regime
    was never seen, so the estimate sums over less than the full probability
    mass and is biased towards zero contribution from those histories.
    """
    if not empty_strata:
        return RefutationCheck(
            name="Stratum support",
            passed=True,
            detail="every needed stratum has observed support",
            statistic=0.0,
            threshold=0.0,
        )
    listed = "; ".join(str(s) for s in empty_strata[:3])
    more = f" (+{len(empty_strata) - 3} more)" if len(empty_strata) > 3 else ""
    return RefutationCheck(
        name="Stratum support",
        passed=False,
        detail=(
            f"{len(empty_strata)} empty stratum(s) dropped: {listed}{more}. "
            f"Positivity fails for these histories; the estimate excludes them."
        ),
        statistic=float(len(empty_strata)),
        threshold=0.0,
    )


def _check_nonparametric_agreement(
    data: pd.DataFrame,
    design: StudyDesign,
    parametric_effect: float,
    mc_std_err: float,
) -> RefutationCheck:
    """
    Re-estimate the ATE with the empirical g-formula and compare.

    With discrete confounders the empirical g-formula needs no modelling
    assumptions, so a parametric estimate further than a few Monte Carlo
    standard errors away points at misspecified confounder or outcome models.
    """
    from ..estimators.gformula import NonparametricGFormula

    name = "Nonparametric agreement"
    if not is_discrete(data, design.confounders):
        return RefutationCheck(
            name=name,
            passed=True,
            detail="skipped: continuous confounders cannot be standardized empirically",
        )

    reference = NonparametricGFormula(design, n_bootstrap=0).fit(data).effect
    gap = abs(parametric_effect - reference)
    tolerance = _AGREEMENT_SE * (mc_std_err if np.isfinite(mc_std_err) else 0.0) + _AGREEMENT_ATOL
    passed = gap <= tolerance
    if passed:
        detail = (
            f"parametric ATE {parametric_effect:.4f} vs empirical {reference:.4f}  "
            f"(gap {gap:.4f} ≤ {tolerance:.4f})"
        )
    else:
        detail = (
            f"parametric ATE {parametric_effect:.4f} vs empirical {reference:.4f}  "
            f"(gap {gap:.4f} > {tolerance:.4f})  The confounder or outcome "
            f"model is likely misspecified."
        )
    return RefutationCheck(name=name, passed=passed, detail=detail, statistic=gap, threshold=tolerance)


class GFormulaRefutationReport(RefutationReport):
    """
    Results of refutation checks run against a g-formula estimation.

    Obtain via ``GFormulaResult.refute(data)``.

    Example::

        result = ParametricGFormula(design).fit(df, rng=0)
        report = result.refute(df)
        print(report.summary())
    """

    def __init__(self, checks: list[RefutationCheck], design: StudyDesign, method: str) -> None:
        super().__init__(checks, design)
        self._method = method

    @property
    def title(self) -> str:
        return f"G-formula ({self._method}) Refutation Report"
