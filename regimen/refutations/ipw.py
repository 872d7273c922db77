from __future__ import annotations

import numpy as np
import pandas as pd

from ._check import RefutationCheck, RefutationReport

_SMD_THRESHOLD = 0.1


def _check_covariate_balance(
    balance: pd.DataFrame,
    threshold: float = _SMD_THRESHOLD,
) -> RefutationCheck:
    """
    After weighting, each confounder should have the same distribution in
    both arms of every later treatment decision.

    Uses the weighted standardized mean difference; ``|SMD| < 0.1`` is the
    conventional balance threshold (Austin, 2009).
    """
    if balance.empty:
        return RefutationCheck(
            name="Covariate balance",
            passed=True,
            detail="no confounders precede any treatment decision",
        )
    worst = balance.loc[balance["smd"].abs().idxmax()]
    max_smd = float(abs(worst["smd"]))
    passed = max_smd < threshold
    where = f"{worst['confounder']} at {worst['treatment']}"
    if passed:
        detail = f"max |SMD| = {max_smd:.4f}  ({where}; threshold {threshold})"
    else:
        detail = (
            f"max |SMD| = {max_smd:.4f}  ({where}; threshold {threshold})  "
            f"Weighting did not balance this confounder; the treatment model "
            f"is likely misspecified."
        )
    return RefutationCheck(
        name="Covariate balance", passed=passed, detail=detail,
        statistic=max_smd, threshold=threshold,
    )


def _check_positivity(
    weights: np.ndarray,
    counts: np.ndarray,
    max_weight: float,
) -> RefutationCheck:
    """
    No observation should carry an extreme weight. A very large weight means
    some history almost never receives the treatment it was observed with,
    and the estimate leans on a handful of units.
    """
    observed = weights[counts > 0]
    largest = float(observed.max())
    n_extreme = int(np.sum(observed > max_weight))
    passed = n_extreme == 0
    if passed:
        detail = f"max weight = {largest:.4f}  (≤ {max_weight:.0f})"
    else:
        detail = (
            f"max weight = {largest:.4f}  ({n_extreme} row(s) > {max_weight:.0f})  "
            f"Near-violations of positivity; consider stabilized or truncated weights."
        )
    return RefutationCheck(
        name="Positivity", passed=passed, detail=detail,
        statistic=largest, threshold=float(max_weight),
    )


class IPWRefutationReport(RefutationReport):
    """
    Results of refutation checks run against an IPW marginal structural model.

    Obtain via ``IPWResult.refute(data)``.

    Example::

        result = InverseProbabilityWeighting(design).fit(df)
        report = result.refute(df)
        print(report.summary())
    """

    title = "IPW Refutation Report"
