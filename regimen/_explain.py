"""
Narrative explanation renderer for estimation results.

Each public ``explain_*`` function takes a fitted result object (which must
expose ``design``) and returns a formatted multi-line string. The result's
``executive_summary()`` method calls the appropriate function here.
"""
from __future__ import annotations

import numpy as np

_SEP = "━" * 66


# ── Shared helpers ─────────────────────────────────────────────────────────────

def _fmt_p(p: float) -> str:
    if not np.isfinite(p):
        return "p not available"
    if p < 0.001:
        return "p < 0.001"
    return f"p = {p:.3f}"


def _fmt_ci(lo: float, hi: float) -> str:
    return f"[{lo:.4f}, {hi:.4f}]"


def _list_vars(names: list[str]) -> str:
    if not names:
        return "nothing"
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def _regime_phrase(design) -> str:
    return (
        f"everyone treated at every decision point {design.always_treated()} "
        f"rather than never treated {design.never_treated()}"
    )


def _effect_phrase(effect: float, design) -> str:
    direction = "increase" if effect >= 0 else "decrease"
    return (
        f"having {_regime_phrase(design)} is estimated to cause an {direction} "
        f"of {abs(effect):.4f} in mean {design.outcome}"
    )


# ── Section builders ───────────────────────────────────────────────────────────

def _design_section(design) -> str:
    lines = [
        "STUDY DESIGN",
        "Variables were measured and decided in this order:",
    ]
    for i in range(design.n_periods):
        steps = [c for c in design.columns if design.period_of(c) == i]
        lines.append(f"  • period {i}: {' → '.join(steps)}")
    lines.append(f"  • then the outcome {design.outcome}")
    lines.append("")

    late = [c for c in design.confounders if design.period_of(c) > 0]
    if late:
        lines.append(
            f"{_list_vars(late)} {'is' if len(late) == 1 else 'are'} measured after an earlier "
            f"treatment decision and may be affected by it while also driving later "
            f"treatment and the outcome. Such time-varying confounders cannot simply "
            f"be added to an outcome regression; they need sequential adjustment."
        )
    elif design.confounders:
        lines.append(
            f"{_list_vars(design.confounders)} {'is a baseline confounder' if len(design.confounders) == 1 else 'are baseline confounders'} "
            f"of the treatment and the outcome."
        )
    else:
        lines.append("No confounders are declared in the design.")
    return "\n".join(lines)


def _assumptions_section(assumptions: list) -> str:
    n = len(assumptions)
    n_u = sum(1 for a in assumptions if not a.testable)
    n_t = n - n_u

    if n_u == n:
        intro = (
            f"All {n} required assumptions are untestable from the data alone "
            f"and must be justified on substantive grounds."
        )
    elif n_t == n:
        intro = f"All {n} required assumptions can be empirically checked in the data."
    else:
        intro = (
            f"{n_u} of the {n} required assumptions {'is' if n_u == 1 else 'are'} untestable "
            f"and must be justified on substantive grounds; "
            f"{n_t} can be checked in the data."
        )

    lines = ["ASSUMPTIONS", intro, ""]
    for a in assumptions:
        lines.append(f"  {a.fmt_tag()}  {a.name}")
    return "\n".join(lines)


def _bias_lines(result) -> list[str]:
    bias = result.naive_effect - result.effect
    if not np.isfinite(bias):
        return []
    direction = "upward" if bias > 0 else "downward"
    return [
        "",
        f"For comparison, the naive difference in observed means between always- "
        f"and never-treated units was {result.naive_effect:.4f}. The difference of "
        f"{abs(bias):.4f} reflects {direction} confounding bias removed by the adjustment.",
    ]


# ── Method-specific explanations ───────────────────────────────────────────────

def explain_gformula(result) -> str:
    d = result.design
    lo, hi = result.conf_int
    parametric = result.method == "parametric"

    if parametric:
        method = (
            f"The parametric g-formula models how each confounder evolves given the "
            f"history before it and how {d.outcome} depends on the full history. It then "
            f"simulates synthetic trajectories with treatment held fixed at each regime, "
            f"predicts {d.outcome} for every trajectory, and averages. The interval "
            f"reflects Monte Carlo error only, not sampling uncertainty in the fitted models."
        )
    else:
        method = (
            f"The nonparametric g-formula standardizes the observed mean of {d.outcome} "
            f"over the distribution of {_list_vars(d.confounders)} that would arise under "
            f"each regime: every conditional probability and mean is read directly from "
            f"the data, with treatments held at the regime values. Standard errors come "
            f"from a bootstrap of the observed table."
        )

    support_lines = []
    if result.empty_strata:
        support_lines = [
            "",
            f"{len(result.empty_strata)} stratum(s) needed by the standardization were "
            f"never observed and were left out of the sum.",
        ]

    blocks = [
        "\n".join([_SEP, f"Executive Summary — G-formula ({result.method})",
                   f"  {', '.join(d.treatments)} → {d.outcome}  |  estimand: ATE", _SEP]),
        "\n".join(["METHOD", method]),
        _design_section(d),
        _assumptions_section(result.assumptions),
        "\n".join([
            "RESULT",
            f"{_effect_phrase(result.effect, d).capitalize()} "
            f"(treated mean {result.treated_mean:.4f}, untreated mean {result.untreated_mean:.4f}; "
            f"95% CI: {_fmt_ci(lo, hi)}, SE = {result.std_err:.4f}"
            + ("" if parametric else f", {_fmt_p(result.pvalue)}") + ").",
            *_bias_lines(result),
            *support_lines,
        ]),
        "\n".join([
            "CAVEATS",
            f"The estimate assumes no unmeasured confounding of any treatment decision "
            f"given the declared history. Histories that are rare under a regime make "
            f"the estimate fragile"
            + (", and misspecified confounder or outcome models bias it in an unknown direction."
               if parametric else "."),
        ]),
        _SEP,
    ]
    return "\n\n".join(blocks)


def explain_ipw(result) -> str:
    d = result.design
    lo, hi = result.conf_int
    ws = result.weight_summary

    blocks = [
        "\n".join([_SEP, "Executive Summary — IPW Marginal Structural Model",
                   f"  {', '.join(d.treatments)} → {d.outcome}  |  estimand: ATE", _SEP]),
        "\n".join([
            "METHOD",
            f"Inverse probability weighting reweights every unit by the reciprocal of "
            f"the probability of the treatment history it actually received, given the "
            f"confounders measured before each decision. In the weighted pseudo-population "
            f"treatment is independent of {_list_vars(d.confounders)}, so a regression of "
            f"{d.outcome} on {_list_vars(d.treatments)} alone (the marginal structural "
            f"model) estimates the potential outcome under each regime.",
        ]),
        _design_section(d),
        _assumptions_section(result.assumptions),
        "\n".join([
            "RESULT",
            f"{_effect_phrase(result.effect, d).capitalize()} "
            f"(95% CI: {_fmt_ci(lo, hi)}, SE = {result.std_err:.4f}, {_fmt_p(result.pvalue)}).",
            *_bias_lines(result),
            "",
            f"Weights: {ws}.",
        ]),
        "\n".join([
            "CAVEATS",
            f"Weights are reciprocals of estimated probabilities, so treatment histories "
            f"that are rare given the confounders produce very large weights and unstable "
            f"estimates. Check the weight distribution and covariate balance before "
            f"trusting the result. Misspecified treatment models leave residual confounding.",
        ]),
        _SEP,
    ]
    return "\n\n".join(blocks)
