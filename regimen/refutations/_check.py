from __future__ import annotations

from dataclasses import asdict, dataclass

import pandas as pd


@dataclass(frozen=True)
class Assumption:
    """
    An identification assumption behind a g-formula or IPW estimate.

    ``testable`` separates what the data can speak to (positivity, model
    specification) from what has to be argued from subject-matter knowledge
    (sequential exchangeability, consistency).
    """

    name: str
    testable: bool

    def fmt_tag(self) -> str:
        """Fixed-width label used in the assumption lists of ``summary()``."""
        return "[  testable  ]" if self.testable else "[ untestable ]"


@dataclass(frozen=True)
class RefutationCheck:
    """
    Outcome of one diagnostic: the measured ``statistic`` (largest |SMD|,
    largest weight, gap between estimators...) and the ``threshold`` it was
    held against. Checks without a numeric criterion leave both as ``NaN``.
    """

    name: str
    passed: bool
    detail: str
    statistic: float = float("nan")
    threshold: float = float("nan")

    def __repr__(self) -> str:
        return f"RefutationCheck({'PASS' if self.passed else 'FAIL'!r}, {self.name!r})"


class RefutationReport:
    """
    Diagnostics run against one fitted estimate.

    Subclasses set ``title``; the report reads treatments and outcome from
    the study design the estimate was fitted under.
    """

    title = "Refutation Report"

    def __init__(self, checks: list[RefutationCheck], design) -> None:
        self._checks = list(checks)
        self._design = design

    @property
    def checks(self) -> list[RefutationCheck]:
        """All checks, in the order they were run."""
        return list(self._checks)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self._checks)

    @property
    def failed_checks(self) -> list[RefutationCheck]:
        return [c for c in self._checks if not c.passed]

    def to_frame(self) -> pd.DataFrame:
        """One row per check: ``name``, ``passed``, ``statistic``, ``threshold``, ``detail``."""
        return pd.DataFrame(
            [asdict(c) for c in self._checks],
            columns=["name", "passed", "statistic", "threshold", "detail"],
        )

    def summary(self) -> str:
        d = self._design
        lines = ["", f"{self.title}: {', '.join(d.treatments)} → {d.outcome}", "─" * 50]
        for check in self._checks:
            status = "PASS" if check.passed else "FAIL"
            lines.append(f"  [{status}]  {check.name}: {check.detail}")
        lines.append("")
        if self.passed:
            lines.append("  All checks passed.")
        else:
            lines.append(f"  {len(self.failed_checks)} check(s) failed, see above.")
        lines.append("")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()
