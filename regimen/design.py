from __future__ import annotations

import numpy as np
import pandas as pd

from ._exceptions import DesignError, IdentificationError


class _Period:
    """
    A period proxy returned by ``StudyDesign.period()``. Declare what is
    measured at the start of the period, then the treatment decided in it::

        design.period(0).measures("z0").treats("a0")
        design.period(1).measures("z1").treats("a1")
    """

    def __init__(self, index: int, design: StudyDesign) -> None:
        self._index = index
        self._design = design

    def measures(self, *confounders: str) -> _Period:
        """
        Declare confounders measured at the start of this period, before its
        treatment decision. Returns self so you can chain ``.treats()``.
        """
        for name in confounders:
            self._design._add_confounder(self._index, name)
        return self

    def treats(self, treatment: str) -> _Period:
        """Declare the binary treatment decided in this period."""
        self._design._set_treatment(self._index, treatment)
        return self


class StudyDesign:
    """
    The time-ordered schema of a longitudinal study: confounders and
    treatments per decision period, followed by the outcome.

    Within a period confounders are measured first and the treatment is
    decided after them, so the design fixes the ordering
    Z(0) → A(0) → Z(1) → A(1) → ... → Y. Every model an estimator fits
    conditions only on the ``history()`` of the variable being modelled.

    Pass ``count`` when each row of the data is an aggregated stratum with
    a replication count; omit it for individual-level data.

    Example::

        design = StudyDesign(outcome="y", count="n")
        design.period(0).measures("z0").treats("a0")
        design.period(1).measures("z1").treats("a1")
    """

    def __init__(self, outcome: str, count: str | None = None) -> None:
        if count is not None and count == outcome:
            raise DesignError("Outcome and count must be different columns.")
        self._outcome = outcome
        self._count = count
        self._periods: list[dict] = []

    # ── Building the design ───────────────────────────────────────────────────

    def period(self, index: int) -> _Period:
        """
        Open decision period ``index``. Periods must be declared in order
        starting from 0; the most recent period can be reopened until its
        treatment is declared.
        """
        n = len(self._periods)
        if index == n:
            if n and self._periods[-1]["treatment"] is None:
                raise DesignError(
                    f"Period {n - 1} has no treatment; declare it with "
                    f".treats() before opening period {index}."
                )
            self._periods.append({"confounders": [], "treatment": None})
        elif index != n - 1 or self._periods[index]["treatment"] is not None:
            raise DesignError(
                f"Period {index} declared out of order. "
                f"Next period to declare is {n}."
            )
        return _Period(index, self)

    def _check_new_name(self, name: str) -> None:
        if name in (self._outcome, self._count):
            raise DesignError(f"'{name}' is already the outcome or count column.")
        if name in self.columns:
            raise DesignError(f"'{name}' already declared in the design.")

    def _add_confounder(self, index: int, name: str) -> None:
        period = self._periods[index]
        if period["treatment"] is not None:
            raise DesignError(
                f"'{name}' would be measured after treatment "
                f"'{period['treatment']}' in period {index}. Declare it in "
                f"period {index + 1} instead."
            )
        self._check_new_name(name)
        period["confounders"].append(name)

    def _set_treatment(self, index: int, name: str) -> None:
        period = self._periods[index]
        if period["treatment"] is not None:
            raise DesignError(
                f"Period {index} already treats '{period['treatment']}'."
            )
        self._check_new_name(name)
        period["treatment"] = name

    # ── Design properties ─────────────────────────────────────────────────────

    @property
    def outcome(self) -> str:
        return self._outcome

    @property
    def count(self) -> str | None:
        """Replication-count column, or ``None`` for individual-level data."""
        return self._count

    @property
    def n_periods(self) -> int:
        return len(self._periods)

    @property
    def treatments(self) -> list[str]:
        """Treatment columns in period order."""
        return [p["treatment"] for p in self._periods if p["treatment"] is not None]

    @property
    def confounders(self) -> list[str]:
        """Confounder columns in measurement order."""
        return [c for p in self._periods for c in p["confounders"]]

    @property
    def columns(self) -> list[str]:
        """All confounder and treatment columns in time order."""
        result: list[str] = []
        for p in self._periods:
            result.extend(p["confounders"])
            if p["treatment"] is not None:
                result.append(p["treatment"])
        return result

    @property
    def baseline_confounders(self) -> list[str]:
        """Confounders measured before the first treatment decision."""
        return list(self._periods[0]["confounders"]) if self._periods else []

    def history(self, column: str) -> list[str]:
        """
        Columns measured strictly before ``column``. For the outcome this is
        every confounder and treatment in the design.
        """
        columns = self.columns
        if column == self._outcome:
            return columns
        if column not in columns:
            raise ValueError(
                f"'{column}' is not part of the design. Known columns: {columns}"
            )
        return columns[: columns.index(column)]

    def period_of(self, column: str) -> int:
        """Index of the period in which ``column`` is measured or decided."""
        for i, p in enumerate(self._periods):
            if column in p["confounders"] or column == p["treatment"]:
                return i
        raise ValueError(f"'{column}' is not part of the design.")

    # ── Regimes ───────────────────────────────────────────────────────────────

    def validate_regime(self, regime) -> tuple[int, ...]:
        """
        Return ``regime`` as a tuple of 0/1 ints, one per period.

        Raises
        ------
        ``ValueError``
            If the regime length differs from the number of periods or a
            value is not binary.
        """
        values = tuple(regime)
        if len(values) != self.n_periods:
            raise ValueError(
                f"Regime {values} has {len(values)} treatment value(s); "
                f"the design has {self.n_periods} period(s)."
            )
        if any(v not in (0, 1) for v in values):
            raise ValueError(f"Regime values must be 0 or 1. Got {values}.")
        return tuple(int(v) for v in values)

    def always_treated(self) -> tuple[int, ...]:
        return (1,) * self.n_periods

    def never_treated(self) -> tuple[int, ...]:
        return (0,) * self.n_periods

    # ── Data checks ───────────────────────────────────────────────────────────

    def require_complete(self) -> None:
        """Raise ``DesignError`` unless every declared period has a treatment."""
        if not self._periods:
            raise DesignError("The design has no periods. Declare at least one.")
        for i, p in enumerate(self._periods):
            if p["treatment"] is None:
                raise DesignError(f"Period {i} has no treatment.")

    def check_data(self, data: pd.DataFrame) -> None:
        """
        Validate that ``data`` can be analysed under this design.

        Raises
        ------
        ``IdentificationError``
            If a declared confounder is absent from the dataframe.
        ``ValueError``
            If a treatment, outcome or count column is missing, a treatment
            is not binary, or counts are not non-negative integers.
        """
        self.require_complete()
        data_columns = set(data.columns)

        for t in self.treatments:
            if t not in data_columns:
                raise ValueError(f"Treatment column '{t}' not found in dataframe.")
        if self._outcome not in data_columns:
            raise ValueError(f"Outcome column '{self._outcome}' not found in dataframe.")
        if self._count is not None and self._count not in data_columns:
            raise ValueError(f"Count column '{self._count}' not found in dataframe.")

        missing = [c for c in self.confounders if c not in data_columns]
        if missing:
            raise IdentificationError(
                f"\nDesign confounders not found in dataframe: {missing}\n\n"
                f"Standardization and weighting both need every confounder "
                f"that precedes a treatment decision. Without {missing} the "
                f"potential outcomes are not identified from this data."
            )

        for t in self.treatments:
            values = set(data[t].dropna().unique())
            if not values <= {0, 1}:
                raise ValueError(
                    f"Treatment '{t}' must be binary (0/1). Found values: {sorted(values)}"
                )

        if self._count is not None:
            n = data[self._count].to_numpy(dtype=float)
            if np.any(n < 0) or np.any(n != np.round(n)):
                raise ValueError(
                    f"Count column '{self._count}' must hold non-negative integers."
                )

    def counts(self, data: pd.DataFrame) -> np.ndarray:
        """Per-row replication counts as floats (all ones without a count column)."""
        if self._count is None:
            return np.ones(len(data))
        return data[self._count].to_numpy(dtype=float)

    # ── Display ───────────────────────────────────────────────────────────────

    def __repr__(self) -> str:
        if not self._periods:
            return "StudyDesign (empty)"
        lines = ["StudyDesign:"]
        for i, p in enumerate(self._periods):
            steps = list(p["confounders"])
            if p["treatment"] is not None:
                steps.append(p["treatment"])
            lines.append(f"  period {i}: {' → '.join(steps)}")
        count = f"  (count: {self._count})" if self._count else ""
        lines.append(f"  outcome: {self._outcome}{count}")
        return "\n".join(lines)
