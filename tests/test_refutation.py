import numpy as np
import pandas as pd
import pytest

from regimen import EmptyStratum, NonparametricGFormula
from regimen.data import time_varying_design, time_varying_table
from regimen.refutations import GFormulaRefutationReport, IPWRefutationReport, RefutationCheck
from regimen.refutations.gformula import _check_nonparametric_agreement, _check_stratum_support
from regimen.refutations.ipw import _check_covariate_balance, _check_positivity


def make_balance(smds):
    return pd.DataFrame({
        "period": [1] * len(smds),
        "treatment": ["a1"] * len(smds),
        "confounder": [f"z{i}" for i in range(len(smds))],
        "mean_treated": [0.0] * len(smds),
        "mean_untreated": [0.0] * len(smds),
        "smd": smds,
        "raw_smd": smds,
    })


class TestStratumSupport:
    def test_passes_without_empty_strata(self):
        check = _check_stratum_support([])
        assert check.passed
        assert check.name == "Stratum support"

    def test_fails_and_truncates_listing(self):
        strata = [EmptyStratum((1, 1), "y", (("z1", i),)) for i in range(5)]
        check = _check_stratum_support(strata)
        assert not check.passed
        assert "5 empty stratum(s)" in check.detail
        assert "(+2 more)" in check.detail

    def test_nonparametric_refute_fails_on_dropped_stratum(self):
        df = time_varying_table()
        df = df.loc[~((df["a0"] == 1) & (df["z1"] == 1) & (df["a1"] == 1))].reset_index(drop=True)
        result = NonparametricGFormula(time_varying_design(), n_bootstrap=0).fit(df)
        report = result.refute(df)
        assert isinstance(report, GFormulaRefutationReport)
        assert not report.passed
        assert len(report.checks) == 1
        assert "1 check(s) failed" in report.summary()


class TestNonparametricAgreement:
    def test_exact_estimate_agrees(self):
        check = _check_nonparametric_agreement(time_varying_table(), time_varying_design(), 50.0, 0.01)
        assert check.passed

    def test_distant_estimate_disagrees(self):
        check = _check_nonparametric_agreement(time_varying_table(), time_varying_design(), 45.0, 0.01)
        assert not check.passed
        assert "misspecified" in check.detail

    def test_nan_std_err_uses_absolute_tolerance(self):
        check = _check_nonparametric_agreement(time_varying_table(), time_varying_design(), 50.04, float("nan"))
        assert check.passed


class TestCovariateBalance:
    def test_balanced(self):
        check = _check_covariate_balance(make_balance([0.01, -0.05]))
        assert check.passed
        assert check.statistic == pytest.approx(0.05)
        assert check.threshold == 0.1

    def test_imbalanced_reports_worst_confounder(self):
        check = _check_covariate_balance(make_balance([0.01, -0.3]))
        assert not check.passed
        assert "z1 at a1" in check.detail

    def test_empty_balance_passes(self):
        assert _check_covariate_balance(make_balance([])).passed


class TestPositivity:
    def test_zero_count_rows_ignored(self):
        check = _check_positivity(np.array([2.0, 500.0]), np.array([10.0, 0.0]), max_weight=100)
        assert check.passed

    def test_extreme_weight_fails(self):
        check = _check_positivity(np.array([2.0, 500.0]), np.array([10.0, 1.0]), max_weight=100)
        assert not check.passed
        assert "1 row(s)" in check.detail


class TestReport:
    def test_summary_and_verdicts(self):
        report = IPWRefutationReport(
            [RefutationCheck("Positivity", True, "ok"), RefutationCheck("Covariate balance", False, "bad")],
            time_varying_design(),
        )
        summary = report.summary()
        assert "IPW Refutation Report: a0, a1 → y" in summary
        assert "[PASS]  Positivity" in summary
        assert "[FAIL]  Covariate balance" in summary
        assert not report.passed
        assert [c.name for c in report.failed_checks] == ["Covariate balance"]

    def test_checks_returns_copy(self):
        report = IPWRefutationReport([RefutationCheck("Positivity", True, "ok")], time_varying_design())
        report.checks.clear()
        assert len(report.checks) == 1

    def test_repr(self):
        assert repr(RefutationCheck("Positivity", False, "x")) == "RefutationCheck('FAIL', 'Positivity')"

    def test_to_frame(self):
        report = IPWRefutationReport(
            [_check_positivity(np.array([2.0, 8.0]), np.array([1.0, 1.0]), max_weight=100)],
            time_varying_design(),
        )
        frame = report.to_frame()
        assert list(frame.columns) == ["name", "passed", "statistic", "threshold", "detail"]
        assert frame.loc[0, "statistic"] == 8.0
        assert frame.loc[0, "threshold"] == 100.0

    def test_gformula_report_title(self):
        report = GFormulaRefutationReport([_check_stratum_support([])], time_varying_design(), "parametric")
        assert "G-formula (parametric) Refutation Report: a0, a1 → y" in report.summary()
        assert report.passed
