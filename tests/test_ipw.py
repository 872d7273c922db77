import numpy as np
import pytest

from regimen import InverseProbabilityWeighting, IPWResult, WeightSummary
from regimen.data import TRUE_EFFECT, static_design, static_table, time_varying_design, time_varying_table


class TestIPWValidation:
    def test_unknown_method_raises(self):
        with pytest.raises(ValueError, match="method"):
            InverseProbabilityWeighting(time_varying_design(), method="probit")

    def test_truncate_out_of_range_raises(self):
        with pytest.raises(ValueError, match="truncate"):
            InverseProbabilityWeighting(time_varying_design(), truncate=0.6)

    def test_formula_for_non_treatment_raises(self):
        with pytest.raises(ValueError, match="not a design treatment"):
            InverseProbabilityWeighting(time_varying_design(), treatment_formulas={"z1": "z1 ~ a0"})

    def test_formulas_with_empirical_method_raise(self):
        with pytest.raises(ValueError, match="only apply"):
            InverseProbabilityWeighting(
                time_varying_design(), method="empirical",
                treatment_formulas={"a1": "a1 ~ z1"},
            )

    def test_negative_bootstrap_raises(self):
        with pytest.raises(ValueError, match="n_bootstrap"):
            InverseProbabilityWeighting(time_varying_design(), n_bootstrap=-5)


class TestIPWStatic:
    def test_single_period_recovers_truth(self):
        result = InverseProbabilityWeighting(static_design(), n_bootstrap=0).fit(static_table())
        assert result.effect == pytest.approx(TRUE_EFFECT, abs=1e-3)
        assert result.treated_mean == pytest.approx(140.0, abs=1e-3)
        assert result.untreated_mean == pytest.approx(90.0, abs=1e-3)


class TestIPWTimeVarying:
    @classmethod
    def setup_class(cls):
        cls.df = time_varying_table()
        cls.result = InverseProbabilityWeighting(time_varying_design(), n_bootstrap=50).fit(cls.df, rng=0)

    def test_returns_ipw_result(self):
        assert isinstance(self.result, IPWResult)

    def test_ate_recovers_truth(self):
        assert self.result.effect == pytest.approx(TRUE_EFFECT, abs=1e-3)

    def test_naive_effect_is_confounded(self):
        assert abs(self.result.naive_effect - TRUE_EFFECT) > 1.0

    def test_weights(self):
        assert self.result.weights == pytest.approx(np.array([2.5, 10, 4, 4, 4, 4, 10, 2.5]), rel=1e-4)

    def test_period_weights(self):
        periods = self.result.period_weights
        assert set(periods) == {"a0", "a1"}
        assert periods["a0"] == pytest.approx(np.full(8, 2.0), rel=1e-4)

    def test_weight_summary(self):
        ws = self.result.weight_summary
        assert isinstance(ws, WeightSummary)
        assert ws.min == pytest.approx(2.5, rel=1e-4)
        assert ws.max == pytest.approx(10.0, rel=1e-4)
        assert ws.pseudo_population == pytest.approx(800_000, rel=1e-4)
        assert ws.mean == pytest.approx(4.0, rel=1e-4)
        assert ws.effective_sample_size < 200_000

    def test_balance_table(self):
        balance = self.result.balance()
        assert list(balance.columns) == [
            "period", "treatment", "confounder",
            "mean_treated", "mean_untreated", "smd", "raw_smd",
        ]
        row = balance.loc[(balance["treatment"] == "a1") & (balance["confounder"] == "z1")].iloc[0]
        assert row["raw_smd"] > 0.1
        assert abs(row["smd"]) < 0.01
        assert row["mean_treated"] == pytest.approx(0.375, abs=1e-4)

    def test_bootstrap_inference(self):
        lo, hi = self.result.conf_int
        assert self.result.std_err > 0
        assert lo < self.result.effect < hi
        assert self.result.pvalue < 0.05

    def test_msm_result_exposed(self):
        params = self.result.statsmodels_result.params
        assert params["a0"] == pytest.approx(25.0, abs=1e-3)
        assert params["a1"] == pytest.approx(25.0, abs=1e-3)

    def test_invalid_regime_raises(self):
        with pytest.raises(ValueError):
            self.result.potential_outcome((1, 1, 1))

    def test_refute_passes(self):
        report = self.result.refute(self.df)
        assert report.passed
        assert [c.name for c in report.checks] == ["Covariate balance", "Positivity"]

    def test_refute_fails_with_low_weight_ceiling(self):
        report = self.result.refute(self.df, max_weight=5)
        assert not report.passed
        assert [c.name for c in report.failed_checks] == ["Positivity"]

    def test_summary(self):
        summary = self.result.summary()
        assert "IPW Marginal Structural Model" in summary
        assert "unstabilized" in summary
        assert repr(self.result) == summary

    def test_executive_summary(self):
        text = self.result.executive_summary()
        assert "Inverse probability weighting" in text
        assert "Weights:" in text


class TestIPWEmpirical:
    def test_empirical_matches_logit(self):
        df = time_varying_table()
        result = InverseProbabilityWeighting(time_varying_design(), method="empirical", n_bootstrap=0).fit(df)
        assert result.effect == pytest.approx(TRUE_EFFECT)
        assert result.weights == pytest.approx(np.array([2.5, 10, 4, 4, 4, 4, 10, 2.5]))

    def test_no_bootstrap_gives_nan_std_err(self):
        df = time_varying_table()
        result = InverseProbabilityWeighting(time_varying_design(), method="empirical", n_bootstrap=0).fit(df)
        assert np.isnan(result.std_err)
        assert all(np.isnan(result.conf_int))

    def test_unsupported_history_gets_zero_period_weight(self):
        df = time_varying_table()
        df.loc[(df["a0"] == 1) & (df["z1"] == 1), "n"] = 0
        result = InverseProbabilityWeighting(time_varying_design(), method="empirical", n_bootstrap=0).fit(df)
        a1 = result.period_weights["a1"]
        assert np.all(np.isfinite(a1))
        assert a1[6:] == pytest.approx([0.0, 0.0])
        assert result.weights[6:] == pytest.approx([0.0, 0.0])
        # Treated arm never has high viral load at the second visit: 145 - 90.
        assert result.effect == pytest.approx(55.0)


class TestStabilizedAndTruncatedWeights:
    def test_stabilized_weights_average_one(self):
        df = time_varying_table()
        result = InverseProbabilityWeighting(
            time_varying_design(), method="empirical", stabilized=True, n_bootstrap=0,
        ).fit(df)
        ws = result.weight_summary
        assert ws.pseudo_population == pytest.approx(200_000)
        assert ws.mean == pytest.approx(1.0)
        assert result.effect == pytest.approx(TRUE_EFFECT)
        assert "stabilized" in result.summary()

    def test_truncation_caps_weights(self):
        df = time_varying_table()
        result = InverseProbabilityWeighting(
            time_varying_design(), method="empirical", truncate=0.1, n_bootstrap=0,
        ).fit(df)
        assert result.weight_summary.max == pytest.approx(4.0)
        assert result.weight_summary.min == pytest.approx(2.5)
        assert "truncated" in result.summary()


class TestWeightSummary:
    def test_zero_count_rows_ignored(self):
        ws = WeightSummary.from_weights(np.array([1.0, 3.0, 100.0]), np.array([1.0, 1.0, 0.0]))
        assert ws.max == 3.0
        assert ws.mean == 2.0
        assert ws.pseudo_population == 4.0
        assert ws.effective_sample_size == pytest.approx(16 / 10)

    def test_str(self):
        ws = WeightSummary.from_weights(np.array([2.0, 2.0]), np.array([1.0, 1.0]))
        assert "ESS 2.0" in str(ws)
