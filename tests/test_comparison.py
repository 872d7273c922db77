import pytest

from regimen import ComparisonResult, FormulaRegression, ModelComparison, RandomForestRegression
from regimen.data import TRUE_EFFECT, simulate_nonlinear, time_varying_design


class TestModelComparisonValidation:
    def test_no_models_raises(self):
        with pytest.raises(ValueError, match="at least one"):
            ModelComparison(time_varying_design(count=None), {}, truth=TRUE_EFFECT)


class TestModelComparison:
    @classmethod
    def setup_class(cls):
        cls.df = simulate_nonlinear(n=20_000, rng=0)
        cls.comparison = ModelComparison(
            time_varying_design(count=None),
            {
                "linear": FormulaRegression("y ~ a0 + a1 + z1"),
                "polynomial": "y ~ a0 + a1 + z1 + I(z1**2)",
                "forest": RandomForestRegression("y", ["a0", "z1", "a1"], n_estimators=50),
            },
            truth=TRUE_EFFECT,
        )
        cls.result = cls.comparison.fit(cls.df, rng=0)

    def test_returns_comparison_result(self):
        assert isinstance(self.result, ComparisonResult)
        assert self.result.truth == TRUE_EFFECT

    def test_table_shape(self):
        table = self.result.table
        assert list(table.columns) == ["model", "treated", "untreated", "ate", "bias", "mc_se"]
        assert table["model"].tolist() == ["linear", "polynomial", "forest"]

    def test_bias_is_ate_minus_truth(self):
        table = self.result.table
        assert (table["bias"] == table["ate"] - TRUE_EFFECT).all()

    def test_polynomial_model_is_nearly_unbiased(self):
        row = self.result.table.set_index("model").loc["polynomial"]
        assert abs(row["bias"]) < 1.5

    def test_forest_bias_is_moderate(self):
        row = self.result.table.set_index("model").loc["forest"]
        assert abs(row["bias"]) < 5.0

    def test_monte_carlo_errors_are_positive(self):
        assert (self.result.table["mc_se"] > 0).all()

    def test_best_is_a_model_name(self):
        assert self.result.best in {"linear", "polynomial", "forest"}

    def test_linear_model_is_more_biased_than_polynomial(self):
        bias = self.result.table.set_index("model")["bias"]
        assert abs(bias["linear"]) > abs(bias["polynomial"])
        assert self.result.best != "linear"

    def test_models_share_confounder_fit(self):
        fits = [r.confounder_model.fits["z1"].params["a0"] for r in self.result.results.values()]
        assert fits[1] == pytest.approx(fits[0])
        assert fits[2] == pytest.approx(fits[0])

    def test_summary_lists_models(self):
        summary = self.result.summary()
        for name in ("linear", "polynomial", "forest"):
            assert name in summary
        assert "Least biased" in summary
        assert repr(self.result) == summary
