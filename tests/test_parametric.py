import numpy as np
import pytest

from regimen import FormulaRegression, NonparametricGFormula, ParametricGFormula
from regimen._exceptions import IdentificationError
from regimen.data import TRUE_EFFECT, simulate_nonlinear, time_varying_design, time_varying_table
from regimen.estimators.gformula import _BOOTSTRAP_SEED, _SIMULATION_SEED


class TestParametricValidation:
    def test_unknown_confounder_formula_raises(self):
        with pytest.raises(ValueError, match="not a design confounder"):
            ParametricGFormula(time_varying_design(), confounder_formulas={"cd4": "cd4 ~ a0"})

    def test_non_positive_simulations_raise(self):
        with pytest.raises(ValueError, match="n_simulations"):
            ParametricGFormula(time_varying_design(), n_simulations=0)

    def test_missing_confounder_raises_identification_error(self):
        df = time_varying_table().drop(columns=["z1"])
        with pytest.raises(IdentificationError):
            ParametricGFormula(time_varying_design()).fit(df)


class TestParametricAgreement:
    """Correct default models on the aggregated table reproduce the empirical g-formula."""

    @classmethod
    def setup_class(cls):
        cls.df = time_varying_table()
        cls.result = ParametricGFormula(time_varying_design(), n_simulations=200_000).fit(cls.df, rng=7)

    def test_method(self):
        assert self.result.method == "parametric"

    def test_ate_close_to_truth(self):
        assert abs(self.result.effect - TRUE_EFFECT) < 0.2

    def test_potential_outcomes(self):
        assert abs(self.result.treated_mean - 140.0) < 0.2
        assert abs(self.result.untreated_mean - 90.0) < 0.2

    def test_monte_carlo_std_err(self):
        # Prediction variance is 400·p(1-p) per regime: 75 and 100.
        assert self.result.std_err == pytest.approx(np.sqrt(175 / 200_000), rel=0.05)

    def test_conf_int_is_normal_approximation(self):
        lo, hi = self.result.conf_int
        assert hi - lo == pytest.approx(2 * 1.959964 * self.result.std_err, rel=1e-4)
        assert lo < self.result.effect < hi

    def test_no_bootstrap_replicates(self):
        assert len(self.result.bootstrap_effects) == 0

    def test_fitted_models_exposed(self):
        assert isinstance(self.result.outcome_model, FormulaRegression)
        assert self.result.outcome_model.formula == "y ~ a0 + z1 + a1"
        assert set(self.result.confounder_model.fits) == {"z1"}

    def test_confounder_model_recovers_transition(self):
        fit = self.result.confounder_model.fits["z1"]
        probs = fit.predict(self.df.iloc[[0, 4]])
        assert np.asarray(probs) == pytest.approx(np.array([0.5, 0.25]), abs=1e-6)

    def test_standardization_table_unavailable(self):
        with pytest.raises(ValueError, match="nonparametric"):
            self.result.standardization_table((1, 1))

    def test_refute_passes(self):
        report = self.result.refute(self.df)
        assert report.passed
        assert [c.name for c in report.checks] == ["Stratum support", "Nonparametric agreement"]

    def test_assumptions_include_model_specification(self):
        assert any("specification" in a.name for a in self.result.assumptions)

    def test_summary_mentions_monte_carlo(self):
        assert "Monte Carlo SE" in self.result.summary()

    def test_executive_summary_is_parametric(self):
        assert "G-formula (parametric)" in self.result.executive_summary()


class TestParametricSimulation:
    def test_same_seed_reproduces_estimate(self):
        df = time_varying_table()
        first = ParametricGFormula(time_varying_design(), n_simulations=5_000).fit(df, rng=11)
        second = ParametricGFormula(time_varying_design(), n_simulations=5_000).fit(df, rng=11)
        assert first.effect == second.effect

    def test_default_seed_is_the_simulation_seed(self):
        df = time_varying_table()
        default = ParametricGFormula(time_varying_design(), n_simulations=5_000).fit(df)
        again = ParametricGFormula(time_varying_design(), n_simulations=5_000).fit(df)
        seeded = ParametricGFormula(time_varying_design(), n_simulations=5_000).fit(df, rng=_SIMULATION_SEED)
        bootstrap_seeded = ParametricGFormula(time_varying_design(), n_simulations=5_000).fit(df, rng=_BOOTSTRAP_SEED)
        assert default.effect == again.effect == seeded.effect
        assert default.effect != bootstrap_seeded.effect

    def test_different_seeds_differ(self):
        df = time_varying_table()
        first = ParametricGFormula(time_varying_design(), n_simulations=5_000).fit(df, rng=1)
        second = ParametricGFormula(time_varying_design(), n_simulations=5_000).fit(df, rng=2)
        assert first.effect != second.effect

    def test_std_err_shrinks_with_simulations(self):
        df = time_varying_table()
        small = ParametricGFormula(time_varying_design(), n_simulations=1_000).fit(df, rng=0)
        large = ParametricGFormula(time_varying_design(), n_simulations=100_000).fit(df, rng=0)
        assert large.std_err < small.std_err

    def test_additional_regime_is_simulated(self):
        df = time_varying_table()
        result = ParametricGFormula(time_varying_design(), n_simulations=100_000).fit(df, rng=3)
        assert abs(result.potential_outcome((1, 0)) - 115.0) < 0.5


class TestMisspecifiedConfounderModel:
    """Ignoring the effect of a0 on z1 removes the mediated part of the effect."""

    @classmethod
    def setup_class(cls):
        cls.df = time_varying_table()
        cls.result = ParametricGFormula(
            time_varying_design(),
            confounder_formulas={"z1": "z1 ~ 1"},
            n_simulations=100_000,
        ).fit(cls.df, rng=5)

    def test_ate_is_biased(self):
        # P(z1 = 1) = 0.375 under both regimes: 137.5 - 92.5.
        assert abs(self.result.effect - 45.0) < 0.3

    def test_refute_flags_disagreement(self):
        report = self.result.refute(self.df)
        assert not report.passed
        assert [c.name for c in report.failed_checks] == ["Nonparametric agreement"]
        assert "misspecified" in report.summary()


class TestContinuousConfounder:
    @classmethod
    def setup_class(cls):
        cls.df = simulate_nonlinear(n=20_000, rng=0)
        cls.design = time_varying_design(count=None)

    def test_correct_outcome_model_recovers_truth(self):
        result = ParametricGFormula(
            self.design, outcome_model="y ~ a0 + a1 + z1 + I(z1**2)",
        ).fit(self.df, rng=0)
        assert abs(result.bias(TRUE_EFFECT)) < 1.5

    def test_refute_skips_agreement_for_continuous_confounder(self):
        result = ParametricGFormula(self.design, n_simulations=2_000).fit(self.df, rng=0)
        check = result.refute(self.df).checks[1]
        assert check.passed
        assert "skipped" in check.detail


class TestSimulationSizePerCall:
    @classmethod
    def setup_class(cls):
        cls.result = ParametricGFormula(time_varying_design(), n_simulations=1_000).fit(time_varying_table(), rng=4)

    def test_larger_simulation_on_demand(self):
        value = self.result.potential_outcome((1, 1), n_simulations=200_000)
        assert abs(value - 140.0) < 0.3

    def test_cached_estimate_unchanged(self):
        before = self.result.treated_mean
        self.result.potential_outcome((1, 1), n_simulations=500)
        assert self.result.treated_mean == before

    def test_invalid_size_raises(self):
        with pytest.raises(ValueError, match="at least 1"):
            self.result.potential_outcome((1, 1), n_simulations=0)

    def test_nonparametric_rejects_simulation_size(self):
        result = NonparametricGFormula(time_varying_design(), n_bootstrap=0).fit(time_varying_table())
        with pytest.raises(ValueError, match="parametric"):
            result.potential_outcome((1, 1), n_simulations=100)
