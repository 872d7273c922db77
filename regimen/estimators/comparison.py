from __future__ import annotations

import numpy as np
import pandas as pd

from ..design import StudyDesign
from ..models import OutcomeModel
from .._logging import logger
from .._rng import as_generator
from .gformula import _N_SIMULATIONS, _SIMULATION_SEED, GFormulaResult, ParametricGFormula


class ComparisonResult:
    """
    Parametric g-formula estimates from several outcome models, side by side
    with their bias against a known true effect.
    """

    def __init__(self, results: dict[str, GFormulaResult], truth: float, design: StudyDesign) -> None:
        self._results = dict(results)
        self._truth = truth
        self._design = design

    @property
    def truth(self) -> float:
        return self._truth

    @property
    def results(self) -> dict[str, GFormulaResult]:
        """Full g-formula result per model name."""
        return dict(self._results)

    @property
    def table(self) -> pd.DataFrame:
        """One row per model: ``treated``, ``untreated``, ``ate``, ``bias``, ``mc_se``."""
        rows = [
            {
                "model": name,
                "treated": r.treated_mean,
                "untreated": r.untreated_mean,
                "ate": r.effect,
                "bias": r.bias(self._truth),
                "mc_se": r.std_err,
            }
            for name, r in self._results.items()
        ]
        return pd.DataFrame(rows, columns=["model", "treated", "untreated", "ate", "bias", "mc_se"])

    @property
    def best(self) -> str:
        """Name of the model with the smallest absolute bias."""
        table = self.table
        return str(table.loc[table["bias"].abs().idxmin(), "model"])

    def summary(self) -> str:
        d = self._design
        width = max(12, *(len(name) for name in self._results))
        lines = [
            "",
            f"Outcome Model Comparison: {', '.join(d.treatments)} → {d.outcome}",
            f"  Parametric g-formula, true ATE = {self._truth:.4f}",
            "─" * (width + 40),
            f"  {'model':<{width}}  {'ATE':>10}  {'bias':>10}  {'MC SE':>8}",
        ]
        for row in self.table.itertuples(index=False):
            lines.append(
                f"  {row.model:<{width}}  {row.ate:>10.4f}  {row.bias:>+10.4f}  {row.mc_se:>8.4f}"
            )
        lines += ["", f"  Least biased: {self.best}", ""]
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()


class ModelComparison:
    """
    Run the parametric g-formula once per outcome model and report bias
    against a known truth.

    Every model sees the same confounder models and the same simulation
    seed, so differences between rows come from the outcome model alone.

    Example::

        comparison = ModelComparison(design, {
            "linear":     FormulaRegression("y ~ a0 + a1 + z1"),
            "polynomial": FormulaRegression("y ~ a0 + a1 + z1 + I(z1**2)"),
            "forest":     RandomForestRegression("y", ["a0", "z1", "a1"]),
        }, truth=50.0)
        print(comparison.fit(df, rng=0).summary())
    """

    def __init__(
        self,
        design: StudyDesign,
        models: dict[str, OutcomeModel | str],
        truth: float,
        confounder_formulas: dict[str, str] | None = None,
        n_simulations: int = _N_SIMULATIONS,
    ) -> None:
        if not models:
            raise ValueError("ModelComparison needs at least one outcome model.")
        self._design = design
        self._models = dict(models)
        self._truth = float(truth)
        self._confounder_formulas = confounder_formulas
        self._n_simulations = n_simulations

    def fit(
        self,
        data: pd.DataFrame,
        rng: np.random.Generator | int | None = None,
    ) -> ComparisonResult:
        seed = int(as_generator(rng, _SIMULATION_SEED).integers(0, 2**31 - 1))
        results = {}
        for name, model in self._models.items():
            logger.debug(f"Comparison: fitting outcome model '{name}'")
            results[name] = ParametricGFormula(
                self._design,
                outcome_model=model,
                confounder_formulas=self._confounder_formulas,
                n_simulations=self._n_simulations,
            ).fit(data, rng=np.random.default_rng(seed))
            logger.info(f"Comparison: '{name}' ATE = {results[name].effect:.4f}")
        return ComparisonResult(results, self._truth, self._design)
