from .design import StudyDesign
from .estimators.gformula import NonparametricGFormula, ParametricGFormula, GFormulaResult, EmptyStratum
from .estimators.ipw import InverseProbabilityWeighting, IPWResult, WeightSummary
from .estimators.comparison import ModelComparison, ComparisonResult
from .models import OutcomeModel, FormulaRegression, RandomForestRegression
from .refutations import GFormulaRefutationReport, IPWRefutationReport, RefutationCheck
from .refutations._check import Assumption
from ._logging import configure_logging, set_log_level

__all__ = [
    "StudyDesign",
    "NonparametricGFormula", "ParametricGFormula", "GFormulaResult", "EmptyStratum",
    "InverseProbabilityWeighting", "IPWResult", "WeightSummary",
    "ModelComparison", "ComparisonResult",
    "OutcomeModel", "FormulaRegression", "RandomForestRegression",
    "GFormulaRefutationReport", "IPWRefutationReport", "RefutationCheck",
    "Assumption",
    "configure_logging", "set_log_level",
]
