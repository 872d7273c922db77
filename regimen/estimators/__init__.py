from .gformula import NonparametricGFormula, ParametricGFormula
from .ipw import InverseProbabilityWeighting
from .comparison import ModelComparison

__all__ = ["NonparametricGFormula", "ParametricGFormula", "InverseProbabilityWeighting", "ModelComparison"]
