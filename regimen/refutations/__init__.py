from .gformula import GFormulaRefutationReport
from .ipw import IPWRefutationReport
from ._check import Assumption, RefutationCheck, RefutationReport

__all__ = ["GFormulaRefutationReport", "IPWRefutationReport", "Assumption", "RefutationCheck", "RefutationReport"]
