class DesignError(Exception):
    """Raised when a study design is structurally invalid."""
    pass


class IdentificationError(Exception):
    """
    Raised when a confounder declared in the study design is absent from the
    dataframe.

    Note: this only checks confounders the user explicitly declared. There may
    be additional unmeasured confounders not represented in the design at all;
    regimen has no way to detect those.
    """
    pass


class EmptyStratumError(Exception):
    """
    Raised when standardization reaches a stratum with no observed support
    and the estimator was configured with ``on_empty_stratum="error"``.
    """
    pass


class ModelFitError(Exception):
    """Raised when a nuisance or outcome model cannot be fitted to the data."""
    pass
