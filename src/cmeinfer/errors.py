#########################################################################################
##
##                                EXCEPTION HIERARCHY
##                                    (errors.py)
##
#########################################################################################

# EXCEPTIONS ============================================================================

class CmeInferError(Exception):
    """Base class for all errors raised by cmeinfer."""


class ConfigurationError(CmeInferError, ValueError):
    """Inconsistent model / data configuration.

    Raised at data-load time for a missing or ambiguous time column, and during
    likelihood evaluation when the species-link table does not match the data
    columns.
    """


class AlignmentError(ConfigurationError):
    """Model and data tensors cannot be reconciled by padding or truncation."""


class EstimationError(CmeInferError, RuntimeError):
    """An estimation back-end could not be run."""
