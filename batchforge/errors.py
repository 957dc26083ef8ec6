"""Error taxonomy for loading, normalization and correction failures."""


class BatchForgeError(Exception):
    """Base class for all pipeline errors."""


class LoadError(BatchForgeError):
    """The persisted dataset is unreadable or lacks required fields."""


class DegenerateInputError(BatchForgeError, ValueError):
    """Normalization produced a non-positive or non-finite size factor."""


class InsufficientControlsError(BatchForgeError, ValueError):
    """Too few control genes for the requested number of factors."""


class UnidentifiableDesignError(BatchForgeError, ValueError):
    """Covariate design is collinear with the batch labels."""


class ImbalancedBatchError(BatchForgeError, ValueError):
    """Batches share no biological condition and no fallback applies."""


# Errors a single correction method may raise without aborting the run
METHOD_ERRORS = (
    DegenerateInputError,
    InsufficientControlsError,
    UnidentifiableDesignError,
    ImbalancedBatchError,
)
