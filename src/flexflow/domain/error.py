class FlexflowError(Exception):
    """Base class for every error raised by flexflow."""


class ConfigurationError(FlexflowError):
    """Raised when a configuration document is incomplete or references unknown types."""


class ValidationError(FlexflowError):
    """Raised when request parameters violate the declared rules.

    Validation results are normally returned as data; this exception is only used
    by callers that prefer to fail fast.
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class WorkflowNotFound(FlexflowError):
    """Raised when a workflow name is not registered."""


class DataSourceUnavailable(FlexflowError):
    """Raised when a data source is unknown or cannot be reached."""


class ExecutionError(FlexflowError):
    """Raised when a backend, processor or built-in operation reports a failure."""


class OperationTimeoutError(FlexflowError):
    """Raised when an operation or a whole workflow exceeds its time budget."""


class ConditionEvaluationWarning(UserWarning):
    """Raised for malformed or unresolvable conditions.

    The engine catches it, records a warning and treats the condition as false.
    """
