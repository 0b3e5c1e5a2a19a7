import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

import msgspec


class ErrorPolicy(str, Enum):
    CONTINUE = "continue"
    ABORT = "abort"


@dataclass
class ExecutionOptions:
    operation_timeout: float = 30
    workflow_timeout: float = 300
    max_workers: int | None = None
    on_error: ErrorPolicy = ErrorPolicy.CONTINUE


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"


class ExecutionType(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"


class OperationType(str, Enum):
    ENDPOINT_CALL = "endpoint_call"
    CUSTOM_PROCESSOR = "custom_processor"
    MERGE = "merge"
    FILTER = "filter"
    TRANSFORM = "transform"


class OperationStatus(str, Enum):
    SUCCESS = "success"
    CACHED = "cached"
    FALLBACK = "fallback"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorHandling(msgspec.Struct, forbid_unknown_fields=True):
    """Failure policy of a step or a workflow."""

    on_error: ErrorPolicy = ErrorPolicy.CONTINUE


class CacheConfig(msgspec.Struct, forbid_unknown_fields=True):
    """Per-operation switch for the engine-level result cache."""

    enabled: bool = False


class FallbackConfig(msgspec.Struct, forbid_unknown_fields=True):
    """What to do when an operation fails.

    ``data_source`` (and optionally ``endpoint``) redirects the call to an alternate
    source. ``default_value`` is substituted when the redirect is absent or also
    fails; ``use_default`` makes a ``null`` default explicit.
    """

    data_source: str | None = None
    endpoint: str | None = None
    default_value: Any = None
    use_default: bool | None = None

    def __post_init__(self):
        if self.use_default is None:
            self.use_default = self.default_value is not None


class ValidationRule(msgspec.Struct, forbid_unknown_fields=True):
    """Declared constraints for one request parameter."""

    required: bool = False
    type: Literal["string", "number", "integer", "boolean", "array", "object"] | None = None
    pattern: str | None = None
    min: float | None = None
    max: float | None = None
    enum: list[Any] | None = None

    def __post_init__(self):
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"invalid pattern {self.pattern!r}: {e}") from None


class ParameterTemplate(msgspec.Struct, forbid_unknown_fields=True):
    """Parameter template of an endpoint.

    ``defaults`` fill in missing parameters (string values may carry placeholders),
    ``aliases`` map caller vocabulary onto canonical values per parameter.
    """

    defaults: dict[str, Any] = msgspec.field(default_factory=dict)
    aliases: dict[str, dict[str, Any]] = msgspec.field(default_factory=dict)


class OperationResult(msgspec.Struct, forbid_unknown_fields=True):
    """Outcome of one operation within a workflow run."""

    name: str
    output_key: str
    status: OperationStatus = OperationStatus.SUCCESS
    value: Any = None
    error: str | None = None
    warnings: list[str] = msgspec.field(default_factory=list)
