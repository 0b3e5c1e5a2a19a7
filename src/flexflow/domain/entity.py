from typing import Any

import msgspec

from flexflow.domain.value_object import (
    CacheConfig,
    ErrorHandling,
    ExecutionType,
    FallbackConfig,
    OperationResult,
    OperationType,
    ParameterTemplate,
    ValidationRule,
    WorkflowStatus,
)


class Operation(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """The atomic unit of work of a workflow.

    ``type`` decides which target is meaningful: ``data_source`` for endpoint calls,
    ``processor`` for custom processors, neither for the built-in merge, filter
    and transform operations. ``parameters`` may contain any JSON value; string
    leaves may carry ``${TYPE:KEY}`` placeholders.
    """

    name: str
    type: OperationType = OperationType.ENDPOINT_CALL
    endpoint: str = ""
    data_source: str = ""
    processor: str = ""
    parameters: dict[str, Any] = msgspec.field(default_factory=dict)
    output_key: str = ""
    cache_config: CacheConfig = msgspec.field(default_factory=CacheConfig)
    fallback_config: FallbackConfig | None = None
    condition: str = ""
    timeout_seconds: float | None = None

    @property
    def target(self) -> str:
        """Name of the data source or processor this operation dispatches to."""
        if self.type is OperationType.ENDPOINT_CALL:
            return self.data_source
        if self.type is OperationType.CUSTOM_PROCESSOR:
            return self.processor
        return ""

    @property
    def result_key(self) -> str:
        return self.output_key or self.name

    def validate(self) -> None:
        if not self.name or not isinstance(self.name, str):
            raise ValueError(f"Invalid operation name: {self.name!r}")
        if self.type is OperationType.ENDPOINT_CALL and not self.data_source:
            raise ValueError(f"Operation {self.name} calls an endpoint but names no data source")
        if self.type is OperationType.CUSTOM_PROCESSOR and not self.processor:
            raise ValueError(f"Operation {self.name} names no processor")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Operation {self.name} timeout must be positive")


class Step(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """A named group of operations sharing one execution strategy."""

    name: str
    execution_type: ExecutionType = ExecutionType.SEQUENTIAL
    condition: str = ""
    operations: list[Operation]
    error_handling: ErrorHandling | None = None

    def validate(self) -> None:
        if not self.name or not isinstance(self.name, str):
            raise ValueError(f"Invalid step name: {self.name!r}")
        if not self.operations:
            raise ValueError(f"Step {self.name} has no operations")
        seen = set()
        for op in self.operations:
            if op.name in seen:
                raise ValueError(f"Duplicate operation name in step {self.name}: {op.name}")
            seen.add(op.name)
            op.validate()


class Workflow(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """Represents a workflow composed of ordered steps."""

    name: str = ""
    description: str = ""
    input_schema: dict[str, Any] = msgspec.field(default_factory=dict)
    output_schema: dict[str, Any] = msgspec.field(default_factory=dict)
    steps: list[Step]
    error_handling: ErrorHandling | None = None
    global_timeout: float | None = None

    def declared_outputs(self) -> frozenset[str] | None:
        """Output keys declared by ``output_schema.properties``; ``None`` when nothing is declared."""
        properties = self.output_schema.get("properties")
        if not isinstance(properties, dict) or not properties:
            return None
        return frozenset(properties)


class ProcessorDefinition(msgspec.Struct, forbid_unknown_fields=True):
    type: str
    config: dict[str, Any] = msgspec.field(default_factory=dict)


class ConfigurationDocument(msgspec.Struct, forbid_unknown_fields=True):
    """Top-level configuration: sources, processors, workflows and request rules.

    Data source definitions stay untyped here because every source type declares its
    own configuration struct.
    """

    settings: dict[str, Any] = msgspec.field(default_factory=dict)
    data_sources: dict[str, dict[str, Any]] = msgspec.field(default_factory=dict)
    processors: dict[str, ProcessorDefinition] = msgspec.field(default_factory=dict)
    workflows: dict[str, Workflow] = msgspec.field(default_factory=dict)
    parameter_templates: dict[str, ParameterTemplate] = msgspec.field(default_factory=dict)
    validation_rules: dict[str, dict[str, ValidationRule]] = msgspec.field(default_factory=dict)
    broad_search_endpoints: list[str] | None = None


class WorkflowResult(msgspec.Struct, forbid_unknown_fields=True):
    """Result of running a workflow: outputs plus every error and warning recorded."""

    id: str
    workflow: str
    status: WorkflowStatus
    outputs: dict[str, Any] = msgspec.field(default_factory=dict)
    errors: list[str] = msgspec.field(default_factory=list)
    warnings: list[str] = msgspec.field(default_factory=list)
    operations: list[OperationResult] = msgspec.field(default_factory=list)

    def to_dict(self):
        """Convert the WorkflowResult to a dictionary."""
        return msgspec.to_builtins(self)

    def to_json(self) -> str:
        """Convert the WorkflowResult to a JSON string."""
        return msgspec.json.encode(self).decode()

    def to_yaml(self) -> str:
        """Convert the WorkflowResult to a YAML string."""
        return msgspec.yaml.encode(self).decode()
