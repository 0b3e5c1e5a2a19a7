"""
Tests for domain entities.

This module tests operation, step and workflow decoding plus the result helpers.
"""

import msgspec
import pytest

from flexflow.domain.entity import ConfigurationDocument, Operation, Step, Workflow, WorkflowResult
from flexflow.domain.value_object import (
    ExecutionType,
    OperationResult,
    OperationStatus,
    OperationType,
    WorkflowStatus,
)


class TestOperation:
    """Test cases for Operation."""

    def test_decode_with_defaults(self):
        """Test decoding an operation fills the defaults."""
        op = msgspec.convert({"name": "fetch", "data_source": "api"}, type=Operation)

        assert op.type is OperationType.ENDPOINT_CALL
        assert op.parameters == {}
        assert op.cache_config.enabled is False
        assert op.fallback_config is None
        assert op.timeout_seconds is None

    def test_result_key_defaults_to_name(self):
        """Test result_key falls back to the operation name."""
        assert Operation(name="fetch").result_key == "fetch"
        assert Operation(name="fetch", output_key="genes").result_key == "genes"

    def test_target_depends_on_type(self):
        """Test that the operation type decides which target is meaningful."""
        endpoint = Operation(name="a", data_source="api", processor="p")
        processor = Operation(name="b", type=OperationType.CUSTOM_PROCESSOR, data_source="api", processor="p")
        merge = Operation(name="c", type=OperationType.MERGE, data_source="api")

        assert endpoint.target == "api"
        assert processor.target == "p"
        assert merge.target == ""

    def test_validate_requires_data_source_for_endpoint_calls(self):
        """Test an endpoint call without data source is rejected."""
        with pytest.raises(ValueError, match="names no data source"):
            Operation(name="fetch").validate()

    def test_validate_requires_processor(self):
        """Test a processor operation without processor is rejected."""
        with pytest.raises(ValueError, match="names no processor"):
            Operation(name="norm", type=OperationType.CUSTOM_PROCESSOR).validate()

    def test_validate_rejects_non_positive_timeout(self):
        """Test that timeouts must be positive."""
        with pytest.raises(ValueError, match="timeout must be positive"):
            Operation(name="fetch", data_source="api", timeout_seconds=0).validate()

    def test_unknown_fields_are_rejected(self):
        """Test that misspelled fields fail decoding."""
        with pytest.raises(msgspec.ValidationError):
            msgspec.convert({"name": "fetch", "datasource": "api"}, type=Operation)

    def test_fallback_default_enables_use_default(self):
        """Test that a non-null default value turns use_default on."""
        op = msgspec.convert(
            {"name": "fetch", "data_source": "api", "fallback_config": {"default_value": []}}, type=Operation
        )

        assert op.fallback_config.use_default is True


class TestStep:
    """Test cases for Step."""

    def test_decode_execution_type(self):
        """Test decoding the execution type from its string value."""
        step = msgspec.convert(
            {"name": "s", "execution_type": "parallel", "operations": [{"name": "a", "data_source": "x"}]},
            type=Step,
        )

        assert step.execution_type is ExecutionType.PARALLEL

    def test_validate_duplicate_operation_names(self):
        """Test duplicate operation names within a step are rejected."""
        step = Step(
            name="s",
            operations=[Operation(name="a", data_source="x"), Operation(name="a", data_source="y")],
        )

        with pytest.raises(ValueError, match="Duplicate operation name"):
            step.validate()

    def test_validate_empty_step(self):
        """Test a step without operations is rejected."""
        with pytest.raises(ValueError, match="has no operations"):
            Step(name="s", operations=[]).validate()


class TestWorkflow:
    """Test cases for Workflow."""

    def test_declared_outputs(self):
        """Test declared outputs come from output_schema properties."""
        workflow = Workflow(
            name="w",
            steps=[],
            output_schema={"type": "object", "properties": {"genes": {}, "drugs": {}}},
        )

        assert workflow.declared_outputs() == frozenset({"genes", "drugs"})

    def test_no_declared_outputs(self):
        """Test that a workflow without output properties declares nothing."""
        assert Workflow(name="w", steps=[]).declared_outputs() is None

    def test_configuration_document_defaults(self):
        """Test that an empty document decodes."""
        doc = msgspec.convert({}, type=ConfigurationDocument)

        assert doc.workflows == {}
        assert doc.broad_search_endpoints is None


class TestWorkflowResult:
    """Test cases for WorkflowResult."""

    def setup_method(self):
        """Setup test fixtures."""
        self.result = WorkflowResult(
            id="run-1",
            workflow="w",
            status=WorkflowStatus.PARTIALLY_FAILED,
            outputs={"genes": ["BRCA1"]},
            errors=["Operation 'x' failed: boom"],
            warnings=[],
            operations=[OperationResult(name="x", output_key="x", status=OperationStatus.FAILED, error="boom")],
        )

    def test_to_dict(self):
        """Test converting the result to builtins."""
        data = self.result.to_dict()

        assert data["workflow"] == "w"
        assert data["status"] == "partially_failed"
        assert data["outputs"] == {"genes": ["BRCA1"]}
        assert data["errors"] == ["Operation 'x' failed: boom"]
        assert data["warnings"] == []
        assert data["operations"][0]["status"] == "failed"

    def test_to_json(self):
        """Test the JSON rendering decodes back to the same dictionary."""
        assert msgspec.json.decode(self.result.to_json()) == self.result.to_dict()

    def test_to_yaml(self):
        """Test the YAML rendering mentions the status."""
        assert "partially_failed" in self.result.to_yaml()
