"""
Tests for application services.

This module tests load_workflow and the ConfigurationManager: loading, registries,
parameter resolution, request validation and workflow checks.
"""

from typing import Any

import msgspec
import pytest

from flexflow.application.service import ConfigurationManager, load_workflow
from flexflow.domain.entity import Workflow
from flexflow.domain.error import ConfigurationError, DataSourceUnavailable, WorkflowNotFound
from flexflow.domain.port import DataProcessor, DataSource


class EchoConfig(msgspec.Struct, forbid_unknown_fields=True):
    base_url: str = ""
    token: str = ""


class EchoSource(DataSource):
    source_type = "echo"
    config_type = EchoConfig

    def __init__(self, name: str, config: EchoConfig | None = None):
        super().__init__(name)
        self.config = config or EchoConfig()
        self.closed = False

    def execute(self, operation: str, parameters: dict[str, Any]) -> Any:
        return {"operation": operation, "params": parameters}

    def is_available(self) -> bool:
        return True

    def get_type(self) -> str:
        return self.source_type

    def get_connection_info(self) -> dict[str, Any]:
        return {"base_url": self.config.base_url}

    def close(self) -> None:
        self.closed = True


class UpperProcessor(DataProcessor):
    processor_type = "upper"

    def process(self, input: Any, config: dict[str, Any]) -> Any:
        return str(input).upper()

    def get_type(self) -> str:
        return self.processor_type


def workflow_definition(source: str = "api", **operation: Any) -> dict[str, Any]:
    return {
        "steps": [
            {
                "name": "fetch",
                "operations": [{"name": "genes", "data_source": source, "endpoint": "getGenes", **operation}],
            }
        ]
    }


CONFIG = {
    "settings": {"default_limit": 25, "api_host": "api.example.org"},
    "data_sources": {"api": {"type": "echo", "base_url": "https://${CONFIG:api_host}/v1"}},
    "processors": {"shout": {"type": "upper", "config": {"suffix": "!"}}},
    "workflows": {"gene_lookup": workflow_definition()},
    "parameter_templates": {
        "getGenes": {
            "defaults": {"limit": "${CONFIG:default_limit|10}", "species": "human"},
            "aliases": {"confidence": {"strong": "high", "weak": "low"}},
        }
    },
    "validation_rules": {
        "getGenes": {
            "gene_id": {"required": True, "type": "string", "pattern": "[A-Z0-9]+"},
            "score": {"type": "number", "min": 0, "max": 1},
            "confidence": {"enum": ["high", "low"]},
            "limit": {"type": "integer"},
        }
    },
}


class TestLoadWorkflow:
    """Test cases for load_workflow."""

    def test_load_from_dict(self):
        """Test decoding and naming a workflow."""
        workflow = load_workflow(workflow_definition(), "lookup")

        assert isinstance(workflow, Workflow)
        assert workflow.name == "lookup"

    def test_invalid_structure(self):
        """Test structural errors become ConfigurationError."""
        with pytest.raises(ConfigurationError):
            load_workflow({"steps": [{"name": "s", "operations": [{"nam": "x"}]}]}, "bad")

    def test_invalid_semantics(self):
        """Test validation errors become ConfigurationError."""
        with pytest.raises(ConfigurationError, match="has no steps"):
            load_workflow({"steps": []}, "empty")


class TestConfigurationLoading:
    """Test cases for loading configuration documents."""

    def setup_method(self):
        """Setup test fixtures."""
        self.manager = ConfigurationManager({"echo": EchoSource}, {"upper": UpperProcessor})

    def test_load_document(self):
        """Test loading populates every registry."""
        assert self.manager.load_configuration_from_json(CONFIG) is True

        assert self.manager.is_loaded is True
        assert self.manager.get_available_data_sources() == ["api"]
        assert self.manager.get_available_processors() == ["shout"]
        assert self.manager.get_available_workflows() == ["gene_lookup"]
        assert self.manager.get_workflow("gene_lookup").name == "gene_lookup"
        assert self.manager.get_processor_config("shout") == {"suffix": "!"}
        assert self.manager.settings["default_limit"] == 25

    def test_source_config_is_template_resolved(self, monkeypatch):
        """Test string values of source configs resolve against settings and environment."""
        monkeypatch.setenv("FLEXFLOW_TEST_TOKEN", "s3cret")
        document = {
            "settings": {"api_host": "api.example.org"},
            "data_sources": {
                "api": {
                    "type": "echo",
                    "base_url": "https://${CONFIG:api_host}/v1",
                    "token": "${ENV:FLEXFLOW_TEST_TOKEN}",
                }
            },
        }

        self.manager.load_configuration_from_json(document)

        source = self.manager.get_data_source("api")
        assert source.config.base_url == "https://api.example.org/v1"
        assert source.config.token == "s3cret"

    def test_load_json_text(self):
        """Test loading a JSON string."""
        self.manager.load_configuration_from_json(msgspec.json.encode(CONFIG).decode())

        assert self.manager.get_available_workflows() == ["gene_lookup"]

    def test_invalid_json_text(self):
        """Test unparsable JSON raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Invalid configuration JSON"):
            self.manager.load_configuration_from_json("{not json")

    def test_unknown_data_source_type(self):
        """Test an unknown source type fails and leaves the manager unloaded."""
        with pytest.raises(ConfigurationError, match="Unknown data source type 'graphql'"):
            self.manager.load_configuration_from_json({"data_sources": {"api": {"type": "graphql"}}})

        assert self.manager.is_loaded is False
        assert self.manager.get_available_data_sources() == []

    def test_missing_data_source_type(self):
        """Test a source definition without type fails."""
        with pytest.raises(ConfigurationError, match="has no type"):
            self.manager.load_configuration_from_json({"data_sources": {"api": {"base_url": "x"}}})

    def test_unknown_processor_type(self):
        """Test an unknown processor type fails."""
        with pytest.raises(ConfigurationError, match="Unknown processor type"):
            self.manager.load_configuration_from_json({"processors": {"p": {"type": "nope"}}})

    def test_invalid_source_config(self):
        """Test unknown config fields of a source fail."""
        with pytest.raises(ConfigurationError, match="Invalid configuration for data source api"):
            self.manager.load_configuration_from_json({"data_sources": {"api": {"type": "echo", "colour": "red"}}})

    def test_workflow_with_unknown_source(self):
        """Test a workflow referencing an unknown source fails the whole load."""
        document = {**CONFIG, "workflows": {"broken": workflow_definition(source="missing")}}

        with pytest.raises(ConfigurationError, match="unknown data source: missing"):
            self.manager.load_configuration_from_json(document)

        assert self.manager.is_loaded is False
        assert self.manager.get_available_data_sources() == []
        assert self.manager.get_available_workflows() == []

    def test_failed_load_closes_built_sources(self):
        """Test sources built during a failed load are released."""
        built = []

        class TrackingSource(EchoSource):
            def __init__(self, name, config=None):
                super().__init__(name, config)
                built.append(self)

        manager = ConfigurationManager({"echo": TrackingSource})
        document = {
            "data_sources": {"api": {"type": "echo"}},
            "workflows": {"broken": workflow_definition(source="missing")},
        }

        with pytest.raises(ConfigurationError):
            manager.load_configuration_from_json(document)

        assert built and all(source.closed for source in built)

    def test_invalid_validation_pattern(self):
        """Test a rule pattern that is not a valid regular expression fails the load."""
        document = {"validation_rules": {"getGene": {"gene": {"pattern": "[A-Z"}}}}

        with pytest.raises(ConfigurationError, match="invalid pattern"):
            self.manager.load_configuration_from_json(document)

        assert self.manager.is_loaded is False
        assert self.manager.get_validation_errors("getGene", {"gene": "BRCA1"}) == []

    def test_failing_source_constructor(self):
        """Test backend errors while building a source become ConfigurationError and release earlier sources."""
        built = []

        class TrackingSource(EchoSource):
            def __init__(self, name, config=None):
                super().__init__(name, config)
                built.append(self)

        class UnreachableSource(EchoSource):
            def __init__(self, name, config=None):
                raise DataSourceUnavailable(f"{name}: cannot open store")

        manager = ConfigurationManager({"echo": TrackingSource, "unreachable": UnreachableSource})
        document = {"data_sources": {"api": {"type": "echo"}, "store": {"type": "unreachable"}}}

        with pytest.raises(ConfigurationError, match="Cannot create data source store: store: cannot open store"):
            manager.load_configuration_from_json(document)

        assert len(built) == 1 and built[0].closed
        assert manager.get_available_data_sources() == []

    def test_structural_error(self):
        """Test malformed documents raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            self.manager.load_configuration_from_json({"workflows": []})

    def test_load_yaml_file(self, tmp_path):
        """Test loading a YAML configuration file."""
        path = tmp_path / "config.yaml"
        path.write_bytes(msgspec.yaml.encode(CONFIG))

        assert self.manager.load_configuration(path) is True
        assert self.manager.get_available_workflows() == ["gene_lookup"]

    def test_load_json_file(self, tmp_path):
        """Test loading a JSON configuration file."""
        path = tmp_path / "config.json"
        path.write_bytes(msgspec.json.encode(CONFIG))

        assert self.manager.load_configuration(str(path)) is True

    def test_missing_file(self, tmp_path):
        """Test a missing file raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Cannot read configuration file"):
            self.manager.load_configuration(tmp_path / "absent.json")

    def test_custom_broad_search_endpoints(self):
        """Test the document can replace the broad-search endpoint list."""
        self.manager.load_configuration_from_json({"broad_search_endpoints": ["searchEverything"]})

        assert self.manager.broad_search_endpoints == frozenset({"searchEverything"})


class TestRegistries:
    """Test cases for the registries."""

    def setup_method(self):
        """Setup test fixtures."""
        self.manager = ConfigurationManager({"echo": EchoSource}, {"upper": UpperProcessor})

    def test_register_data_source_last_wins(self):
        """Test re-registering a name replaces and closes the previous source."""
        first, second = EchoSource("a"), EchoSource("b")
        self.manager.register_data_source("api", first)
        self.manager.register_data_source("api", second)

        assert self.manager.get_data_source("api") is second
        assert first.closed is True

    def test_unknown_data_source(self):
        """Test unknown source names raise DataSourceUnavailable."""
        with pytest.raises(DataSourceUnavailable):
            self.manager.get_data_source("nowhere")

    def test_register_processor(self):
        """Test registering a processor with configuration."""
        processor = UpperProcessor()
        self.manager.register_processor("shout", processor, {"x": 1})

        assert self.manager.get_processor("shout") is processor
        assert self.manager.get_processor_config("shout") == {"x": 1}

    def test_unknown_processor(self):
        """Test unknown processor names raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            self.manager.get_processor("nothing")

    def test_unknown_workflow(self):
        """Test unknown workflow names raise WorkflowNotFound."""
        with pytest.raises(WorkflowNotFound):
            self.manager.get_workflow("nothing")

    def test_load_workflow(self):
        """Test registering a single workflow."""
        self.manager.register_data_source("api", EchoSource("api"))

        workflow = self.manager.load_workflow("lookup", workflow_definition())

        assert self.manager.get_workflow("lookup") is workflow

    def test_load_workflow_with_unknown_processor(self):
        """Test workflows must reference registered processors."""
        definition = {
            "steps": [{"name": "s", "operations": [{"name": "p", "type": "custom_processor", "processor": "x"}]}]
        }

        with pytest.raises(ConfigurationError, match="unknown processor: x"):
            self.manager.load_workflow("w", definition)

    def test_registries_are_per_instance(self):
        """Test two managers do not share state."""
        other = ConfigurationManager({"echo": EchoSource})
        self.manager.register_data_source("api", EchoSource("api"))

        assert other.get_available_data_sources() == []

    def test_close(self):
        """Test closing releases every source."""
        source = EchoSource("api")
        self.manager.register_data_source("api", source)
        self.manager.close()

        assert source.closed is True


class TestParameterResolution:
    """Test cases for resolve_parameters."""

    def setup_method(self):
        """Setup test fixtures."""
        self.manager = ConfigurationManager({"echo": EchoSource}, {"upper": UpperProcessor})
        self.manager.load_configuration_from_json(CONFIG)

    def test_defaults_fill_missing_parameters(self):
        """Test template defaults fill in and resolve against settings."""
        resolved = self.manager.resolve_parameters("getGenes", {"gene_id": "BRCA1"})

        assert resolved == {"gene_id": "BRCA1", "limit": "25", "species": "human"}

    def test_caller_values_win(self):
        """Test caller values are not replaced by defaults."""
        resolved = self.manager.resolve_parameters("getGenes", {"gene_id": "BRCA1", "species": "mouse"})

        assert resolved["species"] == "mouse"

    def test_aliases(self):
        """Test alias tables map caller vocabulary to canonical values."""
        resolved = self.manager.resolve_parameters("getGenes", {"gene_id": "BRCA1", "confidence": "strong"})

        assert resolved["confidence"] == "high"

    def test_caller_strings_are_not_resolved(self, monkeypatch):
        """Test callers cannot read environment values through placeholders."""
        monkeypatch.setenv("FLEXFLOW_TEST_SECRET", "hidden")

        resolved = self.manager.resolve_parameters("getGenes", {"gene_id": "${ENV:FLEXFLOW_TEST_SECRET}"})

        assert resolved["gene_id"] == "${ENV:FLEXFLOW_TEST_SECRET}"

    def test_endpoint_without_template(self):
        """Test parameters pass through unchanged without a template."""
        params = {"a": [1]}
        resolved = self.manager.resolve_parameters("other", params)

        assert resolved == params
        assert resolved is not params

    def test_input_not_mutated(self):
        """Test the caller's object is left alone."""
        params = {"gene_id": "BRCA1", "confidence": "strong"}
        self.manager.resolve_parameters("getGenes", params)

        assert params == {"gene_id": "BRCA1", "confidence": "strong"}


class TestRequestValidation:
    """Test cases for validate_request and get_validation_errors."""

    def setup_method(self):
        """Setup test fixtures."""
        self.manager = ConfigurationManager({"echo": EchoSource}, {"upper": UpperProcessor})
        self.manager.load_configuration_from_json(CONFIG)

    def test_valid_request(self):
        """Test a request meeting every rule."""
        params = {"gene_id": "BRCA1", "score": 0.5, "confidence": "high", "limit": 10}

        assert self.manager.validate_request("getGenes", params) is True
        assert self.manager.get_validation_errors("getGenes", params) == []

    def test_missing_required(self):
        """Test a missing required parameter."""
        assert self.manager.get_validation_errors("getGenes", {}) == ["Missing required parameter: gene_id"]

    def test_pattern_is_full_match(self):
        """Test patterns must match the whole value."""
        errors = self.manager.get_validation_errors("getGenes", {"gene_id": "brca1 BRCA1"})

        assert errors == ["Parameter gene_id does not match pattern [A-Z0-9]+"]

    def test_type(self):
        """Test type checks."""
        errors = self.manager.get_validation_errors("getGenes", {"gene_id": 5})

        assert errors == ["Parameter gene_id must be of type string"]

    def test_boolean_is_not_a_number(self):
        """Test booleans do not pass number checks."""
        errors = self.manager.get_validation_errors("getGenes", {"gene_id": "A", "score": True})

        assert errors == ["Parameter score must be of type number"]

    def test_range(self):
        """Test min and max bounds."""
        errors = self.manager.get_validation_errors("getGenes", {"gene_id": "A", "score": 1.5})

        assert errors == ["Parameter score must be <= 1"]

    def test_enum(self):
        """Test enumerated values."""
        errors = self.manager.get_validation_errors("getGenes", {"gene_id": "A", "confidence": "medium"})

        assert errors == ["Parameter confidence must be one of: high, low"]

    def test_several_errors(self):
        """Test every violation is reported."""
        errors = self.manager.get_validation_errors("getGenes", {"score": -1, "limit": 2.5})

        assert len(errors) == 3

    def test_endpoint_without_rules(self):
        """Test endpoints without rules accept any parameters object."""
        assert self.manager.validate_request("anything", {"x": None}) is True
        assert self.manager.validate_request("anything", None) is True

    def test_broad_search_missing_parameters(self):
        """Test a broad-search request without parameters."""
        assert self.manager.get_validation_errors("getResearchAssociations", None) == [
            "Missing parameters object for endpoint: getResearchAssociations"
        ]

    def test_broad_search_empty_parameters(self):
        """Test a broad-search request with an empty parameters object."""
        assert self.manager.get_validation_errors("getDrugGeneInteractions", {}) == [
            "At least one search parameter is required for this endpoint."
        ]

    def test_broad_search_without_meaningful_value(self):
        """Test a broad-search request whose values are all empty."""
        assert self.manager.get_validation_errors("getPolygeneticRiskScores", {"gene_ids": []}) == [
            "At least one non-empty search parameter is required for this endpoint."
        ]

    def test_broad_search_valid(self):
        """Test a broad-search request with one meaningful parameter."""
        assert self.manager.validate_request("getResearchAssociations", {"gene_ids": ["BRCA1"]}) is True


class TestWorkflowChecks:
    """Test cases for validate_workflow and get_workflow_errors."""

    def setup_method(self):
        """Setup test fixtures."""
        self.manager = ConfigurationManager({"echo": EchoSource})
        self.manager.register_data_source("api", EchoSource("api"))

    def test_valid(self):
        """Test a valid workflow has no errors."""
        assert self.manager.validate_workflow(load_workflow(workflow_definition(), "w")) is True

    def test_invalid_output_key(self):
        """Test malformed output keys are reported."""
        workflow = load_workflow(workflow_definition(output_key="1 bad key"), "w")

        errors = self.manager.get_workflow_errors(workflow)

        assert errors == ["operation fetch.genes has an invalid output key: '1 bad key'"]

    def test_malformed_condition(self):
        """Test malformed conditions are reported."""
        workflow = load_workflow(workflow_definition(condition="when it rains"), "w")

        errors = self.manager.get_workflow_errors(workflow)

        assert len(errors) == 1
        assert "Malformed condition" in errors[0]

    def test_unknown_fallback_source(self):
        """Test fallback sources must be registered."""
        workflow = load_workflow(workflow_definition(fallback_config={"data_source": "backup"}), "w")

        assert self.manager.get_workflow_errors(workflow) == [
            "operation fetch.genes falls back to unknown data source: backup"
        ]
