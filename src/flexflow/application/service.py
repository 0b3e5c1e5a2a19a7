import copy
import re
import threading
from pathlib import Path
from typing import Any

import msgspec
import structlog

from flexflow.application.adapter import TemplateResolver, stringify
from flexflow.application.port import Registry
from flexflow.domain.entity import ConfigurationDocument, ProcessorDefinition, Workflow
from flexflow.domain.error import (
    ConditionEvaluationWarning,
    ConfigurationError,
    DataSourceUnavailable,
    FlexflowError,
    WorkflowNotFound,
)
from flexflow.domain.port import DataProcessor, DataSource
from flexflow.domain.service import (
    DEFAULT_BROAD_SEARCH_ENDPOINTS,
    broad_search_errors,
    parse_condition,
    validate_workflow,
)
from flexflow.domain.value_object import OperationType, ParameterTemplate, ValidationRule

logger = structlog.get_logger(__name__)

OUTPUT_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")

_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, list),
    "object": lambda v: isinstance(v, dict),
}


def load_workflow(data: dict | Workflow, name: str = "") -> Workflow:
    """
    Decodes and validates a workflow from a Python dictionary.

    :param data: The workflow data as a dictionary
    :type data: dict | Workflow
    :param name: Name used when the definition carries none
    :type name: str
    :returns: A Workflow instance representing the validated workflow
    :rtype: Workflow
    :raises ConfigurationError: If the definition cannot be decoded or is invalid
    """
    try:
        workflow = data if isinstance(data, Workflow) else msgspec.convert(data, type=Workflow)
    except msgspec.ValidationError as e:
        raise ConfigurationError(f"Invalid workflow {name or '<unnamed>'}: {e}") from e
    if not workflow.name:
        workflow.name = name
    try:
        validate_workflow(workflow)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    return workflow


class ConfigurationManager(Registry):
    """Owns the loaded configuration and the data source, processor and workflow registries.

    Registries are plain instance state, so several managers can coexist. Source and
    processor *types* are supplied by the caller (see ``flexflow.infrastructure.provider``).
    """

    def __init__(
        self,
        data_source_types: dict[str, type[DataSource]] | None = None,
        processor_types: dict[str, type[DataProcessor]] | None = None,
        templates: TemplateResolver | None = None,
    ):
        self._data_source_types = dict(data_source_types or {})
        self._processor_types = dict(processor_types or {})
        self.templates = templates if templates is not None else TemplateResolver()
        self._lock = threading.RLock()
        self._settings: dict[str, Any] = {}
        self._data_sources: dict[str, DataSource] = {}
        self._processors: dict[str, DataProcessor] = {}
        self._processor_configs: dict[str, dict[str, Any]] = {}
        self._workflows: dict[str, Workflow] = {}
        self._parameter_templates: dict[str, ParameterTemplate] = {}
        self._validation_rules: dict[str, dict[str, ValidationRule]] = {}
        self._broad_search_endpoints = set(DEFAULT_BROAD_SEARCH_ENDPOINTS)
        self._loaded = False

    @property
    def settings(self) -> dict[str, Any]:
        return self._settings

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def broad_search_endpoints(self) -> frozenset[str]:
        return frozenset(self._broad_search_endpoints)

    # -- loading -------------------------------------------------------------

    def load_configuration(self, path: str | Path) -> bool:
        """
        Load a JSON or YAML configuration file (chosen by suffix).

        :param path: Path of the configuration file
        :type path: str | Path
        :returns: True once the configuration is loaded
        :rtype: bool
        :raises ConfigurationError: If the file cannot be read or the configuration is invalid
        """
        path = Path(path)
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                document = msgspec.yaml.decode(raw)
            else:
                document = msgspec.json.decode(raw)
        except msgspec.DecodeError as e:
            raise ConfigurationError(f"Cannot parse configuration file {path}: {e}") from e
        return self.load_configuration_from_json(document)

    def load_configuration_from_json(self, document: dict[str, Any] | str | bytes) -> bool:
        """
        Load a configuration document.

        Everything is built and validated before any registry changes, so a failed
        load leaves the manager exactly as it was.

        :param document: The decoded document, or its JSON text
        :type document: dict[str, Any] | str | bytes
        :returns: True once the configuration is loaded
        :rtype: bool
        :raises ConfigurationError: If the document is malformed, names an unknown type or holds an invalid workflow
        """
        if isinstance(document, (str, bytes)):
            try:
                document = msgspec.json.decode(document)
            except msgspec.DecodeError as e:
                raise ConfigurationError(f"Invalid configuration JSON: {e}") from e
        try:
            config = msgspec.convert(document, type=ConfigurationDocument)
        except msgspec.ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        settings = {**self._settings, **config.settings}
        template_context = {key: stringify(value) for key, value in settings.items()}

        sources: dict[str, DataSource] = {}
        try:
            for name, definition in config.data_sources.items():
                sources[name] = self._build_data_source(name, definition, template_context)
            processors = {name: self._build_processor(name, d) for name, d in config.processors.items()}

            known_sources = set(self._data_sources) | set(sources)
            known_processors = set(self._processors) | set(processors)
            workflows = {}
            for name, definition in config.workflows.items():
                workflow = load_workflow(definition, name)
                errors = self._workflow_errors(workflow, known_sources, known_processors)
                if errors:
                    raise ConfigurationError(f"Invalid workflow {name}: " + "; ".join(errors))
                workflows[name] = workflow
        except Exception:
            for source in sources.values():
                source.close()
            raise

        with self._lock:
            self._settings = settings
            for name, source in sources.items():
                self._replace_data_source(name, source)
            for name, (processor, processor_config) in processors.items():
                self._processors[name] = processor
                self._processor_configs[name] = processor_config
            self._workflows.update(workflows)
            self._parameter_templates.update(config.parameter_templates)
            self._validation_rules.update(config.validation_rules)
            if config.broad_search_endpoints is not None:
                self._broad_search_endpoints = set(config.broad_search_endpoints)
            self._loaded = True
        logger.info(
            "configuration_loaded",
            data_sources=len(sources),
            processors=len(processors),
            workflows=len(workflows),
        )
        return True

    def _build_data_source(self, name: str, definition: dict[str, Any], context: dict[str, str]) -> DataSource:
        source_type = definition.get("type")
        if not source_type:
            raise ConfigurationError(f"Data source {name} has no type")
        cls = self._data_source_types.get(source_type)
        if cls is None:
            raise ConfigurationError(f"Unknown data source type '{source_type}' for data source {name}")
        fields = {key: value for key, value in definition.items() if key != "type"}
        fields = self.templates.resolve_any(fields, context)
        try:
            return cls.from_config(name, fields)
        except msgspec.ValidationError as e:
            raise ConfigurationError(f"Invalid configuration for data source {name}: {e}") from e
        except (FlexflowError, OSError) as e:
            raise ConfigurationError(f"Cannot create data source {name}: {e}") from e

    def _build_processor(
        self, name: str, definition: ProcessorDefinition
    ) -> tuple[DataProcessor, dict[str, Any]]:
        cls = self._processor_types.get(definition.type)
        if cls is None:
            raise ConfigurationError(f"Unknown processor type '{definition.type}' for processor {name}")
        return cls(), dict(definition.config)

    # -- registries ----------------------------------------------------------

    def register_data_source(self, name: str, data_source: DataSource) -> None:
        with self._lock:
            self._replace_data_source(name, data_source)

    def _replace_data_source(self, name: str, data_source: DataSource) -> None:
        previous = self._data_sources.get(name)
        if previous is not None and previous is not data_source:
            logger.debug("data_source_replaced", data_source=name)
            previous.close()
        self._data_sources[name] = data_source

    def register_processor(self, name: str, processor: DataProcessor, config: dict[str, Any] | None = None) -> None:
        with self._lock:
            if name in self._processors:
                logger.debug("processor_replaced", processor=name)
            self._processors[name] = processor
            self._processor_configs[name] = dict(config or {})

    def get_data_source(self, name: str) -> DataSource:
        try:
            return self._data_sources[name]
        except KeyError:
            raise DataSourceUnavailable(f"Unknown data source: {name}") from None

    def get_processor(self, name: str) -> DataProcessor:
        try:
            return self._processors[name]
        except KeyError:
            raise ConfigurationError(f"Unknown processor: {name}") from None

    def get_processor_config(self, name: str) -> dict[str, Any]:
        return copy.deepcopy(self._processor_configs.get(name, {}))

    def get_available_data_sources(self) -> list[str]:
        return sorted(self._data_sources)

    def get_available_processors(self) -> list[str]:
        return sorted(self._processors)

    def load_workflow(self, name: str, definition: dict[str, Any] | Workflow) -> Workflow:
        """
        Register a single workflow definition.

        :raises ConfigurationError: If the workflow is invalid or references unknown sources or processors
        """
        workflow = load_workflow(definition, name)
        errors = self.get_workflow_errors(workflow)
        if errors:
            raise ConfigurationError(f"Invalid workflow {name}: " + "; ".join(errors))
        with self._lock:
            self._workflows[name] = workflow
        return workflow

    def get_workflow(self, name: str) -> Workflow:
        try:
            return self._workflows[name]
        except KeyError:
            raise WorkflowNotFound(f"Workflow not found: {name}") from None

    def get_available_workflows(self) -> list[str]:
        return sorted(self._workflows)

    # -- request parameters --------------------------------------------------

    def resolve_parameters(self, endpoint: str, input_params: dict[str, Any] | None) -> dict[str, Any] | None:
        """
        Apply the endpoint's parameter template to caller parameters.

        Missing parameters take the template defaults (whose placeholders are resolved
        against settings and input), then alias tables map caller values onto canonical
        ones. Caller values themselves are never template-resolved.

        :param endpoint: The endpoint name
        :type endpoint: str
        :param input_params: Caller parameters; ``None`` when the request had none
        :type input_params: dict[str, Any] | None
        :returns: The resolved parameters, or ``None`` if there were none and no template applies
        :rtype: dict[str, Any] | None
        """
        template = self._parameter_templates.get(endpoint)
        if template is None or not isinstance(input_params, (dict, type(None))):
            return copy.deepcopy(input_params)
        if input_params is None and endpoint in self._broad_search_endpoints:
            # a missing parameters object stays missing for broad searches
            return None

        resolved = copy.deepcopy(input_params or {})
        context = {key: stringify(value) for key, value in self._settings.items()}
        context.update({key: stringify(value) for key, value in resolved.items()})
        for key, default in template.defaults.items():
            if key not in resolved:
                resolved[key] = self.templates.resolve_any(copy.deepcopy(default), context)
        for key, aliases in template.aliases.items():
            value = resolved.get(key)
            if isinstance(value, str) and value in aliases:
                resolved[key] = copy.deepcopy(aliases[value])
        return resolved

    def validate_request(self, endpoint: str, parameters: Any) -> bool:
        return not self.get_validation_errors(endpoint, parameters)

    def get_validation_errors(self, endpoint: str, parameters: Any) -> list[str]:
        """
        Check parameters against the endpoint's rules.

        Broad-search endpoints first require at least one meaningful parameter and
        report exactly one message when they have none.

        :param endpoint: The endpoint name
        :type endpoint: str
        :param parameters: The parameters object; ``None`` when the request carried none
        :type parameters: Any
        :returns: Human-readable errors, empty when the request is valid
        :rtype: list[str]
        """
        if endpoint in self._broad_search_endpoints:
            errors = broad_search_errors(endpoint, parameters)
            if errors:
                return errors
        if parameters is None:
            parameters = {}
        if not isinstance(parameters, dict):
            return [f"Parameters for endpoint {endpoint} must be an object"]

        errors = []
        for name, rule in self._validation_rules.get(endpoint, {}).items():
            if name not in parameters or parameters[name] is None:
                if rule.required:
                    errors.append(f"Missing required parameter: {name}")
                continue
            errors.extend(self._rule_errors(name, parameters[name], rule))
        return errors

    def _rule_errors(self, name: str, value: Any, rule: ValidationRule) -> list[str]:
        if rule.type is not None and not _TYPE_CHECKS[rule.type](value):
            return [f"Parameter {name} must be of type {rule.type}"]
        errors = []
        if rule.pattern is not None:
            if not isinstance(value, str) or re.fullmatch(rule.pattern, value) is None:
                errors.append(f"Parameter {name} does not match pattern {rule.pattern}")
        if rule.min is not None or rule.max is not None:
            if not _TYPE_CHECKS["number"](value):
                errors.append(f"Parameter {name} must be a number")
            else:
                if rule.min is not None and value < rule.min:
                    errors.append(f"Parameter {name} must be >= {rule.min:g}")
                if rule.max is not None and value > rule.max:
                    errors.append(f"Parameter {name} must be <= {rule.max:g}")
        if rule.enum is not None and value not in rule.enum:
            allowed = ", ".join(str(option) for option in rule.enum)
            errors.append(f"Parameter {name} must be one of: {allowed}")
        return errors

    # -- workflow checks -----------------------------------------------------

    def validate_workflow(self, workflow: Workflow) -> bool:
        return not self.get_workflow_errors(workflow)

    def get_workflow_errors(self, workflow: Workflow) -> list[str]:
        try:
            validate_workflow(workflow)
        except ValueError as e:
            return [str(e)]
        return self._workflow_errors(workflow, set(self._data_sources), set(self._processors))

    def _workflow_errors(self, workflow: Workflow, sources: set[str], processors: set[str]) -> list[str]:
        errors = []
        conditions = []
        for step in workflow.steps:
            if step.condition:
                conditions.append((f"step {step.name}", step.condition))
            for operation in step.operations:
                where = f"operation {step.name}.{operation.name}"
                if operation.type is OperationType.ENDPOINT_CALL and operation.data_source not in sources:
                    errors.append(f"{where} references unknown data source: {operation.data_source}")
                if operation.type is OperationType.CUSTOM_PROCESSOR and operation.processor not in processors:
                    errors.append(f"{where} references unknown processor: {operation.processor}")
                fallback = operation.fallback_config
                if fallback is not None and fallback.data_source and fallback.data_source not in sources:
                    errors.append(f"{where} falls back to unknown data source: {fallback.data_source}")
                if not OUTPUT_KEY_PATTERN.match(operation.result_key):
                    errors.append(f"{where} has an invalid output key: {operation.result_key!r}")
                if operation.condition:
                    conditions.append((where, operation.condition))
        for where, condition in conditions:
            try:
                parse_condition(condition)
            except ConditionEvaluationWarning as e:
                errors.append(f"{where}: {e}")
        return errors

    def close(self) -> None:
        """Release the resources held by every registered data source."""
        with self._lock:
            for source in self._data_sources.values():
                source.close()
