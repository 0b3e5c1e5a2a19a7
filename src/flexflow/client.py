from pathlib import Path
from typing import Any

from flexflow.application.port import WorkflowEngine
from flexflow.application.service import ConfigurationManager, load_workflow
from flexflow.domain.entity import Workflow, WorkflowResult
from flexflow.domain.error import ConfigurationError
from flexflow.domain.port import DataProcessor, DataSource
from flexflow.domain.service import broad_search_errors


class Client:
    """
    Unified client façade for configuration, request validation and workflow execution.

    The Client is the only thing users interact with. It holds the ConfigurationManager
    and the workflow engine wired around it.
    """

    def __init__(self, configuration: ConfigurationManager, engine: WorkflowEngine):
        """
        Initialize the client with a configuration manager and an engine.

        :param configuration: Registry of data sources, processors, workflows and request rules
        :type configuration: ConfigurationManager
        :param engine: The workflow engine implementation (e.g., InMemoryWorkflowEngine)
        :type engine: WorkflowEngine
        """
        self._configuration = configuration
        self._engine = engine

    @property
    def configuration(self) -> ConfigurationManager:
        return self._configuration

    @property
    def engine(self) -> WorkflowEngine:
        return self._engine

    def load_configuration(self, config: dict[str, Any] | str | Path) -> "Client":
        """
        Load a configuration document (a mapping) or file (a path).

        :raises ConfigurationError: If the configuration is invalid
        """
        if isinstance(config, (str, Path)):
            self._configuration.load_configuration(config)
        else:
            self._configuration.load_configuration_from_json(config)
        return self

    def register_data_source(self, name: str, data_source: DataSource) -> "Client":
        self._configuration.register_data_source(name, data_source)
        return self

    def register_processor(
        self, name: str, processor: DataProcessor, config: dict[str, Any] | None = None
    ) -> "Client":
        self._configuration.register_processor(name, processor, config)
        return self

    def run(
        self, workflow: str | dict | Workflow, input: Any = None, run_id: str | None = None
    ) -> WorkflowResult:
        """
        Execute a workflow.

        :param workflow: Name of a registered workflow, or an inline definition
        :type workflow: str | dict | Workflow
        :param input: The workflow input
        :type input: Any
        :param run_id: Optional run identifier
        :type run_id: str | None
        :returns: The workflow execution result
        :rtype: WorkflowResult
        :raises WorkflowNotFound: If a named workflow is not registered
        :raises ConfigurationError: If an inline definition is invalid
        """
        if isinstance(workflow, str):
            return self._engine.execute_workflow(workflow, input, run_id)
        definition = load_workflow(workflow)
        errors = self._configuration.get_workflow_errors(definition)
        if errors:
            raise ConfigurationError(f"Invalid workflow {definition.name or '<inline>'}: " + "; ".join(errors))
        return self._engine.run(definition, input, run_id)

    def validate_request(self, endpoint: str, parameters: Any) -> bool:
        return self._configuration.validate_request(endpoint, parameters)

    def get_validation_errors(self, endpoint: str, parameters: Any) -> list[str]:
        return self._configuration.get_validation_errors(endpoint, parameters)

    def process_request(self, request: Any) -> dict[str, Any]:
        """
        Resolve and validate an endpoint request.

        Broad-search endpoints are checked on the caller parameters before the
        parameter template fills in defaults.

        :param request: ``{"name": endpoint, "parameters": {...}}``
        :type request: Any
        :returns: ``{"success": True, "message": ...}``, or ``{"success": False, "error": {...}}`` with code 400
        :rtype: dict[str, Any]
        """
        if not isinstance(request, dict) or not isinstance(request.get("name"), str) or not request["name"]:
            return self._error(400, "Request must include an endpoint name")
        endpoint = request["name"]
        if endpoint in self._configuration.broad_search_endpoints:
            # template defaults must not satisfy the meaningful-parameter check
            errors = broad_search_errors(endpoint, request.get("parameters"))
            if errors:
                return self._error(400, "; ".join(errors))
        parameters = self._configuration.resolve_parameters(endpoint, request.get("parameters"))
        errors = self._configuration.get_validation_errors(endpoint, parameters)
        if errors:
            return self._error(400, "; ".join(errors))
        return {"success": True, "message": f"Request processed successfully for endpoint: {endpoint}"}

    @staticmethod
    def _error(code: int, message: str) -> dict[str, Any]:
        return {"success": False, "error": {"code": code, "message": message}}

    def clear_cache(self) -> None:
        self._engine.clear_cache()

    def health_check(self) -> dict[str, bool]:
        """
        Check every registered data source.

        :returns: Mapping of data source name to availability
        :rtype: dict[str, bool]
        """
        return {
            name: self._configuration.get_data_source(name).health_check()
            for name in self._configuration.get_available_data_sources()
        }

    def close(self) -> None:
        self._configuration.close()
