from abc import ABC, abstractmethod
from typing import Any

from flexflow.domain.entity import Step, Workflow
from flexflow.domain.port import DataProcessor, DataSource
from flexflow.domain.value_object import ErrorPolicy, OperationResult


class WorkflowEngine(ABC):
    """Abstract base class defining the workflow engine interface."""

    @abstractmethod
    def run(self, workflow: Workflow, input: Any = None, run_id: str | None = None) -> Any:
        """
        Runs the given workflow.

        :param workflow: The workflow to execute
        :type workflow: Workflow
        :param input: The workflow input value
        :type input: Any
        :param run_id: Optional run identifier
        :type run_id: str | None
        :returns: The result of executing the workflow
        :rtype: Any
        """
        ...

    @abstractmethod
    def execute_workflow(self, workflow_name: str, input: Any = None, run_id: str | None = None) -> Any:
        """
        Look up a registered workflow by name and run it.

        :param workflow_name: Name of a registered workflow
        :type workflow_name: str
        :param input: The workflow input value
        :type input: Any
        :param run_id: Optional run identifier
        :type run_id: str | None
        :returns: The result of executing the workflow
        :rtype: Any
        :raises WorkflowNotFound: If no workflow has that name
        """
        ...

    @abstractmethod
    def clear_cache(self) -> None:
        """Drop every cached operation result."""


class Context(ABC):
    """Abstract interface for workflow execution context."""

    @abstractmethod
    def lookup(self, path: str) -> Any:
        """
        Resolve a variable path against variables, outputs and input.

        :param path: Dotted path, e.g. ``genes[0].symbol``
        :type path: str
        :returns: The referenced value
        :rtype: Any
        :raises: KeyError if nothing matches
        """

    @abstractmethod
    def store_result(self, key: str, value: Any) -> None:
        """Store an operation result under its output key."""

    @abstractmethod
    def get_input(self) -> Any: ...

    @abstractmethod
    def add_error(self, error: str) -> None: ...

    @abstractmethod
    def add_warning(self, warning: str) -> None: ...

    @abstractmethod
    def snapshot(self) -> "Context":
        """Independent copy of the readable state."""

    @abstractmethod
    def template_context(self, settings: dict[str, Any] | None = None) -> dict[str, str]:
        """Flat string map used for placeholder interpolation."""


class StepExecutor(ABC):
    """Abstract executor interface for executing workflow steps and returning results."""

    @abstractmethod
    def execute(
        self, step: Step, ctx: Context, on_error: ErrorPolicy, deadline: float | None = None
    ) -> list[OperationResult]:
        """
        Execute every operation of a step against the context.

        :param step: The workflow step to execute
        :type step: Step
        :param ctx: The execution context of the current run
        :type ctx: Context
        :param on_error: Failure policy for the step
        :type on_error: ErrorPolicy
        :param deadline: ``time.monotonic()`` value at which the workflow times out
        :type deadline: float | None
        :returns: One result per operation
        :rtype: list[OperationResult]
        :raises ExecutionError: If an operation fails under the abort policy
        """
        ...


class ExecutorFactory(ABC):
    """Abstract factory for creating step executors."""

    @abstractmethod
    def get_executor(self, step: Step) -> StepExecutor:
        """
        Get an executor for the given step.

        :param step: The step to get an executor for
        :type step: Step
        :returns: An executor capable of executing the step
        :rtype: StepExecutor
        """


class Registry(ABC):
    """Name lookup of data sources and processors used at dispatch time."""

    @property
    @abstractmethod
    def settings(self) -> dict[str, Any]: ...

    @abstractmethod
    def get_data_source(self, name: str) -> DataSource:
        """
        :raises DataSourceUnavailable: If no data source has that name
        """

    @abstractmethod
    def get_processor(self, name: str) -> DataProcessor:
        """
        :raises ConfigurationError: If no processor has that name
        """

    @abstractmethod
    def get_processor_config(self, name: str) -> dict[str, Any]: ...


class OperationCache(ABC):
    """Abstract interface for the engine-level operation result cache."""

    @abstractmethod
    def set(self, key: str, value: Any):
        """
        Store a value with the given key.

        :param key: The key to store the value under
        :type key: str
        :param value: The value to store
        :type value: Any
        """

    @abstractmethod
    def get(self, key: str) -> Any:
        """
        Retrieve a value by key.

        :param key: The key to retrieve the value for
        :type key: str
        :returns: The stored value
        :rtype: Any
        :raises: KeyError if the key is not found
        """

    @abstractmethod
    def has(self, key: str) -> bool: ...

    @abstractmethod
    def clear(self) -> None: ...


class PlaceholderResolver(ABC):
    """Abstract interface for resolving placeholders in values."""

    @abstractmethod
    def resolve_any(self, value: Any, ctx: Context) -> Any:
        """
        Resolve placeholders in any value type.

        :param value: The value that may contain placeholders
        :type value: Any
        :param ctx: The execution context supplying referenced values
        :type ctx: Context
        :returns: The value with placeholders resolved
        :rtype: Any
        """
