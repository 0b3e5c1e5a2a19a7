from abc import ABC, abstractmethod
from typing import Any, ClassVar

import msgspec


class DataSource(ABC):
    """Pluggable backend that executes named operations against external or local data.

    Instances are shared between operations, so ``execute`` must be safe to call
    from several threads at once.
    """

    source_type: ClassVar[str] = ""
    config_type: ClassVar[type[msgspec.Struct] | None] = None

    def __init__(self, name: str):
        self._name = name

    @classmethod
    def from_config(cls, name: str, config: dict[str, Any]) -> "DataSource":
        """
        Build a data source from its configuration mapping.

        :param name: Registry name of the data source
        :type name: str
        :param config: Per-type configuration fields (without ``type``)
        :type config: dict[str, Any]
        :returns: The configured data source
        :rtype: DataSource
        :raises msgspec.ValidationError: If the configuration does not match ``config_type``
        """
        return cls(name, msgspec.convert(config, type=cls.config_type))

    @abstractmethod
    def execute(self, operation: str, parameters: dict[str, Any]) -> Any:
        """
        Execute a named operation.

        :param operation: The operation (endpoint) name
        :type operation: str
        :param parameters: Resolved parameters
        :type parameters: dict[str, Any]
        :returns: The structured result
        :rtype: Any
        :raises DataSourceUnavailable: If the backend cannot be reached
        :raises ExecutionError: If the backend reports a failure
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the backend can currently serve requests."""

    @abstractmethod
    def get_type(self) -> str: ...

    def get_name(self) -> str:
        return self._name

    def health_check(self) -> bool:
        return self.is_available()

    @abstractmethod
    def get_connection_info(self) -> dict[str, Any]:
        """Non-secret description of the backend connection."""

    def close(self) -> None:
        """Release held resources. The default implementation holds none."""


class DataProcessor(ABC):
    """Pluggable transform applied to retrieved data."""

    processor_type: ClassVar[str] = ""

    @abstractmethod
    def process(self, input: Any, config: dict[str, Any]) -> Any:
        """
        Transform the input.

        :param input: The data to transform
        :type input: Any
        :param config: Processor configuration merged with operation parameters
        :type config: dict[str, Any]
        :returns: The transformed data
        :rtype: Any
        :raises ExecutionError: If the input cannot be processed
        """

    @abstractmethod
    def get_type(self) -> str: ...
