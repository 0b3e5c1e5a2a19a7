from pathlib import Path
from typing import Any

import msgspec

from flexflow.application.service import ConfigurationManager
from flexflow.backend import DataSourceType
from flexflow.client import Client
from flexflow.domain.error import ConfigurationError, FlexflowError
from flexflow.domain.port import DataProcessor, DataSource
from flexflow.domain.value_object import ExecutionOptions
from flexflow.infrastructure.adapter.in_memory.client import create as create_in_memory_engine
from flexflow.infrastructure.provider import get_data_source_types, get_processor_types


def create(
    config: dict[str, Any] | str | Path | None = None,
    *,
    options: ExecutionOptions | None = None,
    data_sources: dict[str, DataSource] | None = None,
    processors: dict[str, DataProcessor] | None = None,
) -> Client:
    """
    Factory function to create a Client backed by the in-memory engine.

    Data sources and processors passed here are registered before the configuration
    is loaded, so its workflows may reference them.

    :param config: Optional configuration document or path of a JSON/YAML file
    :type config: dict[str, Any] | str | Path | None
    :param options: Default timeouts and error policy
    :type options: ExecutionOptions | None
    :param data_sources: Data source instances to pre-register
    :type data_sources: dict[str, DataSource] | None
    :param processors: Processor instances to pre-register
    :type processors: dict[str, DataProcessor] | None
    :returns: A configured Client instance
    :rtype: Client
    :raises ConfigurationError: If the configuration is invalid
    """
    manager = ConfigurationManager(get_data_source_types(), get_processor_types())
    for name, data_source in (data_sources or {}).items():
        manager.register_data_source(name, data_source)
    for name, processor in (processors or {}).items():
        manager.register_processor(name, processor)

    client = Client(manager, create_in_memory_engine(manager, options))
    if config is not None:
        client.load_configuration(config)
    return client


def create_data_source(source_type: DataSourceType | str, name: str, config: dict[str, Any]) -> DataSource:
    """
    Build one of the built-in data sources.

    :param source_type: The data source type
    :type source_type: DataSourceType | str
    :param name: Registry name of the data source
    :type name: str
    :param config: Per-type configuration fields
    :type config: dict[str, Any]
    :returns: The configured data source
    :rtype: DataSource
    :raises ConfigurationError: If the type is unsupported or the configuration is invalid
    """
    try:
        source_type = DataSourceType(source_type)
    except ValueError:
        raise ConfigurationError(f"Unsupported data source type: {source_type}") from None
    cls = get_data_source_types()[source_type.value]
    try:
        return cls.from_config(name, config)
    except msgspec.ValidationError as e:
        raise ConfigurationError(f"Invalid configuration for data source {name}: {e}") from e
    except (FlexflowError, OSError) as e:
        raise ConfigurationError(f"Cannot create data source {name}: {e}") from e
