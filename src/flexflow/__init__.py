"""
Flexflow - declarative data-retrieval workflows

Describe multi-step pipelines over pluggable data sources (REST APIs, databases,
files, caches) once, then run them with sequential, parallel or conditional steps,
per-operation caching and fallbacks.
"""

from flexflow.backend import DataSourceType
from flexflow.client import Client
from flexflow.domain.entity import WorkflowResult
from flexflow.domain.error import (
    ConditionEvaluationWarning,
    ConfigurationError,
    DataSourceUnavailable,
    ExecutionError,
    FlexflowError,
    OperationTimeoutError,
    ValidationError,
    WorkflowNotFound,
)
from flexflow.domain.port import DataProcessor, DataSource
from flexflow.domain.value_object import ErrorPolicy, ExecutionOptions, WorkflowStatus
from flexflow.factory import create, create_data_source

__all__ = [
    "Client",
    "DataSourceType",
    "create",
    "create_data_source",
    "DataSource",
    "DataProcessor",
    "ExecutionOptions",
    "ErrorPolicy",
    "WorkflowResult",
    "WorkflowStatus",
    "FlexflowError",
    "ConfigurationError",
    "ValidationError",
    "WorkflowNotFound",
    "DataSourceUnavailable",
    "ExecutionError",
    "OperationTimeoutError",
    "ConditionEvaluationWarning",
]
