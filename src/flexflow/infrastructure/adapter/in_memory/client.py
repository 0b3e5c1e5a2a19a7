from flexflow.application.adapter import ContextResolver, OperationExecutor
from flexflow.application.service import ConfigurationManager
from flexflow.domain.value_object import ExecutionOptions
from flexflow.infrastructure.adapter.in_memory.cache import InMemoryOperationCache
from flexflow.infrastructure.adapter.in_memory.executor_factory import InMemoryExecutorFactory
from flexflow.infrastructure.adapter.in_memory.workflow_engine import InMemoryWorkflowEngine


def create(registry: ConfigurationManager, execution_options: ExecutionOptions | None = None) -> InMemoryWorkflowEngine:
    """
    Wires an InMemoryWorkflowEngine around a configuration registry.

    :param registry: The configuration manager supplying workflows, sources and processors
    :type registry: ConfigurationManager
    :param execution_options: Default timeouts and error policy
    :type execution_options: ExecutionOptions | None
    :returns: Configured engine
    :rtype: InMemoryWorkflowEngine
    """
    execution_options = execution_options if execution_options is not None else ExecutionOptions()
    cache = InMemoryOperationCache()
    operations = OperationExecutor(
        registry=registry,
        values=ContextResolver(registry, registry.templates),
        cache=cache,
        execution_options=execution_options,
    )
    return InMemoryWorkflowEngine(
        registry=registry,
        executor_factory=InMemoryExecutorFactory(operations),
        cache=cache,
        execution_options=execution_options,
    )
