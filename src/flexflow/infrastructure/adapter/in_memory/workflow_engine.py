import time
import uuid
from typing import Any

import structlog

from flexflow.application.adapter import ExecutionContext, check_condition
from flexflow.application.port import Context, ExecutorFactory, OperationCache, WorkflowEngine
from flexflow.application.service import ConfigurationManager
from flexflow.domain.entity import Step, Workflow, WorkflowResult
from flexflow.domain.error import FlexflowError, OperationTimeoutError
from flexflow.domain.value_object import (
    ErrorPolicy,
    ExecutionOptions,
    OperationResult,
    OperationStatus,
    WorkflowStatus,
)
from flexflow.infrastructure.adapter.in_memory.cache import InMemoryOperationCache

logger = structlog.get_logger(__name__)


class UUIDGenerator:
    """Generates unique identifiers using UUID."""

    def generate(self) -> str:
        """
        Generate a unique identifier.

        :returns: A unique identifier string
        :rtype: str
        """
        return uuid.uuid4().hex


class InMemoryWorkflowEngine(WorkflowEngine):
    """Workflow engine that executes steps in-process using step executors.

    Every run gets its own ExecutionContext; only the operation cache is shared
    between runs.
    """

    def __init__(
        self,
        registry: ConfigurationManager,
        executor_factory: ExecutorFactory,
        cache: OperationCache | None = None,
        execution_options: ExecutionOptions | None = None,
    ):
        """
        Initializes with the configuration registry and an executor factory.

        :param registry: Source of workflow definitions
        :type registry: ConfigurationManager
        :param executor_factory: Factory for creating step executors
        :type executor_factory: ExecutorFactory
        :param cache: Operation result cache shared by all runs
        :type cache: OperationCache | None
        :param execution_options: Default timeouts and error policy
        :type execution_options: ExecutionOptions | None
        """
        self.registry = registry
        self.executor_factory = executor_factory
        self.cache = cache if cache is not None else InMemoryOperationCache()
        self.execution_options = execution_options if execution_options is not None else ExecutionOptions()

    def execute_workflow(self, workflow_name: str, input: Any = None, run_id: str | None = None) -> WorkflowResult:
        """
        Look up a registered workflow by name and run it.

        :raises WorkflowNotFound: If no workflow has that name
        """
        workflow = self.registry.get_workflow(workflow_name)
        return self.run(workflow, input, run_id)

    def run(self, workflow: Workflow, input: Any = None, run_id: str | None = None) -> WorkflowResult:
        """
        Executes each step of the workflow in order and returns a WorkflowResult.

        :param workflow: The workflow to execute
        :type workflow: Workflow
        :param input: The workflow input
        :type input: Any
        :param run_id: Optional run identifier
        :type run_id: str | None
        :returns: The result of executing the workflow
        :rtype: WorkflowResult
        """
        if run_id is None:
            run_id = UUIDGenerator().generate()
        ctx = ExecutionContext(input, workflow.declared_outputs())
        budget = workflow.global_timeout or self.execution_options.workflow_timeout
        deadline = time.monotonic() + budget
        default_policy = self.execution_options.on_error
        if workflow.error_handling is not None:
            default_policy = workflow.error_handling.on_error

        logger.info("workflow_started", workflow=workflow.name, run_id=run_id)
        operations: list[OperationResult] = []
        fatal = False
        for step in workflow.steps:
            policy = step.error_handling.on_error if step.error_handling is not None else default_policy
            try:
                operations.extend(self.execute_step(step, ctx, policy, deadline))
                if time.monotonic() > deadline:
                    raise OperationTimeoutError(f"Workflow {workflow.name} exceeded its timeout of {budget:g}s")
            except FlexflowError as e:
                # Fatal failure
                logger.warning(
                    "workflow_stopped", workflow=workflow.name, run_id=run_id, step=step.name, error=str(e)
                )
                ctx.add_error(str(e))
                fatal = True
                break

        if fatal:
            status = WorkflowStatus.FAILED
        elif ctx.has_errors():
            status = WorkflowStatus.PARTIALLY_FAILED
        else:
            status = WorkflowStatus.SUCCEEDED
        logger.info("workflow_finished", workflow=workflow.name, run_id=run_id, status=status.value)
        return WorkflowResult(
            id=run_id,
            workflow=workflow.name,
            status=status,
            outputs=ctx.get_all_outputs(),
            errors=list(ctx.errors),
            warnings=list(ctx.warnings),
            operations=operations,
        )

    def execute_step(
        self, step: Step, ctx: Context, on_error: ErrorPolicy, deadline: float | None = None
    ) -> list[OperationResult]:
        """
        Run one step unless its guard is false.

        :returns: One result per operation; all skipped when the guard is false
        :rtype: list[OperationResult]
        :raises ExecutionError: If an operation fails under the abort policy
        :raises OperationTimeoutError: If the workflow budget runs out
        """
        if step.condition and not check_condition(step.condition, ctx):
            logger.debug("step_skipped", step=step.name, condition=step.condition)
            return [
                OperationResult(name=op.name, output_key=op.result_key, status=OperationStatus.SKIPPED)
                for op in step.operations
            ]
        executor = self.executor_factory.get_executor(step)
        return executor.execute(step, ctx, on_error, deadline)

    def set_cache_value(self, key: str, value: Any) -> None:
        self.cache.set(key, value)

    def get_cache_value(self, key: str) -> Any:
        return self.cache.get(key)

    def has_cache_value(self, key: str) -> bool:
        return self.cache.has(key)

    def clear_cache(self) -> None:
        self.cache.clear()
