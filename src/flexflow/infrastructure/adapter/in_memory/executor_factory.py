from flexflow.application.adapter import (
    ConditionalStepExecutor,
    OperationExecutor,
    ParallelStepExecutor,
    SequentialStepExecutor,
)
from flexflow.application.port import ExecutorFactory, StepExecutor
from flexflow.domain.entity import Step
from flexflow.domain.value_object import ExecutionType


class InMemoryExecutorFactory(ExecutorFactory):
    def __init__(self, operations: OperationExecutor):
        self.operations = operations

    def get_executor(self, step: Step) -> StepExecutor:
        """
        Get the appropriate executor for the given step's execution type.

        :param step: The step to get an executor for
        :type step: Step
        :returns: The executor for the given execution type
        :rtype: StepExecutor
        :raises ValueError: If the execution type is unknown
        """
        if step.execution_type is ExecutionType.SEQUENTIAL:
            return SequentialStepExecutor(self.operations)
        elif step.execution_type is ExecutionType.PARALLEL:
            return ParallelStepExecutor(self.operations, self.operations.execution_options.max_workers)
        elif step.execution_type is ExecutionType.CONDITIONAL:
            return ConditionalStepExecutor(self.operations)
        else:
            raise ValueError(f"Unknown execution type: {step.execution_type}")
