import concurrent.futures
import copy
import hashlib
import os
import re
import time
from collections.abc import Callable, Mapping
from typing import Any

import msgspec
import structlog

from flexflow.application.port import (
    Context,
    OperationCache,
    PlaceholderResolver,
    Registry,
    StepExecutor,
)
from flexflow.domain.entity import Operation, Step
from flexflow.domain.error import ConditionEvaluationWarning, ExecutionError, OperationTimeoutError
from flexflow.domain.service import (
    evaluate_condition,
    filter_items,
    get_path,
    merge_values,
    split_path,
    transform_value,
)
from flexflow.domain.value_object import (
    ErrorPolicy,
    ExecutionOptions,
    OperationResult,
    OperationStatus,
    OperationType,
)

logger = structlog.get_logger(__name__)


def stringify(value: Any) -> str:
    """Render a structured value for string interpolation."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return msgspec.json.encode(value).decode()


class TemplateResolver:
    """Resolves ``${TYPE:KEY}`` placeholders in strings.

    Rules:
    - ``ENV:NAME`` reads the process environment.
    - ``CONFIG:NAME`` or ``CONFIG:NAME|DEFAULT`` reads the context, falling back to ``DEFAULT``.
    - ``INPUT:NAME`` and ``VAR:NAME`` read the context.
    - Any other type is replaced with an empty string (``CALC`` and ``EXTRACT`` are reserved).
    - Placeholders without a ``:`` are left untouched.
    """

    _pattern = re.compile(r"\$\{([^}]+)\}")

    def resolve(self, template: str, context: Mapping[str, str]) -> str:
        result = template
        position = 0
        # one substitution per input character at most
        budget = len(template)
        while budget > 0:
            match = self._pattern.search(result, position)
            if match is None:
                break
            kind, sep, key = match.group(1).partition(":")
            if not sep:
                position = match.end()
                continue
            replacement = self._lookup(kind, key, context)
            result = result[: match.start()] + replacement + result[match.end() :]
            position = match.start()
            budget -= 1
        else:
            if self._pattern.search(result, position):
                logger.warning("template_substitution_limit", template=template, substitutions=len(template))
        return result

    def _lookup(self, kind: str, key: str, context: Mapping[str, str]) -> str:
        if kind == "ENV":
            return os.environ.get(key, "")
        if kind == "CONFIG":
            name, _, default = key.partition("|")
            value = context.get(name)
            return default if value is None else str(value)
        if kind in ("INPUT", "VAR"):
            value = context.get(key)
            return "" if value is None else str(value)
        return ""

    def extract_template_variables(self, template: str) -> list[str]:
        """Return the inner text of every placeholder, e.g. ``["ENV:API_KEY"]``."""
        return self._pattern.findall(template)

    def is_template_string(self, value: Any) -> bool:
        return isinstance(value, str) and self._pattern.search(value) is not None

    def resolve_any(self, value: Any, context: Mapping[str, str]) -> Any:
        """Resolve every string leaf of a nested structure."""
        if isinstance(value, dict):
            return {k: self.resolve_any(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_any(v, context) for v in value]
        if isinstance(value, str):
            return self.resolve(value, context)
        return value


class ExecutionContext(Context):
    """Per-run state: the input, scratch variables, declared outputs, errors and warnings."""

    def __init__(self, input: Any = None, declared_outputs: frozenset[str] | None = None):
        self.input = copy.deepcopy(input) if input is not None else {}
        self.declared_outputs = declared_outputs
        self.variables: dict[str, Any] = {}
        self.outputs: dict[str, Any] = {}
        self.errors: list[str] = []
        self.warnings: list[str] = []

    def get_input(self) -> Any:
        return self.input

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def get_variable(self, name: str) -> Any:
        return self.variables[name]

    def set_output(self, key: str, value: Any) -> None:
        self.outputs[key] = value

    def get_output(self, key: str) -> Any:
        return self.outputs[key]

    def get_all_outputs(self) -> dict[str, Any]:
        return copy.deepcopy(self.outputs)

    def add_error(self, error: str) -> None:
        self.errors.append(error)

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def store_result(self, key: str, value: Any) -> None:
        self.variables[key] = copy.deepcopy(value)
        if self.declared_outputs is None or key in self.declared_outputs:
            self.outputs[key] = copy.deepcopy(value)

    def lookup(self, path: str) -> Any:
        parts = split_path(path)
        if not parts:
            raise KeyError(path)
        head, rest = parts[0], parts[1:]
        for scope in (self.variables, self.outputs):
            if head in scope:
                return get_path(scope[head], rest)
        if isinstance(self.input, dict) and head in self.input:
            return get_path(self.input[head], rest)
        if head == "input":
            return get_path(self.input, rest)
        raise KeyError(path)

    def snapshot(self) -> "ExecutionContext":
        """Independent copy of the readable state, used by parallel steps."""
        clone = ExecutionContext(self.input, self.declared_outputs)
        clone.variables = copy.deepcopy(self.variables)
        clone.outputs = copy.deepcopy(self.outputs)
        return clone

    def template_context(self, settings: Mapping[str, Any] | None = None) -> dict[str, str]:
        """Flat string map for the template resolver: settings, then input fields, then variables."""
        flat: dict[str, str] = {}
        scopes = [settings or {}, self.input if isinstance(self.input, dict) else {}, self.variables]
        for scope in scopes:
            for key, value in scope.items():
                flat[key] = stringify(value)
        return flat


class ContextResolver(PlaceholderResolver):
    """Resolves placeholders in operation parameters against an execution context.

    Rules:
    - If a string is exactly one ``${INPUT:path}``, ``${VAR:path}`` or ``${CONFIG:name}``
      placeholder, the referenced value is returned as-is (type preserved).
    - Otherwise the string is interpolated by the template resolver.
    - Paths use ``.`` and ``[index]``, e.g. ``${VAR:genes[0].symbol}``.
    """

    _exact = re.compile(r"\$\{(INPUT|VAR|CONFIG):([^}]+)\}")

    def __init__(self, registry: Registry, templates: TemplateResolver | None = None):
        self.registry = registry
        self.templates = templates if templates is not None else TemplateResolver()

    def resolve_any(self, value: Any, ctx: Context) -> Any:
        if isinstance(value, dict):
            return {k: self.resolve_any(v, ctx) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_any(v, ctx) for v in value]
        if isinstance(value, str):
            return self._resolve_string(value, ctx)
        return value

    def _resolve_string(self, s: str, ctx: Context) -> Any:
        # Exact single-token match => return raw value to preserve type
        m = self._exact.fullmatch(s.strip())
        if m:
            return copy.deepcopy(self._lookup_token(m.group(1), m.group(2), ctx))
        return self.templates.resolve(s, ctx.template_context(self.registry.settings))

    def _lookup_token(self, kind: str, key: str, ctx: Context) -> Any:
        if kind == "CONFIG":
            name, _, default = key.partition("|")
            return self.registry.settings.get(name, default)
        try:
            if kind == "INPUT":
                return get_path(ctx.get_input(), key)
            return ctx.lookup(key)
        except KeyError:
            return ""


def check_condition(expression: str, ctx: Context) -> bool:
    """Evaluate a guard; malformed or unresolvable guards become a warning and count as false."""
    try:
        return evaluate_condition(expression, ctx.lookup)
    except ConditionEvaluationWarning as warning:
        ctx.add_warning(str(warning))
        return False


class OperationExecutor:
    """Executes one operation: parameter resolution, cache lookup, dispatch, fallback."""

    def __init__(
        self,
        registry: Registry,
        values: PlaceholderResolver,
        cache: OperationCache,
        execution_options: ExecutionOptions,
    ):
        self.registry = registry
        self.values = values
        self.cache = cache
        self.execution_options = execution_options

    def execute(self, operation: Operation, ctx: Context, timeout: float | None = None) -> OperationResult:
        """Executes the operation and returns a structured result; never raises for operation failures."""
        try:
            params = self.values.resolve_any(operation.parameters, ctx)
        except Exception as e:
            return self._failed(operation, f"cannot resolve parameters: {e}")

        cache_key = None
        if self.should_use_cache(operation):
            cache_key = self.generate_cache_key(operation, params)
            try:
                cached = self.cache.get(cache_key)
            except KeyError:
                pass
            else:
                logger.debug("cache_hit", operation=operation.name)
                return OperationResult(
                    name=operation.name,
                    output_key=operation.result_key,
                    status=OperationStatus.CACHED,
                    value=cached,
                )

        if timeout is None:
            timeout = operation.timeout_seconds or self.execution_options.operation_timeout
        try:
            value = self._run_with_timeout(lambda: self.dispatch(operation, params), timeout, operation.name)
        except Exception as e:
            logger.warning("operation_failed", operation=operation.name, error=str(e))
            if operation.fallback_config is not None:
                return self.apply_fallback(operation, params, e, timeout)
            return self._failed(operation, str(e))

        if cache_key is not None:
            self.cache.set(cache_key, value)
        return OperationResult(
            name=operation.name,
            output_key=operation.result_key,
            status=OperationStatus.SUCCESS,
            value=value,
        )

    def dispatch(self, operation: Operation, params: dict[str, Any]) -> Any:
        """Send the resolved operation to its data source, processor or built-in transform."""
        if operation.type is OperationType.ENDPOINT_CALL:
            source = self.registry.get_data_source(operation.data_source)
            return source.execute(operation.endpoint or operation.name, params)
        if operation.type is OperationType.CUSTOM_PROCESSOR:
            processor = self.registry.get_processor(operation.processor)
            config = {**self.registry.get_processor_config(operation.processor), **params}
            data = config.pop("input", None)
            return processor.process(data, config)
        if operation.type is OperationType.MERGE:
            inputs = params.get("inputs")
            if not isinstance(inputs, list):
                raise ExecutionError("merge needs an 'inputs' array")
            return merge_values(inputs, params.get("strategy", "deep_merge"))
        if operation.type is OperationType.FILTER:
            return filter_items(params.get("input"), params.get("condition", ""))
        if operation.type is OperationType.TRANSFORM:
            return transform_value(params.get("input"), params.get("extract"), params.get("mapping"))
        raise ExecutionError(f"Unsupported operation type: {operation.type}")

    def apply_fallback(
        self, operation: Operation, params: dict[str, Any], error: Exception, timeout: float
    ) -> OperationResult:
        """Redirect to the alternate data source, then fall back to the default value."""
        fallback = operation.fallback_config
        reasons = [str(error)]
        if fallback.data_source:
            endpoint = fallback.endpoint or operation.endpoint or operation.name
            try:
                source = self.registry.get_data_source(fallback.data_source)
                value = self._run_with_timeout(lambda: source.execute(endpoint, params), timeout, operation.name)
            except Exception as e:
                reasons.append(f"fallback data source '{fallback.data_source}': {e}")
            else:
                return OperationResult(
                    name=operation.name,
                    output_key=operation.result_key,
                    status=OperationStatus.FALLBACK,
                    value=value,
                    warnings=[
                        f"Operation '{operation.name}' failed ({error}); "
                        f"served by fallback data source '{fallback.data_source}'"
                    ],
                )
        if fallback.use_default:
            return OperationResult(
                name=operation.name,
                output_key=operation.result_key,
                status=OperationStatus.FALLBACK,
                value=copy.deepcopy(fallback.default_value),
                warnings=[f"Operation '{operation.name}' failed ({error}); using fallback default value"],
            )
        return self._failed(operation, "; ".join(reasons))

    def should_use_cache(self, operation: Operation) -> bool:
        return operation.cache_config.enabled

    def generate_cache_key(self, operation: Operation, resolved_params: dict[str, Any]) -> str:
        payload = msgspec.json.encode(
            [operation.name, operation.type.value, operation.target, operation.endpoint, resolved_params],
            order="sorted",
        )
        return hashlib.sha256(payload).hexdigest()

    def _run_with_timeout(self, fn: Callable[[], Any], timeout: float, name: str) -> Any:
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"flexflow-{name}")
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            if not future.cancel():
                logger.warning(
                    "operation_detached", operation=name, timeout=timeout, thread_prefix=f"flexflow-{name}"
                )
            raise OperationTimeoutError(f"timed out after {timeout:g}s") from None
        finally:
            # Do not wait for a timed-out call; its result is discarded.
            executor.shutdown(wait=False, cancel_futures=True)

    def _failed(self, operation: Operation, reason: str) -> OperationResult:
        return OperationResult(
            name=operation.name,
            output_key=operation.result_key,
            status=OperationStatus.FAILED,
            error=f"Operation '{operation.name}' failed: {reason}",
        )


class SequentialStepExecutor(StepExecutor):
    """Runs operations one at a time; each sees the outputs of the ones before it."""

    def __init__(self, operations: OperationExecutor):
        self.operations = operations

    def execute(
        self, step: Step, ctx: Context, on_error: ErrorPolicy, deadline: float | None = None
    ) -> list[OperationResult]:
        results = []
        for operation in step.operations:
            if not self.should_run(operation, ctx):
                results.append(self._skipped(operation))
                continue
            result = self.operations.execute(operation, ctx, self.timeout_for(operation, deadline))
            results.append(result)
            if self.record(operation, result, ctx) and on_error is ErrorPolicy.ABORT:
                raise ExecutionError(f"Step '{step.name}' aborted after operation '{operation.name}' failed")
        return results

    def should_run(self, operation: Operation, ctx: Context) -> bool:
        return True

    def timeout_for(self, operation: Operation, deadline: float | None) -> float:
        """Operation timeout bounded by what is left of the workflow budget."""
        timeout = operation.timeout_seconds or self.operations.execution_options.operation_timeout
        if deadline is None:
            return timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise OperationTimeoutError(f"Workflow timed out before operation '{operation.name}'")
        return min(timeout, remaining)

    def record(self, operation: Operation, result: OperationResult, ctx: Context) -> bool:
        """Merge a result into the context; returns True when the operation failed."""
        for warning in result.warnings:
            ctx.add_warning(warning)
        if result.status is OperationStatus.FAILED:
            self.handle_operation_error(operation, result.error, ctx)
            return True
        if result.status is not OperationStatus.SKIPPED:
            ctx.store_result(operation.result_key, result.value)
        return False

    def handle_operation_error(self, operation: Operation, error: str | None, ctx: Context) -> None:
        ctx.add_error(error or f"Operation '{operation.name}' failed")

    def _skipped(self, operation: Operation) -> OperationResult:
        return OperationResult(
            name=operation.name,
            output_key=operation.result_key,
            status=OperationStatus.SKIPPED,
        )


class ConditionalStepExecutor(SequentialStepExecutor):
    """Sequential execution where each operation may carry its own guard."""

    def should_run(self, operation: Operation, ctx: Context) -> bool:
        if not operation.condition:
            return True
        return check_condition(operation.condition, ctx)


class ParallelStepExecutor(SequentialStepExecutor):
    """Runs operations concurrently against a snapshot taken when the step starts.

    Results are merged into the context only after every operation has finished.
    """

    def __init__(self, operations: OperationExecutor, max_workers: int | None = None):
        super().__init__(operations)
        self.max_workers = max_workers

    def execute(
        self, step: Step, ctx: Context, on_error: ErrorPolicy, deadline: float | None = None
    ) -> list[OperationResult]:
        snapshot = ctx.snapshot()
        timeouts = [self.timeout_for(operation, deadline) for operation in step.operations]
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(self.operations.execute, operation, snapshot, timeout)
                for operation, timeout in zip(step.operations, timeouts)
            ]
            concurrent.futures.wait(futures)
        results = [future.result() for future in futures]

        first_failure = None
        for operation, result in zip(step.operations, results):
            if self.record(operation, result, ctx) and first_failure is None:
                first_failure = operation
        if first_failure is not None and on_error is ErrorPolicy.ABORT:
            raise ExecutionError(f"Step '{step.name}' aborted after operation '{first_failure.name}' failed")
        return results
