import copy
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from flexflow.domain.entity import Workflow
from flexflow.domain.error import ConditionEvaluationWarning, ExecutionError

DEFAULT_BROAD_SEARCH_ENDPOINTS = frozenset(
    {
        "getResearchAssociations",
        "getDrugGeneInteractions",
        "getPolygeneticRiskScores",
    }
)

MISSING_PARAMETERS_MESSAGE = "Missing parameters object for endpoint: {endpoint}"
EMPTY_PARAMETERS_MESSAGE = "At least one search parameter is required for this endpoint."
NO_MEANINGFUL_PARAMETER_MESSAGE = "At least one non-empty search parameter is required for this endpoint."

_PATH_TOKEN = re.compile(r"[^.\[\]]+|\[\d+\]|\[\*\]")
_EXISTS = re.compile(r"^\s*(?P<variable>[A-Za-z_][\w.\[\]]*)\s+exists\s*$")
_COMPARISON = re.compile(r"^\s*(?P<variable>[A-Za-z_][\w.\[\]]*)\s*(?P<op>==|!=|>|<)\s*(?P<literal>\S.*?)\s*$")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?([eE][-+]?\d+)?$")


def validate_workflow(data: Workflow) -> bool:
    """
    Validates the workflow structure and contents.

    :param data: The Workflow instance to validate
    :type data: Workflow
    :returns: True if the workflow is valid, raises ValueError otherwise
    :rtype: bool
    :raises ValueError: If the workflow structure or contents are invalid
    """
    if not data.steps:
        raise ValueError(f"Workflow {data.name or '<unnamed>'} has no steps")
    if data.global_timeout is not None and data.global_timeout <= 0:
        raise ValueError(f"Workflow {data.name} global timeout must be positive")
    seen_names = set()
    for step in data.steps:
        if step.name in seen_names:
            raise ValueError(f"Duplicate step name found: {step.name}")
        seen_names.add(step.name)
        step.validate()
    return True


# -- paths -------------------------------------------------------------------


def split_path(path: str) -> list[str]:
    """Split ``a.b[0].c`` into ``["a", "b", "[0]", "c"]``."""
    return _PATH_TOKEN.findall(path)


def _step_into(current: Any, part: str) -> Any:
    if part.startswith("["):
        if not isinstance(current, list):
            raise KeyError(part)
        try:
            return current[int(part[1:-1])]
        except IndexError:
            raise KeyError(part) from None
    if not isinstance(current, dict) or part not in current:
        raise KeyError(part)
    return current[part]


def get_path(value: Any, path: str | list[str]) -> Any:
    """Return the single value at ``path``; raises KeyError when any part is missing."""
    parts = split_path(path) if isinstance(path, str) else path
    current = value
    for part in parts:
        if part == "[*]":
            raise KeyError("wildcards match several values; use extract_values")
        current = _step_into(current, part)
    return current


def extract_values(value: Any, path: str) -> list[Any]:
    """Return every value matching a JSONPath-like ``path``; ``[*]`` expands arrays.

    Missing branches are skipped rather than reported.
    """
    current = [value]
    for part in split_path(path.removeprefix("$").lstrip(".")):
        found = []
        for item in current:
            if part == "[*]":
                if isinstance(item, list):
                    found.extend(item)
                continue
            try:
                found.append(_step_into(item, part))
            except KeyError:
                continue
        current = found
    return current


# -- conditions --------------------------------------------------------------


@dataclass(frozen=True)
class Condition:
    variable: str
    operator: str
    literal: Any = None


def parse_literal(text: str) -> Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in ("null", "none"):
        return None
    if _NUMBER.match(text):
        return float(text) if any(c in text for c in ".eE") else int(text)
    return text


def parse_condition(expression: str) -> Condition:
    """Parse ``variable OP literal`` or ``variable exists``.

    :raises ConditionEvaluationWarning: If the expression does not follow the grammar
    """
    match = _EXISTS.match(expression)
    if match:
        return Condition(match.group("variable"), "exists")
    match = _COMPARISON.match(expression)
    if match:
        return Condition(match.group("variable"), match.group("op"), parse_literal(match.group("literal")))
    raise ConditionEvaluationWarning(f"Malformed condition: {expression!r}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def evaluate_condition(expression: str, lookup: Callable[[str], Any]) -> bool:
    """
    Evaluate a condition against values provided by ``lookup``.

    :param expression: The condition, e.g. ``gene_count > 5`` or ``patient_variants exists``
    :type expression: str
    :param lookup: Returns the value of a variable path, raising KeyError when unknown
    :type lookup: Callable[[str], Any]
    :returns: The truth value of the condition
    :rtype: bool
    :raises ConditionEvaluationWarning: If the condition is malformed or cannot be resolved
    """
    condition = parse_condition(expression)
    try:
        value = lookup(condition.variable)
    except KeyError:
        if condition.operator == "exists":
            return False
        raise ConditionEvaluationWarning(
            f"Cannot resolve '{condition.variable}' in condition {expression!r}"
        ) from None

    if condition.operator == "exists":
        return value is not None
    if condition.operator == "==":
        return value == condition.literal
    if condition.operator == "!=":
        return value != condition.literal

    literal = condition.literal
    if _is_number(value) and _is_number(literal):
        pass
    elif isinstance(value, str) and isinstance(literal, str):
        pass
    elif isinstance(value, str) and _is_number(literal) and _NUMBER.match(value.strip()):
        value = float(value)
    else:
        raise ConditionEvaluationWarning(
            f"Cannot compare {type(value).__name__} with {type(literal).__name__} in condition {expression!r}"
        )
    return value > literal if condition.operator == ">" else value < literal


# -- request parameters ------------------------------------------------------


def is_meaningful(value: Any) -> bool:
    """Null, empty strings and empty arrays carry no search criterion; everything else does."""
    if value is None:
        return False
    if isinstance(value, str):
        return len(value) > 0
    if isinstance(value, list):
        return len(value) > 0
    return True


def broad_search_errors(endpoint: str, parameters: Any) -> list[str]:
    """Errors for a broad-search endpoint; ``parameters`` is ``None`` when the object is missing."""
    if parameters is None:
        return [MISSING_PARAMETERS_MESSAGE.format(endpoint=endpoint)]
    if not isinstance(parameters, dict) or not parameters:
        return [EMPTY_PARAMETERS_MESSAGE]
    if not any(is_meaningful(value) for value in parameters.values()):
        return [NO_MEANINGFUL_PARAMETER_MESSAGE]
    return []


# -- built-in operations -----------------------------------------------------


def _deep_merge(target: dict, source: dict) -> dict:
    for key, value in source.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            target[key] = _deep_merge(existing, value)
        elif isinstance(existing, list) and isinstance(value, list):
            target[key] = existing + copy.deepcopy(value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def merge_values(values: list[Any], strategy: str = "deep_merge") -> Any:
    """
    Merge several values into one.

    ``deep_merge`` merges objects recursively (later values win, arrays concatenate),
    ``shallow`` only replaces top-level keys and ``concat`` flattens arrays.

    :raises ExecutionError: If the values cannot be merged with the strategy
    """
    if strategy == "concat":
        merged_list: list[Any] = []
        for value in values:
            if isinstance(value, list):
                merged_list.extend(copy.deepcopy(value))
            elif value is not None:
                merged_list.append(copy.deepcopy(value))
        return merged_list
    if strategy not in ("deep_merge", "shallow"):
        raise ExecutionError(f"Unknown merge strategy: {strategy}")
    merged: dict[str, Any] = {}
    for value in values:
        if value is None:
            continue
        if not isinstance(value, dict):
            raise ExecutionError(f"Strategy {strategy} merges objects, got {type(value).__name__}")
        if strategy == "shallow":
            merged.update(copy.deepcopy(value))
        else:
            _deep_merge(merged, value)
    return merged


def filter_items(items: Any, condition: str) -> list[Any]:
    """Keep the items for which ``condition`` holds; items it cannot be evaluated on are dropped."""
    if not isinstance(items, list):
        raise ExecutionError(f"Filter input must be an array, got {type(items).__name__}")
    parse_condition(condition)
    kept = []
    for item in items:
        try:
            if evaluate_condition(condition, lambda path, item=item: get_path(item, path)):
                kept.append(copy.deepcopy(item))
        except ConditionEvaluationWarning:
            continue
    return kept


def transform_value(value: Any, extract: str | None = None, mapping: dict[str, str] | None = None) -> Any:
    """Extract values by path, or reshape objects according to ``mapping`` (new key -> path)."""
    if extract:
        return copy.deepcopy(extract_values(value, extract))
    if not mapping:
        raise ExecutionError("Transform needs either 'extract' or 'mapping'")

    def reshape(item: Any) -> dict[str, Any]:
        shaped = {}
        for key, path in mapping.items():
            found = extract_values(item, path)
            shaped[key] = copy.deepcopy(found[0]) if len(found) == 1 else copy.deepcopy(found) or None
        return shaped

    if isinstance(value, list):
        return [reshape(item) for item in value]
    return reshape(value)
