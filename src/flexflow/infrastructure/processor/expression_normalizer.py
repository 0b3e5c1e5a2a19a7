import math
import statistics
from typing import Any

from flexflow.domain.error import ExecutionError
from flexflow.domain.port import DataProcessor

METHODS = ("zscore", "minmax", "log2", "cpm")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def normalize(values: list[float], method: str, pseudocount: float = 1.0) -> list[float]:
    """
    Normalize expression values.

    :param values: Raw expression values
    :type values: list[float]
    :param method: One of ``zscore``, ``minmax``, ``log2`` or ``cpm``
    :type method: str
    :param pseudocount: Added before taking ``log2``
    :type pseudocount: float
    :returns: Normalized values in input order
    :rtype: list[float]
    :raises ExecutionError: If the method is unknown or the values do not admit it
    """
    if not values:
        return []
    if method == "zscore":
        mean = statistics.fmean(values)
        stdev = statistics.pstdev(values)
        return [0.0 if stdev == 0 else (v - mean) / stdev for v in values]
    if method == "minmax":
        low, high = min(values), max(values)
        return [0.0 if high == low else (v - low) / (high - low) for v in values]
    if method == "log2":
        if any(v + pseudocount <= 0 for v in values):
            raise ExecutionError("log2 normalization needs values above -pseudocount")
        return [math.log2(v + pseudocount) for v in values]
    if method == "cpm":
        total = sum(values)
        if total <= 0:
            raise ExecutionError("cpm normalization needs a positive total")
        return [v / total * 1_000_000 for v in values]
    raise ExecutionError(f"Unknown normalization method: {method}")


class ExpressionNormalizerProcessor(DataProcessor):
    """Quality-controls and normalizes expression values.

    Input is either an object ``gene -> value`` or a list of records holding the
    value under ``value_field`` (default ``value``). Records gain a
    ``normalized_value`` field; objects map each gene to its normalized value.
    """

    processor_type = "expression_normalizer"

    def process(self, input: Any, config: dict[str, Any]) -> Any:
        method = config.get("method", "zscore")
        if method not in METHODS:
            raise ExecutionError(f"Unknown normalization method: {method}")
        value_field = config.get("value_field", "value")
        pseudocount = config.get("pseudocount", 1.0)

        if isinstance(input, dict):
            records = [{"gene": gene, value_field: value} for gene, value in input.items()]
        elif isinstance(input, list):
            records = list(input)
        else:
            raise ExecutionError("expression_normalizer expects an object or a list of records")

        kept = self.quality_control(records, value_field, config)
        normalized = normalize([r[value_field] for r in kept], method, pseudocount)
        for record, value in zip(kept, normalized):
            record["normalized_value"] = value
        if isinstance(input, dict):
            return {r["gene"]: r["normalized_value"] for r in kept}
        return kept

    def quality_control(self, records: list[Any], value_field: str, config: dict[str, Any]) -> list[dict]:
        drop_missing = config.get("drop_missing", True)
        min_value = config.get("min_value")
        kept = []
        for record in records:
            if not isinstance(record, dict):
                raise ExecutionError(f"Expression record must be an object, got {type(record).__name__}")
            value = record.get(value_field)
            if not _is_number(value):
                if drop_missing:
                    continue
                raise ExecutionError(f"Missing expression value in record {record}")
            if min_value is not None and value < min_value:
                continue
            kept.append(dict(record))
        return kept

    def get_type(self) -> str:
        return self.processor_type
