"""
Aggregation helpers for the query orchestrator
Numeric extraction from record payloads and per-aggregation noising
"""

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional

import numpy as np
import structlog

from ..constants import Aggregations
from ..privacy.bounds import CategoryBoundsRegistry
from ..privacy.dp_mechanisms import NoiseEngine
from .records import RawRecord

logger = structlog.get_logger(__name__)


def _collect_numeric(value: Any, out: List[float]) -> None:
    if isinstance(value, bool):
        return
    if isinstance(value, (int, float)):
        if math.isfinite(value):
            out.append(float(value))
        return
    if isinstance(value, Mapping):
        for item in value.values():
            _collect_numeric(item, out)
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _collect_numeric(item, out)


def extract_numeric_values(records: Iterable[RawRecord]) -> List[float]:
    """
    Every finite numeric leaf across the record payloads

    Nested mappings and lists are walked. Booleans, strings and
    non-finite numbers are ignored.
    """
    values: List[float] = []
    for record in records:
        _collect_numeric(record.payload, values)
    return values


def noised_count(engine: NoiseEngine, record_count: int, epsilon: float) -> int:
    """Record count with Laplace noise (sensitivity 1), rounded and clamped at zero"""
    return max(0, int(round(engine.laplace_mechanism(record_count, epsilon))))


def compute_aggregations(
    engine: NoiseEngine,
    bounds: CategoryBoundsRegistry,
    category: str,
    records: List[RawRecord],
    aggregations: List[str],
    epsilon: float
) -> Dict[str, Optional[float]]:
    """
    Noised mean/sum/min/max over the records' numeric values

    The budget is split evenly over every requested aggregation, count
    included; count itself is computed separately.
    """
    results: Dict[str, Optional[float]] = {}
    requested = [name for name in aggregations if name != Aggregations.COUNT]
    if not requested:
        return results

    values = extract_numeric_values(records)
    if not values:
        for name in requested:
            results[name] = None
        return results

    split_epsilon = epsilon / len(aggregations)
    array = np.asarray(values, dtype=float)

    for name in requested:
        if name == Aggregations.MEAN:
            low, high = bounds.estimate(category, values)
            results[name] = engine.private_mean(values, split_epsilon, low, high)
        elif name == Aggregations.SUM:
            results[name] = engine.laplace_mechanism(float(array.sum()), split_epsilon)
        elif name == Aggregations.MIN:
            results[name] = engine.laplace_mechanism(float(array.min()), split_epsilon)
        elif name == Aggregations.MAX:
            results[name] = engine.laplace_mechanism(float(array.max()), split_epsilon)

    logger.debug("Computed aggregations",
                 category=category, aggregations=requested, split_epsilon=split_epsilon)

    return results
