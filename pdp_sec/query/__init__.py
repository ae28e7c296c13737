"""
Differentially private query execution for the PDP engine
"""

from .models import QueryRequest, QueryResult, QueryOutcome
from .records import RawRecord, RecordStorage, InMemoryRecordStorage
from .aggregations import extract_numeric_values, compute_aggregations, noised_count
from .orchestrator import QueryOrchestrator

__all__ = [
    "QueryRequest",
    "QueryResult",
    "QueryOutcome",
    "RawRecord",
    "RecordStorage",
    "InMemoryRecordStorage",
    "extract_numeric_values",
    "compute_aggregations",
    "noised_count",
    "QueryOrchestrator",
]
