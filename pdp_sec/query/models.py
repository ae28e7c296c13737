"""
Request and result models for differentially private queries
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from ..constants import Aggregations
from ..ratelimit.limiter import RateLimitResult

AggregationName = Literal["mean", "count", "sum", "min", "max"]

AggregateValue = Union[int, float, None]


class QueryRequest(BaseModel):
    """Body of a PDP query"""
    category: str = Field(..., min_length=1, max_length=50)
    purpose: str = Field(..., min_length=1, max_length=200)
    epsilon: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    aggregations: List[AggregationName] = Field(
        default_factory=lambda: [Aggregations.COUNT], min_length=1
    )

    @field_validator("epsilon", mode="before")
    @classmethod
    def _reject_bool_epsilon(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("epsilon must be a number")
        return value

    @field_validator("aggregations")
    @classmethod
    def _dedupe_aggregations(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))


class QueryResult(BaseModel):
    """Noised aggregates returned to the caller"""
    results: Dict[str, AggregateValue] = Field(default_factory=dict)
    epsilon: float
    category: str
    purpose: str
    timestamp: str
    record_count: int
    message: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        """JSON body for the HTTP surface"""
        body: Dict[str, Any] = {
            "results": dict(self.results),
            "epsilon": self.epsilon,
            "category": self.category,
            "purpose": self.purpose,
            "timestamp": self.timestamp,
            "recordCount": self.record_count,
        }
        if self.message:
            body["message"] = self.message
        return body


class QueryOutcome(BaseModel):
    """Query result together with the rate limit state used for headers"""
    result: QueryResult
    rate_limit: RateLimitResult
