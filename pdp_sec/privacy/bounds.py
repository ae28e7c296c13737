"""
Per-category value bounds used to calibrate the private mean
"""

from typing import Dict, Mapping, Optional, Sequence, Tuple

import structlog

from ..config import SecurityConfig, get_security_config
from ..exceptions import EmptyInputError, InvalidParameterError

logger = structlog.get_logger(__name__)

DEFAULT_PADDING = 0.1


class CategoryBoundsRegistry:
    """
    Maps category keys to (min, max) value bounds.

    Registered bounds are widened to cover the observed values. Unknown
    categories fall back to the observed range padded by 10% on each side.
    """

    def __init__(
        self,
        bounds: Optional[Mapping[str, Tuple[float, float]]] = None,
        padding: float = DEFAULT_PADDING
    ):
        self._bounds: Dict[str, Tuple[float, float]] = {}
        self.padding = padding
        for category, (low, high) in (bounds or {}).items():
            self.register(category, low, high)

    @classmethod
    def from_config(cls, config: Optional[SecurityConfig] = None) -> "CategoryBoundsRegistry":
        config = config or get_security_config()
        return cls(config.category_bounds)

    def register(self, category: str, min_value: float, max_value: float) -> None:
        """Register or replace the bounds for a category"""
        if min_value >= max_value:
            raise InvalidParameterError(
                f"Invalid bounds for {category}: min must be less than max",
                field="category_bounds",
            )
        self._bounds[category] = (float(min_value), float(max_value))
        logger.debug("Registered category bounds", category=category, min=min_value, max=max_value)

    def get(self, category: str) -> Optional[Tuple[float, float]]:
        return self._bounds.get(category)

    def categories(self):
        return list(self._bounds)

    def estimate(self, category: str, values: Sequence[float]) -> Tuple[float, float]:
        """
        Bounds for a mean over the given values

        Args:
            category: Category key
            values: Observed numeric values (non-empty)

        Returns:
            (min, max) with min strictly less than max
        """
        if not values:
            raise EmptyInputError("Cannot estimate bounds without values")

        actual_min = min(values)
        actual_max = max(values)

        registered = self._bounds.get(category)
        if registered is not None:
            low, high = registered
            return min(actual_min, low), max(actual_max, high)

        spread = actual_max - actual_min
        if spread == 0:
            pad = max(abs(actual_min) * self.padding, 1.0)
        else:
            pad = spread * self.padding
        return actual_min - pad, actual_max + pad
