"""
Differential Privacy mechanisms for the PDP engine
Laplace/Gaussian sampling, calibrated mechanisms, private mean and record anonymization
"""

import math
import numbers
import warnings
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import numpy as np
import structlog

from ..config import get_security_config
from ..exceptions import EmptyInputError, InvalidInputError, InvalidParameterError

logger = structlog.get_logger(__name__)

EPSILON_ADVISORY_HIGH = 10.0
EPSILON_ADVISORY_LOW = 0.01


class RandomSource(Protocol):
    """Anything that draws uniform floats in [0, 1)"""

    def random(self) -> float:
        ...


class EpsilonAdvisoryWarning(UserWarning):
    """Epsilon is valid but outside the range where it is meaningful"""
    pass


def _is_real(value: Any) -> bool:
    """True for finite real numbers; bools, NaN and infinities are rejected"""
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    return math.isfinite(value)


def _require_positive(value: Any, name: str) -> float:
    if not _is_real(value):
        raise InvalidParameterError(f"{name} must be a finite number", field=name)
    if value <= 0:
        raise InvalidParameterError(f"{name} must be positive", field=name)
    return float(value)


class NoiseEngine:
    """
    Stateless noise sampler bound to a source of uniform randomness.

    The default source is a numpy Generator seeded from OS entropy.
    ``secrets.SystemRandom()`` can be injected for cryptographic-grade
    draws, and tests inject a fixed sequence for exact assertions.
    """

    def __init__(self, source: Optional[RandomSource] = None, delta: Optional[float] = None):
        self.source = source if source is not None else np.random.default_rng()
        self.delta = delta

    def _uniform(self) -> float:
        return float(self.source.random())

    def sample_laplace(self, scale: float) -> float:
        """
        Draw from Laplace(0, scale) by inverse CDF

        Args:
            scale: Scale parameter b (sensitivity / epsilon)

        Returns:
            A finite noise sample
        """
        scale = _require_positive(scale, "scale")

        u = self._uniform() - 0.5
        while u <= -0.5:
            # ln(0) at the open end of the interval
            u = self._uniform() - 0.5

        return scale * float(np.sign(u)) * math.log(1 - 2 * abs(u))

    def sample_gaussian(self) -> float:
        """Standard normal sample via Box-Muller"""
        u1 = 1.0 - self._uniform()
        u2 = 1.0 - self._uniform()
        return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)

    def laplace_mechanism(self, value: float, epsilon: float, sensitivity: float = 1.0) -> float:
        """
        Add Laplace noise calibrated for epsilon-differential privacy

        Args:
            value: True value to protect
            epsilon: Privacy parameter, smaller means more noise
            sensitivity: Global sensitivity of the query

        Returns:
            Noisy value
        """
        epsilon = _require_positive(epsilon, "epsilon")
        sensitivity = _require_positive(sensitivity, "sensitivity")

        scale = sensitivity / epsilon
        return value + self.sample_laplace(scale)

    def gaussian_mechanism(
        self,
        value: float,
        epsilon: float,
        delta: Optional[float] = None,
        sensitivity: float = 1.0
    ) -> float:
        """
        Add Gaussian noise calibrated for (epsilon, delta)-differential privacy

        Args:
            value: True value to protect
            epsilon: Privacy parameter
            delta: Failure probability, strictly between 0 and 1. Defaults to
                the engine delta, then the configured dp_delta
            sensitivity: Global (L2) sensitivity of the query

        Returns:
            Noisy value
        """
        epsilon = _require_positive(epsilon, "epsilon")
        sensitivity = _require_positive(sensitivity, "sensitivity")
        if delta is None:
            delta = self.delta if self.delta is not None else get_security_config().dp_delta
        if not _is_real(delta) or not 0 < delta < 1:
            raise InvalidParameterError("delta must be between 0 and 1 (exclusive)", field="delta")

        sigma = sensitivity * math.sqrt(2 * math.log(1.25 / delta)) / epsilon
        return value + sigma * self.sample_gaussian()

    def private_mean(
        self,
        values: Sequence[float],
        epsilon: float,
        min_value: float,
        max_value: float
    ) -> float:
        """
        Differentially private mean of bounded values

        Sensitivity is (max_value - min_value) / n for n values.
        """
        if len(values) == 0:
            raise EmptyInputError("Cannot compute mean of empty input")
        _require_positive(epsilon, "epsilon")
        if not _is_real(min_value) or not _is_real(max_value):
            raise InvalidParameterError("Bounds must be finite numbers", field="min_value")
        if min_value >= max_value:
            raise InvalidParameterError("min_value must be less than max_value", field="min_value")

        true_mean = float(np.mean(np.asarray(values, dtype=float)))
        sensitivity = (max_value - min_value) / len(values)

        return self.laplace_mechanism(true_mean, epsilon, sensitivity)


def validate_epsilon(epsilon: Any, context: str = "operation") -> bool:
    """
    Validate an epsilon value

    Raises InvalidParameterError for non-numeric or non-positive values.
    Values outside [0.01, 10] are allowed but produce an
    EpsilonAdvisoryWarning.
    """
    if not _is_real(epsilon):
        raise InvalidParameterError(f"Epsilon must be a number for {context}", field="epsilon")
    if epsilon <= 0:
        raise InvalidParameterError(f"Epsilon must be positive for {context}", field="epsilon")

    advisory = None
    if epsilon > EPSILON_ADVISORY_HIGH:
        advisory = f"Large epsilon value ({epsilon}) provides weak privacy for {context}"
    elif epsilon < EPSILON_ADVISORY_LOW:
        advisory = f"Very small epsilon value ({epsilon}) will add significant noise for {context}"

    if advisory:
        logger.warning("Epsilon advisory", epsilon=epsilon, context=context)
        warnings.warn(advisory, EpsilonAdvisoryWarning, stacklevel=2)

    return True


def anonymize_records(rows: Any, drop_fields: Any) -> List[Dict[str, Any]]:
    """
    Remove the named fields from each row

    Args:
        rows: Sequence of key/value mappings
        drop_fields: Field names to remove

    Returns:
        Shallow copies of the rows without the dropped fields
    """
    if isinstance(rows, (str, bytes)) or not isinstance(rows, Sequence):
        raise InvalidInputError("rows must be a sequence of mappings", field="rows")
    if isinstance(drop_fields, (str, bytes)) or not isinstance(drop_fields, Sequence):
        raise InvalidInputError("drop_fields must be a sequence of field names", field="drop_fields")
    if not all(isinstance(name, str) for name in drop_fields):
        raise InvalidInputError("drop_fields must contain only strings", field="drop_fields")

    dropped = set(drop_fields)
    anonymized = []
    for row in rows:
        if not isinstance(row, Mapping):
            raise InvalidInputError("Each row must be a mapping", field="rows")
        anonymized.append({key: value for key, value in row.items() if key not in dropped})

    return anonymized


# Process-wide engine for the module-level helpers
_default_engine = NoiseEngine()


def get_noise_engine() -> NoiseEngine:
    """Get the shared noise engine"""
    return _default_engine


def sample_laplace(scale: float) -> float:
    return _default_engine.sample_laplace(scale)


def sample_gaussian() -> float:
    return _default_engine.sample_gaussian()


def laplace_mechanism(value: float, epsilon: float, sensitivity: float = 1.0) -> float:
    """Convenience wrapper around the shared engine"""
    return _default_engine.laplace_mechanism(value, epsilon, sensitivity)


def gaussian_mechanism(
    value: float,
    epsilon: float,
    delta: Optional[float] = None,
    sensitivity: float = 1.0
) -> float:
    """Convenience wrapper around the shared engine"""
    return _default_engine.gaussian_mechanism(value, epsilon, delta, sensitivity)


def private_mean(values: Sequence[float], epsilon: float, min_value: float, max_value: float) -> float:
    """Convenience wrapper around the shared engine"""
    return _default_engine.private_mean(values, epsilon, min_value, max_value)
