"""
Privacy-preserving utilities for the PDP engine
Differential privacy mechanisms and per-category value bounds
"""

from .dp_mechanisms import (
    NoiseEngine,
    RandomSource,
    EpsilonAdvisoryWarning,
    get_noise_engine,
    sample_laplace,
    sample_gaussian,
    laplace_mechanism,
    gaussian_mechanism,
    private_mean,
    validate_epsilon,
    anonymize_records,
)
from .bounds import CategoryBoundsRegistry

__all__ = [
    "NoiseEngine",
    "RandomSource",
    "EpsilonAdvisoryWarning",
    "get_noise_engine",
    "sample_laplace",
    "sample_gaussian",
    "laplace_mechanism",
    "gaussian_mechanism",
    "private_mean",
    "validate_epsilon",
    "anonymize_records",
    "CategoryBoundsRegistry",
]
