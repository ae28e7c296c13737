"""
Policy enforcement module for the PDP engine
Consent evaluation, caller registry and access logging
"""

from .evaluator import PolicyEvaluator
from .callers import ApiCaller, CallerRegistry, InMemoryCallerRegistry
from .audit import AccessEvent, AccessLogger, AccessLogStorage, InMemoryAccessLogStorage

__all__ = [
    "PolicyEvaluator",
    "ApiCaller",
    "CallerRegistry",
    "InMemoryCallerRegistry",
    "AccessEvent",
    "AccessLogger",
    "AccessLogStorage",
    "InMemoryAccessLogStorage",
]
