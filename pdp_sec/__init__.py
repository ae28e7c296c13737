"""
PDP Security & Privacy Module
Consent-gated differentially private queries over personal data
"""

__version__ = "0.1.0"

# Core exports
from .config import SecurityConfig, RateLimitRule, get_security_config
from .exceptions import (
    SecurityError, UnauthenticatedError, TokenError, ConsentError,
    RateLimitedError, ValidationError, NotFoundError, ConflictError, StorageError
)

# Consent management
from .consent import (
    ConsentPolicy, ConsentPolicyStatus, ConsentTokenRecord, DataCategory,
    ConsentStorage, InMemoryConsentStorage
)

# Consent tokens
from .crypto import ConsentTokenService, ConsentTokenClaims, IssuedConsentToken, extract_bearer_token

# Policy enforcement
from .policy import (
    PolicyEvaluator, ApiCaller, CallerRegistry, InMemoryCallerRegistry,
    AccessEvent, AccessLogger
)

# Privacy protection
from .privacy import (
    NoiseEngine, laplace_mechanism, gaussian_mechanism, private_mean,
    validate_epsilon, CategoryBoundsRegistry
)

# Rate limiting
from .ratelimit import RateLimiter, RateLimitResult

# Queries
from .query import QueryOrchestrator, QueryRequest, QueryResult, QueryOutcome

# Wiring
from .services import Services, build_services

__all__ = [
    # Config
    "SecurityConfig",
    "RateLimitRule",
    "get_security_config",

    # Errors
    "SecurityError",
    "UnauthenticatedError",
    "TokenError",
    "ConsentError",
    "RateLimitedError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StorageError",

    # Consent
    "ConsentPolicy",
    "ConsentPolicyStatus",
    "ConsentTokenRecord",
    "DataCategory",
    "ConsentStorage",
    "InMemoryConsentStorage",

    # Tokens
    "ConsentTokenService",
    "ConsentTokenClaims",
    "IssuedConsentToken",
    "extract_bearer_token",

    # Policy
    "PolicyEvaluator",
    "ApiCaller",
    "CallerRegistry",
    "InMemoryCallerRegistry",
    "AccessEvent",
    "AccessLogger",

    # Privacy
    "NoiseEngine",
    "laplace_mechanism",
    "gaussian_mechanism",
    "private_mean",
    "validate_epsilon",
    "CategoryBoundsRegistry",

    # Rate limiting
    "RateLimiter",
    "RateLimitResult",

    # Query
    "QueryOrchestrator",
    "QueryRequest",
    "QueryResult",
    "QueryOutcome",

    # Wiring
    "Services",
    "build_services",
]
