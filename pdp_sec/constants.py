"""
Constants for the PDP Security & Privacy engine

Centralized identifiers for error codes, endpoints, aggregations,
consent statuses and access-log actions.
"""

from typing import Final

# =============================================================================
# SERVICE IDENTIFICATION
# =============================================================================

SERVICE_NAME: Final[str] = "pdp-security-privacy"
SERVICE_VERSION: Final[str] = "0.1.0"

# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCodes:
    """Machine-readable error codes surfaced in API responses"""
    # Caller authentication
    UNAUTHENTICATED: Final[str] = "UNAUTHENTICATED"

    # Token layer
    MALFORMED: Final[str] = "MALFORMED"
    INVALID: Final[str] = "INVALID"
    EXPIRED: Final[str] = "EXPIRED"
    VERIFICATION_FAILED: Final[str] = "VERIFICATION_FAILED"
    TOKEN_REVOKED: Final[str] = "TOKEN_REVOKED"
    TOKEN_NOT_FOUND: Final[str] = "TOKEN_NOT_FOUND"
    TOKEN_MISMATCH: Final[str] = "TOKEN_MISMATCH"

    # Policy layer
    INVALID_PARAMS: Final[str] = "INVALID_PARAMS"
    MISSING_CONSENT: Final[str] = "MISSING_CONSENT"
    CONSENT_REVOKED: Final[str] = "CONSENT_REVOKED"
    CONSENT_RESTRICTED: Final[str] = "CONSENT_RESTRICTED"
    CONSENT_EXPIRED: Final[str] = "CONSENT_EXPIRED"
    INSUFFICIENT_SCOPES: Final[str] = "INSUFFICIENT_SCOPES"

    # Throttling
    RATE_LIMITED: Final[str] = "RATE_LIMITED"

    # Request / computation
    UNKNOWN_CATEGORY: Final[str] = "UNKNOWN_CATEGORY"
    INVALID_PARAMETER: Final[str] = "INVALID_PARAMETER"
    EMPTY_INPUT: Final[str] = "EMPTY_INPUT"
    INVALID_INPUT: Final[str] = "INVALID_INPUT"
    NOT_FOUND: Final[str] = "NOT_FOUND"
    CONFLICT: Final[str] = "CONFLICT"

    # Infrastructure
    STORAGE_ERROR: Final[str] = "STORAGE_ERROR"
    INTERNAL_ERROR: Final[str] = "INTERNAL_ERROR"


# =============================================================================
# CONSENT
# =============================================================================

class PolicyStatus:
    """Consent policy status values"""
    GRANTED: Final[str] = "GRANTED"
    RESTRICTED: Final[str] = "RESTRICTED"
    REVOKED: Final[str] = "REVOKED"


class CallerStatus:
    """API caller status values"""
    ACTIVE: Final[str] = "ACTIVE"
    REVOKED: Final[str] = "REVOKED"


# =============================================================================
# QUERY
# =============================================================================

class Aggregations:
    """Supported aggregation names"""
    MEAN: Final[str] = "mean"
    COUNT: Final[str] = "count"
    SUM: Final[str] = "sum"
    MIN: Final[str] = "min"
    MAX: Final[str] = "max"


class Endpoints:
    """Endpoint identifiers used for rate limiting and access logs"""
    PDP_QUERY: Final[str] = "/api/pdp/query"
    CONSENT_TOKENS: Final[str] = "/consent/tokens"
    CONSENT_POLICIES: Final[str] = "/consent/policies"
    DATA_REGISTER: Final[str] = "/data/records"


class AccessActions:
    """Access-log action identifiers"""
    QUERY: Final[str] = "query"
    TOKEN_ISSUED: Final[str] = "token-issued"
    TOKEN_REVOKED: Final[str] = "token-revoked"
    POLICY_UPDATED: Final[str] = "policy-updated"
    POLICY_DELETED: Final[str] = "policy-deleted"
    RECORD_REGISTERED: Final[str] = "register"


NO_DATA_MESSAGE: Final[str] = "No data available for the specified category"

# =============================================================================
# HTTP HEADERS
# =============================================================================

class Headers:
    """Header names read and written by the HTTP surface"""
    API_KEY: Final[str] = "x-api-key"
    AUTHORIZATION: Final[str] = "authorization"
    RETRY_AFTER: Final[str] = "Retry-After"
    RATE_LIMIT_LIMIT: Final[str] = "X-RateLimit-Limit"
    RATE_LIMIT_REMAINING: Final[str] = "X-RateLimit-Remaining"
    RATE_LIMIT_RESET: Final[str] = "X-RateLimit-Reset"
