"""
Custom Exceptions for the PDP Security & Privacy engine

Provides a unified exception hierarchy for caller authentication,
consent tokens, consent policies, rate limiting, differential-privacy
parameters and storage failures. Every error carries a machine code,
an HTTP status and an optional user-facing reason.
"""

from typing import Optional, Dict, Any, List

from .constants import ErrorCodes, Headers


class SecurityError(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional context about the error
        reason: Short explanation suitable for display to the data subject
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: str = ErrorCodes.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.reason = reason
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        result: Dict[str, Any] = {
            "error": self.message,
            "code": self.error_code,
        }
        if self.reason:
            result["reason"] = self.reason
        if self.details:
            result["details"] = self.details
        return result

    def headers(self) -> Dict[str, str]:
        """Extra response headers for this error"""
        return {}


# =============================================================================
# AUTHENTICATION ERRORS
# =============================================================================

class UnauthenticatedError(SecurityError):
    """Raised when the caller's API key is missing, unknown or revoked"""

    status_code = 401

    def __init__(self, message: str = "API key required", reason: Optional[str] = None):
        super().__init__(
            message=message,
            error_code=ErrorCodes.UNAUTHENTICATED,
            reason=reason or "Please provide a valid API key in the x-api-key header",
        )


# =============================================================================
# TOKEN ERRORS
# =============================================================================

class TokenError(SecurityError):
    """Base exception for consent-token failures"""

    status_code = 403

    def __init__(
        self,
        message: str,
        error_code: str,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code, details, reason)

    @property
    def code(self) -> str:
        return self.error_code


class TokenMalformedError(TokenError):
    """Raised when a token is empty or not three dot-separated segments"""

    def __init__(self, message: str = "Malformed token"):
        super().__init__(
            message,
            ErrorCodes.MALFORMED,
            reason="The consent token format is incorrect. Please check your authorization header",
        )


class TokenInvalidError(TokenError):
    """Raised when required claims are missing or mistyped"""

    def __init__(self, message: str = "Invalid token"):
        super().__init__(
            message,
            ErrorCodes.INVALID,
            reason="The provided consent token is invalid or corrupted. Please obtain a new consent token",
        )


class TokenExpiredError(TokenError):
    """Raised when the token's expiry has passed"""

    def __init__(self, message: str = "Token has expired", reason: Optional[str] = None):
        super().__init__(
            message,
            ErrorCodes.EXPIRED,
            reason=reason or "Your consent token has expired. Please provide new consent to continue",
        )


class TokenVerificationFailedError(TokenError):
    """Raised when the token signature does not match"""

    def __init__(self, message: str = "Token verification failed"):
        super().__init__(
            message,
            ErrorCodes.VERIFICATION_FAILED,
            reason="Unable to verify consent token signature. Please obtain a new consent token",
        )


class TokenRevokedError(TokenError):
    """Raised when the persisted token record is revoked"""

    def __init__(self, token_id: Optional[str] = None):
        super().__init__(
            "Token has been revoked",
            ErrorCodes.TOKEN_REVOKED,
            reason="Your consent has been withdrawn. Please provide new consent to access this resource",
            details={"token_id": token_id} if token_id else None,
        )


class TokenNotFoundError(TokenError):
    """Raised when no persisted record backs a verified token"""

    def __init__(self, token_id: Optional[str] = None):
        super().__init__(
            "Token not found",
            ErrorCodes.TOKEN_NOT_FOUND,
            reason="This consent token is not recognized or may have been deleted",
            details={"token_id": token_id} if token_id else None,
        )


class TokenMismatchError(TokenError):
    """Raised when a request asks for more than the token grants"""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message, ErrorCodes.TOKEN_MISMATCH, reason=reason)


# =============================================================================
# CONSENT POLICY ERRORS
# =============================================================================

class ConsentError(SecurityError):
    """Base exception for consent-policy denials"""

    status_code = 403

    def __init__(
        self,
        message: str,
        error_code: str,
        subject_id: Optional[str] = None,
        category: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if subject_id:
            details["subject_id"] = subject_id
        if category:
            details["category"] = category
        super().__init__(message, error_code, details, reason)


class InvalidParamsError(ConsentError):
    """Raised when a consent check is called with unusable arguments"""

    status_code = 400

    def __init__(self, message: str = "Invalid consent check parameters"):
        super().__init__(
            message,
            ErrorCodes.INVALID_PARAMS,
            reason="Missing required parameters for consent verification",
        )


class MissingConsentError(ConsentError):
    """Raised when no policy exists for one or more categories"""

    def __init__(self, categories: List[str], purpose: str, subject_id: Optional[str] = None):
        joined = ", ".join(categories)
        super().__init__(
            f"No consent policy found for categories: {joined}",
            ErrorCodes.MISSING_CONSENT,
            subject_id=subject_id,
            reason=(
                f"You haven't granted consent for '{joined}' data categories under "
                f"'{purpose}' purpose. Please provide consent first"
            ),
            details={"missing_categories": list(categories), "purpose": purpose},
        )
        self.missing_categories = list(categories)


class ConsentRevokedError(ConsentError):
    """Raised when the matching policy is REVOKED"""

    def __init__(self, category: str, purpose: str, subject_id: Optional[str] = None):
        super().__init__(
            f"Consent revoked for category: {category}",
            ErrorCodes.CONSENT_REVOKED,
            subject_id=subject_id,
            category=category,
            reason=(
                f"Your consent for '{category}' data under '{purpose}' purpose has been "
                "revoked. Please provide new consent to access this data"
            ),
        )


class ConsentRestrictedError(ConsentError):
    """Raised when the matching policy is RESTRICTED"""

    def __init__(self, category: str, purpose: str, subject_id: Optional[str] = None):
        super().__init__(
            f"Consent restricted for category: {category}",
            ErrorCodes.CONSENT_RESTRICTED,
            subject_id=subject_id,
            category=category,
            reason=(
                f"Access to '{category}' data is currently restricted under "
                f"'{purpose}' purpose"
            ),
        )


class ConsentExpiredError(ConsentError):
    """Raised when the matching policy's expiry has passed"""

    def __init__(
        self,
        category: str,
        purpose: str,
        expired_at: Optional[str] = None,
        subject_id: Optional[str] = None
    ):
        details: Dict[str, Any] = {}
        if expired_at:
            details["expired_at"] = expired_at
        super().__init__(
            f"Consent expired for category: {category}",
            ErrorCodes.CONSENT_EXPIRED,
            subject_id=subject_id,
            category=category,
            reason=(
                f"Your consent for '{category}' data under '{purpose}' purpose expired"
                + (f" on {expired_at}" if expired_at else "")
                + ". Please renew your consent to continue"
            ),
            details=details,
        )


class InsufficientScopesError(ConsentError):
    """Raised when a policy does not grant every required scope"""

    def __init__(self, category: str, missing_scopes: List[str], subject_id: Optional[str] = None):
        joined = ", ".join(missing_scopes)
        super().__init__(
            f"Insufficient scopes for category {category}. Missing: {joined}",
            ErrorCodes.INSUFFICIENT_SCOPES,
            subject_id=subject_id,
            category=category,
            reason=(
                f"Your consent for '{category}' data doesn't include the required "
                f"permissions: {joined}. Please update your consent to grant these permissions"
            ),
            details={"missing_scopes": list(missing_scopes)},
        )
        self.missing_scopes = list(missing_scopes)


# =============================================================================
# RATE LIMIT ERRORS
# =============================================================================

class RateLimitedError(SecurityError):
    """Raised when a caller has exhausted the current window"""

    status_code = 429

    def __init__(self, limit: int, remaining: int, reset_time_ms: int, retry_after: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_time_ms = reset_time_ms
        self.retry_after = retry_after
        super().__init__(
            "Rate limit exceeded",
            ErrorCodes.RATE_LIMITED,
            details={"retry_after": retry_after, "limit": limit, "remaining": remaining},
            reason=f"Too many requests. Please retry after {retry_after} seconds",
        )

    def headers(self) -> Dict[str, str]:
        return {
            Headers.RETRY_AFTER: str(self.retry_after),
            Headers.RATE_LIMIT_LIMIT: str(self.limit),
            Headers.RATE_LIMIT_REMAINING: str(self.remaining),
            Headers.RATE_LIMIT_RESET: str(self.reset_time_ms // 1000),
        }


# =============================================================================
# REQUEST / PRIVACY PARAMETER ERRORS
# =============================================================================

class ValidationError(SecurityError):
    """Base exception for client-side input problems"""

    status_code = 400

    def __init__(
        self,
        message: str,
        error_code: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, error_code, details, reason)


class InvalidParameterError(ValidationError):
    """Raised when a numeric or request parameter is out of range"""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCodes.INVALID_PARAMETER, field=field, details=details)


class EmptyInputError(ValidationError):
    """Raised when an aggregation receives no values"""

    def __init__(self, message: str = "Cannot compute over an empty input"):
        super().__init__(message, ErrorCodes.EMPTY_INPUT)


class InvalidInputError(ValidationError):
    """Raised when input rows are not key/value mappings"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, ErrorCodes.INVALID_INPUT, field=field)


class UnknownCategoryError(ValidationError):
    """Raised when a category key is not in the catalog"""

    def __init__(self, category: str):
        super().__init__(
            f"Invalid category: {category}",
            ErrorCodes.UNKNOWN_CATEGORY,
            field="category",
            reason=(
                f"The data category '{category}' is not recognized. "
                "Please check available categories and try again"
            ),
        )


class NotFoundError(SecurityError):
    """Raised when a managed resource does not exist for the subject"""

    status_code = 404

    def __init__(self, resource: str, resource_id: str, reason: Optional[str] = None):
        super().__init__(
            f"{resource} not found",
            ErrorCodes.NOT_FOUND,
            details={"resource": resource, "id": resource_id},
            reason=reason,
        )


class ConflictError(SecurityError):
    """Raised when a state transition is not possible"""

    status_code = 409

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message, ErrorCodes.CONFLICT, reason=reason)


# =============================================================================
# STORAGE ERRORS
# =============================================================================

class StorageError(SecurityError):
    """Raised when a backing store cannot be read or written"""

    status_code = 500

    def __init__(self, operation: str, reason: Optional[str] = None):
        details: Dict[str, Any] = {"operation": operation}
        super().__init__(
            f"Storage operation failed: {operation}",
            ErrorCodes.STORAGE_ERROR,
            details=details,
            reason=reason,
        )
