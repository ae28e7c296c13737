"""
Input validators for the PDP Security & Privacy engine

Validation utilities for subject IDs, scope lists, token lifetimes
and record payloads.
"""

import re
from typing import Any, Dict, List, Mapping, Optional

import structlog

from ..exceptions import InvalidParameterError

logger = structlog.get_logger(__name__)

# =============================================================================
# REGEX PATTERNS
# =============================================================================

SUBJECT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.@:-]{1,128}$")
SCOPE_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_:-]{0,63}$")

# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================

def validate_subject_id(subject_id: Any, field_name: str = "subject_id") -> str:
    """
    Validate a data subject identifier.

    Args:
        subject_id: Identifier to validate
        field_name: Field name for error messages

    Returns:
        Stripped subject ID

    Raises:
        InvalidParameterError: If validation fails
    """
    if not isinstance(subject_id, str) or not subject_id.strip():
        raise InvalidParameterError(f"{field_name} is required", field=field_name)

    subject_id = subject_id.strip()
    if not SUBJECT_ID_PATTERN.match(subject_id):
        raise InvalidParameterError(f"{field_name} contains invalid characters", field=field_name)

    return subject_id


def validate_scopes(scopes: Any, field_name: str = "scopes", allow_empty: bool = False) -> List[str]:
    """
    Validate a list of scope names.

    Duplicates are collapsed, first occurrence wins.

    Raises:
        InvalidParameterError: If scopes is not a list of valid names
    """
    if isinstance(scopes, (str, bytes)) or not isinstance(scopes, (list, tuple, set, frozenset)):
        raise InvalidParameterError(f"{field_name} must be a list", field=field_name)

    validated: List[str] = []
    for scope in scopes:
        if not isinstance(scope, str) or not SCOPE_PATTERN.match(scope.strip()):
            raise InvalidParameterError(
                f"Invalid scope in {field_name}: {scope!r}",
                field=field_name,
            )
        scope = scope.strip()
        if scope not in validated:
            validated.append(scope)

    if not validated and not allow_empty:
        raise InvalidParameterError(f"{field_name} must not be empty", field=field_name)

    return validated


def validate_ttl_seconds(
    ttl_seconds: Any,
    field_name: str = "ttl_seconds",
    max_seconds: Optional[int] = None
) -> int:
    """
    Validate a token lifetime in seconds.

    Raises:
        InvalidParameterError: If the value is not a positive integer
            or exceeds max_seconds
    """
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int):
        raise InvalidParameterError(f"{field_name} must be an integer", field=field_name)

    if ttl_seconds <= 0:
        raise InvalidParameterError(f"{field_name} must be positive", field=field_name)

    if max_seconds is not None and ttl_seconds > max_seconds:
        raise InvalidParameterError(
            f"{field_name} cannot exceed {max_seconds}",
            field=field_name,
            details={"max_seconds": max_seconds},
        )

    return ttl_seconds


def validate_record_payload(payload: Any, field_name: str = "payload") -> Dict[str, Any]:
    """Validate a raw record payload is a non-empty mapping with string keys"""
    if not isinstance(payload, Mapping):
        raise InvalidParameterError(f"{field_name} must be an object", field=field_name)

    if not payload:
        raise InvalidParameterError(f"{field_name} must not be empty", field=field_name)

    if not all(isinstance(key, str) for key in payload):
        raise InvalidParameterError(f"{field_name} keys must be strings", field=field_name)

    return dict(payload)


def sanitize_log_value(value: Optional[str], max_length: int = 500) -> str:
    """
    Sanitize a client-supplied string before it is logged.

    Args:
        value: Raw value (may be None)
        max_length: Maximum allowed length

    Returns:
        Single-line printable string, truncated to max_length
    """
    if not value:
        return ""

    value = value.replace("\n", " ").replace("\r", " ")
    value = "".join(c for c in value if c.isprintable())

    return value[:max_length]
