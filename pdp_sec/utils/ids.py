"""
ID generation utilities for the PDP engine
Unique identifiers for tokens, policies, records, callers and access events
"""

import uuid
import secrets
from typing import Optional


def generate_token_id() -> str:
    """Generate consent token ID (also used as the JWT jti claim)"""
    return f"tok_{uuid.uuid4().hex}"


def generate_policy_id() -> str:
    """Generate consent policy ID"""
    return f"policy_{uuid.uuid4()}"


def generate_record_id() -> str:
    """Generate raw record ID"""
    return f"rec_{uuid.uuid4().hex}"


def generate_caller_id() -> str:
    """Generate API caller ID"""
    return f"caller_{uuid.uuid4().hex}"


def generate_api_key(prefix: str = "pdp") -> str:
    """Generate API key"""
    return f"{prefix}_{secrets.token_urlsafe(32)}"


def generate_access_id() -> str:
    """Generate access event ID"""
    return f"access_{uuid.uuid4()}"


def validate_id(id_value: str, expected_prefix: Optional[str] = None) -> bool:
    """Validate ID format"""
    if not id_value or not isinstance(id_value, str):
        return False

    if expected_prefix and not id_value.startswith(f"{expected_prefix}_"):
        return False

    return len(id_value.split("_", 1)) == 2
