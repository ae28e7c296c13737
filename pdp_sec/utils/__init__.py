"""
Utility functions for the PDP security module
ID generation, input validation and client metadata helpers
"""

from .ids import (
    generate_token_id,
    generate_policy_id,
    generate_record_id,
    generate_caller_id,
    generate_api_key,
    generate_access_id,
    validate_id,
)
from .validators import (
    validate_subject_id,
    validate_scopes,
    validate_ttl_seconds,
    validate_record_payload,
    sanitize_log_value,
)
from .client_info import ClientInfo, client_info_from_headers, extract_client_ip, extract_user_agent

__all__ = [
    # ID generation
    "generate_token_id",
    "generate_policy_id",
    "generate_record_id",
    "generate_caller_id",
    "generate_api_key",
    "generate_access_id",
    "validate_id",
    # Validators
    "validate_subject_id",
    "validate_scopes",
    "validate_ttl_seconds",
    "validate_record_payload",
    "sanitize_log_value",
    # Client metadata
    "ClientInfo",
    "client_info_from_headers",
    "extract_client_ip",
    "extract_user_agent",
]
