"""
Cryptographic utilities for the PDP engine
Consent token signing and verification
"""

from .jwt import (
    ConsentTokenService,
    ConsentTokenClaims,
    IssuedConsentToken,
    extract_bearer_token,
)

__all__ = [
    "ConsentTokenService",
    "ConsentTokenClaims",
    "IssuedConsentToken",
    "extract_bearer_token",
]
