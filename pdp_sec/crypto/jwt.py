"""
Consent token utilities for the PDP engine
Signed, time-bounded consent token issuing, verification and decoding
"""

import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import jwt
import structlog
from pydantic import BaseModel

from ..config import SecurityConfig, get_security_config
from ..exceptions import (
    TokenExpiredError,
    TokenInvalidError,
    TokenMalformedError,
    TokenVerificationFailedError,
)
from ..utils.ids import generate_token_id
from ..utils.validators import validate_ttl_seconds

logger = structlog.get_logger(__name__)

BEARER_PREFIX = "Bearer "


class ConsentTokenClaims(BaseModel):
    """Validated consent token payload"""
    sub: str
    purpose: str
    categories: List[str]
    scopes: List[str]
    iat: int
    exp: int
    jti: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


class IssuedConsentToken(BaseModel):
    """A freshly signed consent token"""
    token: str
    exp: int
    token_id: str

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


class ConsentTokenService:
    """
    Issues and verifies consent tokens (HS256 by default).

    Revocation is not encoded in the token; callers check the persisted
    token record by ``jti`` after ``verify`` succeeds.
    """

    def __init__(
        self,
        config: Optional[SecurityConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or get_security_config()
        self.secret = self.config.jwt_secret
        self.algorithm = self.config.jwt_algorithm
        self.clock = clock

    def issue(
        self,
        subject: str,
        purpose: str,
        categories: List[str],
        scopes: List[str],
        ttl_seconds: int,
        token_id: Optional[str] = None
    ) -> IssuedConsentToken:
        """
        Sign a consent token

        Args:
            subject: Data subject the token acts for
            purpose: Processing purpose
            categories: Category keys covered by the token
            scopes: Operation scopes granted
            ttl_seconds: Lifetime in seconds
            token_id: Unique token ID (generated when omitted)

        Returns:
            IssuedConsentToken with the token string, expiry and ID
        """
        ttl_seconds = validate_ttl_seconds(ttl_seconds)

        now = self.clock()
        token_id = token_id or generate_token_id()
        exp = math.ceil(now) + ttl_seconds

        payload = {
            "sub": subject,
            "purpose": purpose,
            "categories": list(categories),
            "scopes": list(scopes),
            "iat": int(now),
            "exp": exp,
            "jti": token_id,
        }

        token = jwt.encode(payload, self.secret, algorithm=self.algorithm)

        logger.info("Issued consent token",
                    subject_id=subject,
                    purpose=purpose,
                    token_id=token_id,
                    expires_in=ttl_seconds)

        return IssuedConsentToken(token=token, exp=exp, token_id=token_id)

    def verify(self, token: Any) -> ConsentTokenClaims:
        """
        Verify signature, expiry and claim shape

        Raises:
            TokenMalformedError: Empty, non-string or structurally broken token
            TokenVerificationFailedError: Signature or algorithm mismatch
            TokenExpiredError: Expiry has passed
            TokenInvalidError: Required claims missing or mistyped
        """
        if not isinstance(token, str) or not token:
            raise TokenMalformedError("Token must be a non-empty string")

        if token.count(".") != 2 or not all(token.split(".")):
            raise TokenMalformedError("Token must have three dot-separated segments")

        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={
                    "verify_signature": True,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "verify_sub": False,
                    "verify_jti": False,
                },
            )
        except jwt.InvalidSignatureError:
            logger.warning("Consent token signature mismatch")
            raise TokenVerificationFailedError("Token signature verification failed")
        except jwt.InvalidAlgorithmError:
            logger.warning("Consent token uses a disallowed algorithm")
            raise TokenVerificationFailedError("Token algorithm not allowed")
        except jwt.DecodeError as e:
            logger.warning("Consent token could not be decoded", error=str(e))
            raise TokenMalformedError("Token could not be decoded")
        except jwt.InvalidTokenError as e:
            logger.warning("Consent token rejected", error=str(e))
            raise TokenInvalidError(f"Invalid token: {e}")

        exp = payload.get("exp")
        if not _is_number(exp):
            raise TokenInvalidError("Token missing or invalid expiration timestamp")

        if self.clock() >= exp:
            logger.info("Consent token expired", subject_id=payload.get("sub"))
            raise TokenExpiredError()

        return self._validate_claims(payload)

    def _validate_claims(self, payload: Dict[str, Any]) -> ConsentTokenClaims:
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise TokenInvalidError("Token missing required subject")

        purpose = payload.get("purpose")
        if not isinstance(purpose, str) or not purpose:
            raise TokenInvalidError("Token missing required purpose")

        if not _is_string_list(payload.get("categories")):
            raise TokenInvalidError("Token missing or invalid categories array")

        if not _is_string_list(payload.get("scopes")):
            raise TokenInvalidError("Token missing or invalid scopes array")

        if not _is_number(payload.get("iat")):
            raise TokenInvalidError("Token missing or invalid issued at timestamp")

        jti = payload.get("jti")
        if jti is not None and not isinstance(jti, str):
            raise TokenInvalidError("Token has an invalid identifier")

        return ConsentTokenClaims(
            sub=sub,
            purpose=purpose,
            categories=payload["categories"],
            scopes=payload["scopes"],
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            jti=jti,
        )

    def decode(self, token: Any) -> Optional[Dict[str, Any]]:
        """
        Decode a token without checking signature or expiry

        Only for diagnostics and logging, never for authorization.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            return None
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None


def extract_bearer_token(authorization_header: Optional[str]) -> str:
    """Extract the consent token from an Authorization header"""
    if not authorization_header:
        raise TokenMalformedError("No authorization header")

    if not authorization_header.startswith(BEARER_PREFIX):
        raise TokenMalformedError("Invalid authorization header format")

    token = authorization_header[len(BEARER_PREFIX):].strip()
    if not token:
        raise TokenMalformedError("Empty bearer token")

    return token
