"""
Consent data models for the PDP engine
Data categories, consent policies and persisted consent token records
"""

from datetime import datetime, UTC
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ..constants import PolicyStatus
from ..utils.ids import generate_policy_id


class ConsentPolicyStatus(str, Enum):
    """Consent policy status"""
    GRANTED = PolicyStatus.GRANTED
    RESTRICTED = PolicyStatus.RESTRICTED
    REVOKED = PolicyStatus.REVOKED


class DataCategory(BaseModel):
    """Immutable catalog entry for a kind of personal data"""
    key: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None

    model_config = {"frozen": True}


class ConsentPolicy(BaseModel):
    """A subject's standing consent for one (category, purpose) pair"""
    id: str = Field(default_factory=generate_policy_id)
    subject_id: str = Field(..., description="Data subject identifier")
    category_key: str = Field(..., description="Data category key")
    purpose: str = Field(..., description="Purpose of data processing")
    status: ConsentPolicyStatus = Field(default=ConsentPolicyStatus.GRANTED)
    scopes: List[str] = Field(default_factory=list)

    expires_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at

    def missing_scopes(self, required: List[str]) -> List[str]:
        """Required scopes this policy does not grant, in request order"""
        granted = set(self.scopes)
        return [scope for scope in required if scope not in granted]


class ConsentTokenRecord(BaseModel):
    """Persisted state of an issued consent token"""
    id: str = Field(..., description="Token ID, equal to the jti claim")
    subject_id: str
    purpose: str
    categories: List[str] = Field(default_factory=list)
    scopes: List[str] = Field(default_factory=list)
    issued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime
    revoked: bool = Field(default=False)
    revoked_at: Optional[datetime] = Field(default=None)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)


# =============================================================================
# REQUEST PAYLOADS
# =============================================================================

class PolicyUpsertRequest(BaseModel):
    """Create or update a consent policy"""
    id: Optional[str] = None
    category_key: str = Field(..., min_length=1, max_length=50)
    purpose: str = Field(..., min_length=1, max_length=200)
    status: ConsentPolicyStatus = ConsentPolicyStatus.GRANTED
    scopes: List[str] = Field(..., min_length=1)
    expires_at: Optional[datetime] = None

    @field_validator("scopes")
    @classmethod
    def _dedupe_scopes(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))

    @field_validator("expires_at")
    @classmethod
    def _normalize_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class TokenIssueRequest(BaseModel):
    """Request a consent token for delegated access"""
    purpose: str = Field(..., min_length=1, max_length=200)
    categories: List[str] = Field(..., min_length=1)
    scopes: List[str] = Field(..., min_length=1)
    ttl_seconds: Optional[int] = Field(default=None, gt=0)


class RecordRegisterRequest(BaseModel):
    """Register a raw record in a known category"""
    category_key: str = Field(..., min_length=1, max_length=50)
    payload: dict = Field(...)
