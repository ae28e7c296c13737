"""
Consent management module for the PDP engine
Categories, consent policies, consent token records and their lifecycle
"""

from .models import (
    ConsentPolicy,
    ConsentPolicyStatus,
    ConsentTokenRecord,
    DataCategory,
    PolicyUpsertRequest,
    TokenIssueRequest,
    RecordRegisterRequest,
)
from .storage import ConsentStorage, InMemoryConsentStorage

__all__ = [
    "ConsentPolicy",
    "ConsentPolicyStatus",
    "ConsentTokenRecord",
    "DataCategory",
    "PolicyUpsertRequest",
    "TokenIssueRequest",
    "RecordRegisterRequest",
    "ConsentStorage",
    "InMemoryConsentStorage",
]
