"""Shared helpers for the PDP engine test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, UTC
from itertools import cycle
from typing import Iterable, List, Optional

from pdp_sec.config import SecurityConfig
from pdp_sec.consent.models import ConsentPolicy, ConsentPolicyStatus, ConsentTokenRecord
from pdp_sec.query.records import RawRecord
from pdp_sec.services import Services, build_services

TEST_SECRET = "test-signing-secret-with-enough-length-for-hs256"


class FixedRandom:
    """Replays a fixed sequence of uniform draws, cycling when exhausted."""

    def __init__(self, values: Iterable[float]) -> None:
        self.values: List[float] = list(values)
        self._iter = cycle(self.values)
        self.calls = 0

    def random(self) -> float:
        self.calls += 1
        return next(self._iter)


def make_config(**overrides) -> SecurityConfig:
    values = {"jwt_secret": TEST_SECRET, "database_url": "sqlite:///:memory:"}
    values.update(overrides)
    return SecurityConfig(**values)


def make_services(random_source=None, **overrides) -> Services:
    """In-memory services with zero noise unless a source is given."""
    return build_services(
        make_config(**overrides),
        in_memory=True,
        random_source=random_source or FixedRandom([0.5]),
    )


def grant(
    services: Services,
    subject_id: str,
    category: str,
    purpose: str,
    scopes: List[str],
    status: ConsentPolicyStatus = ConsentPolicyStatus.GRANTED,
    expires_at: Optional[datetime] = None,
    updated_at: Optional[datetime] = None,
) -> ConsentPolicy:
    now = updated_at or datetime.now(UTC)
    policy = ConsentPolicy(
        subject_id=subject_id,
        category_key=category,
        purpose=purpose,
        status=status,
        scopes=scopes,
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
    )
    return services.consent_storage.save_policy(policy)


def add_records(services: Services, subject_id: str, category: str, payloads: Iterable[dict]) -> None:
    base = datetime.now(UTC) - timedelta(days=30)
    for offset, payload in enumerate(payloads):
        services.records.add_record(RawRecord(
            subject_id=subject_id,
            category_key=category,
            payload=payload,
            created_at=base + timedelta(hours=offset),
        ))


def store_token(
    services: Services,
    subject_id: str,
    purpose: str,
    categories: List[str],
    scopes: List[str],
    ttl_seconds: int = 3600,
) -> str:
    """Sign a token and persist its record, bypassing the policy check."""
    issued = services.tokens.issue(subject_id, purpose, categories, scopes, ttl_seconds)
    services.consent_storage.store_token(ConsentTokenRecord(
        id=issued.token_id,
        subject_id=subject_id,
        purpose=purpose,
        categories=list(categories),
        scopes=list(scopes),
        expires_at=issued.expires_at,
    ))
    return issued.token
