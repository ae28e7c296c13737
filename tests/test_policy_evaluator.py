"""Tests for consent policy evaluation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, UTC

import pytest

from pdp_sec.constants import ErrorCodes
from pdp_sec.consent.models import ConsentPolicy, ConsentPolicyStatus
from pdp_sec.consent.storage import ConsentStorage, InMemoryConsentStorage
from pdp_sec.exceptions import (
    ConsentExpiredError,
    ConsentRestrictedError,
    ConsentRevokedError,
    InsufficientScopesError,
    InvalidParamsError,
    MissingConsentError,
)
from pdp_sec.policy import PolicyEvaluator


def _policy(category: str, scopes, status=ConsentPolicyStatus.GRANTED, purpose: str = "telemedicine",
            expires_at=None, updated_at=None) -> ConsentPolicy:
    now = updated_at or datetime.now(UTC)
    return ConsentPolicy(
        subject_id="user_123",
        category_key=category,
        purpose=purpose,
        status=status,
        scopes=list(scopes),
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
    )


class TestPolicyEvaluator:
    def setup_method(self) -> None:
        self.storage = InMemoryConsentStorage()
        self.evaluator = PolicyEvaluator(self.storage)

    def test_granted_policy_allows_subset_of_scopes(self) -> None:
        self.storage.save_policy(_policy("health", ["read", "aggregate"]))

        self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])
        assert self.evaluator.is_allowed("user_123", ["health"], "telemedicine", ["read", "aggregate"])

    def test_missing_scope_is_named(self) -> None:
        self.storage.save_policy(_policy("health", ["read", "aggregate"]))

        with pytest.raises(InsufficientScopesError) as exc_info:
            self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read", "write"])

        assert exc_info.value.error_code == ErrorCodes.INSUFFICIENT_SCOPES
        assert exc_info.value.missing_scopes == ["write"]
        assert "write" in exc_info.value.reason

    def test_empty_required_scopes_allowed(self) -> None:
        self.storage.save_policy(_policy("health", ["read"]))
        self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", [])

    def test_missing_consent_lists_every_category(self) -> None:
        self.storage.save_policy(_policy("health", ["read"]))

        with pytest.raises(MissingConsentError) as exc_info:
            self.evaluator.ensure_allowed(
                "user_123", ["financial", "health", "location"], "telemedicine", ["read"]
            )

        assert exc_info.value.missing_categories == ["financial", "location"]
        assert exc_info.value.status_code == 403

    def test_purpose_must_match(self) -> None:
        self.storage.save_policy(_policy("health", ["read"], purpose="research"))

        with pytest.raises(MissingConsentError):
            self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])

    def test_revoked_policy(self) -> None:
        self.storage.save_policy(_policy("health", ["read"], status=ConsentPolicyStatus.REVOKED))

        with pytest.raises(ConsentRevokedError) as exc_info:
            self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])
        assert exc_info.value.error_code == ErrorCodes.CONSENT_REVOKED

    def test_restricted_policy(self) -> None:
        self.storage.save_policy(_policy("health", ["read"], status=ConsentPolicyStatus.RESTRICTED))

        with pytest.raises(ConsentRestrictedError):
            self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])

    def test_expired_policy_reports_date(self) -> None:
        expired = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)
        self.storage.save_policy(_policy("health", ["read"], expires_at=expired))

        with pytest.raises(ConsentExpiredError) as exc_info:
            self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])

        assert exc_info.value.details["expired_at"] == "2024-01-15"
        assert "2024-01-15" in exc_info.value.reason

    def test_future_expiry_allows(self) -> None:
        future = datetime.now(UTC) + timedelta(days=30)
        self.storage.save_policy(_policy("health", ["read"], expires_at=future))
        self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])

    def test_expiry_uses_injected_clock(self) -> None:
        expires = datetime(2030, 6, 1, tzinfo=UTC)
        self.storage.save_policy(_policy("health", ["read"], expires_at=expires))
        evaluator = PolicyEvaluator(self.storage, clock=lambda: expires)

        with pytest.raises(ConsentExpiredError):
            evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])

    def test_first_failing_category_in_request_order(self) -> None:
        self.storage.save_policy(_policy("health", ["read"], status=ConsentPolicyStatus.RESTRICTED))
        self.storage.save_policy(_policy("financial", ["read"], status=ConsentPolicyStatus.REVOKED))

        with pytest.raises(ConsentRevokedError):
            self.evaluator.ensure_allowed("user_123", ["financial", "health"], "telemedicine", ["read"])

        with pytest.raises(ConsentRestrictedError):
            self.evaluator.ensure_allowed("user_123", ["health", "financial"], "telemedicine", ["read"])

    def test_most_recently_updated_policy_wins(self) -> None:
        earlier = datetime.now(UTC) - timedelta(hours=1)
        self.storage.save_policy(_policy("health", ["read"], updated_at=earlier))
        self.storage.save_policy(_policy("health", ["read"], status=ConsentPolicyStatus.REVOKED))

        assert not self.evaluator.is_allowed("user_123", ["health"], "telemedicine", ["read"])

    def test_duplicate_categories_collapse(self) -> None:
        self.storage.save_policy(_policy("health", ["read"]))
        self.evaluator.ensure_allowed("user_123", ["health", "health"], "telemedicine", ["read", "read"])

    @pytest.mark.parametrize("subject_id,categories,purpose,scopes", [
        ("", ["health"], "telemedicine", ["read"]),
        ("user_123", [], "telemedicine", ["read"]),
        ("user_123", "health", "telemedicine", ["read"]),
        ("user_123", ["health"], "", ["read"]),
        ("user_123", ["health"], "telemedicine", "read"),
        ("user_123", ["health", 7], "telemedicine", ["read"]),
        (None, ["health"], "telemedicine", ["read"]),
    ])
    def test_invalid_params(self, subject_id, categories, purpose, scopes) -> None:
        with pytest.raises(InvalidParamsError) as exc_info:
            self.evaluator.ensure_allowed(subject_id, categories, purpose, scopes)

        assert exc_info.value.error_code == ErrorCodes.INVALID_PARAMS
        assert exc_info.value.status_code == 400

    def test_is_allowed_still_raises_for_bad_params(self) -> None:
        with pytest.raises(InvalidParamsError):
            self.evaluator.is_allowed("user_123", [], "telemedicine", ["read"])


class TestPolicyEvaluatorSQL:
    def setup_method(self) -> None:
        self.storage = ConsentStorage(database_url="sqlite:///:memory:")
        self.evaluator = PolicyEvaluator(self.storage)

    def test_sql_backed_evaluation(self) -> None:
        self.storage.save_policy(_policy("health", ["read", "aggregate"]))

        self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read", "aggregate"])
        with pytest.raises(InsufficientScopesError):
            self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["analyze"])

    def test_sql_expired_policy(self) -> None:
        past = datetime.now(UTC) - timedelta(days=1)
        self.storage.save_policy(_policy("health", ["read"], expires_at=past))

        with pytest.raises(ConsentExpiredError):
            self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])

    def test_sql_offset_expiry_in_the_past(self) -> None:
        plus_five = timezone(timedelta(hours=5))
        past = datetime.now(plus_five) - timedelta(hours=1)
        self.storage.save_policy(_policy("health", ["read"], expires_at=past))

        with pytest.raises(ConsentExpiredError):
            self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])

    def test_sql_offset_expiry_in_the_future(self) -> None:
        minus_five = timezone(timedelta(hours=-5))
        future = datetime.now(minus_five) + timedelta(hours=1)
        self.storage.save_policy(_policy("health", ["read"], expires_at=future))

        self.evaluator.ensure_allowed("user_123", ["health"], "telemedicine", ["read"])
