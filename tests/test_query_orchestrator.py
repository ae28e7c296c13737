"""Tests for the PDP query orchestrator."""

from __future__ import annotations

import math
from typing import Any, Dict

import numpy as np
import pytest

from pdp_sec.config import RateLimitRule
from pdp_sec.constants import AccessActions, ErrorCodes, NO_DATA_MESSAGE
from pdp_sec.consent.models import ConsentPolicyStatus
from pdp_sec.exceptions import (
    ConsentRevokedError,
    InsufficientScopesError,
    InvalidParameterError,
    MissingConsentError,
    RateLimitedError,
    StorageError,
    TokenExpiredError,
    TokenMalformedError,
    TokenMismatchError,
    TokenNotFoundError,
    TokenRevokedError,
    UnauthenticatedError,
    UnknownCategoryError,
)
from pdp_sec.policy.audit import AccessLogger, InMemoryAccessLogStorage
from pdp_sec.query.aggregations import extract_numeric_values
from pdp_sec.query.records import RawRecord
from pdp_sec.utils.client_info import ClientInfo

from conftest import FixedRandom, add_records, grant, make_services, store_token

API_KEY = "pdp_test_partner_key"
SUBJECT = "user_123"
PURPOSE = "telemedicine"
SCOPES = ["read", "analyze", "aggregate"]


class FailingAccessLogStorage(InMemoryAccessLogStorage):
    def store_event(self, event):
        raise StorageError("store_access_event")


class TestQueryOrchestrator:
    def setup_method(self) -> None:
        self.random = FixedRandom([0.5])
        self.services = make_services(self.random)
        self.orchestrator = self.services.orchestrator
        self.caller = self.services.callers.register("Telemedicine partner", api_key=API_KEY)

        grant(self.services, SUBJECT, "health", PURPOSE, SCOPES)
        add_records(
            self.services, SUBJECT, "health",
            ({"steps": 8000 + (i % 5) * 10 - 20, "source": "watch"} for i in range(30)),
        )
        self.token = store_token(self.services, SUBJECT, PURPOSE, ["health"], SCOPES)

    def _execute(self, body: Dict[str, Any], token: str = None, api_key: str = API_KEY, client=None):
        return self.orchestrator.execute(
            api_key=api_key,
            authorization=f"Bearer {token or self.token}",
            body=body,
            client=client,
        )

    def test_end_to_end_mean_and_count(self) -> None:
        outcome = self._execute({
            "category": "health",
            "purpose": PURPOSE,
            "epsilon": 1.0,
            "aggregations": ["mean", "count"],
        })

        result = outcome.result
        assert result.results["count"] == 30
        assert result.results["mean"] == pytest.approx(8000.0)
        assert result.record_count == 30
        assert result.epsilon == 1.0
        assert result.category == "health"
        assert result.message is None

        response = result.to_response()
        assert set(response) == {"results", "epsilon", "category", "purpose", "timestamp", "recordCount"}
        assert outcome.rate_limit.limit == 100
        assert outcome.rate_limit.remaining == 99

    def test_end_to_end_with_real_noise(self) -> None:
        services = make_services(np.random.default_rng())
        services.callers.register("partner", api_key=API_KEY)
        grant(services, SUBJECT, "health", PURPOSE, SCOPES)
        add_records(services, SUBJECT, "health", ({"steps": 8000} for _ in range(30)))
        token = store_token(services, SUBJECT, PURPOSE, ["health"], SCOPES)

        outcome = services.orchestrator.execute(
            API_KEY, f"Bearer {token}",
            {"category": "health", "purpose": PURPOSE, "epsilon": 1.0, "aggregations": ["mean", "count"]},
        )

        # Laplace tails beyond these bounds have probability below e^-15
        assert abs(outcome.result.results["count"] - 30) <= 30
        assert abs(outcome.result.results["mean"] - 8000) < 20000

    def test_default_aggregation_is_count(self) -> None:
        outcome = self._execute({"category": "health", "purpose": PURPOSE})
        assert outcome.result.results == {"count": 30}
        assert outcome.result.epsilon == 1.0

    def test_epsilon_split_across_aggregations(self) -> None:
        services = make_services(FixedRandom([0.75]))
        services.callers.register("partner", api_key=API_KEY)
        grant(services, SUBJECT, "health", PURPOSE, SCOPES)
        add_records(services, SUBJECT, "health", [{"v": 1}, {"v": 2}, {"v": 3}])
        token = store_token(services, SUBJECT, PURPOSE, ["health"], SCOPES)

        outcome = services.orchestrator.execute(
            API_KEY, f"Bearer {token}",
            {"category": "health", "purpose": PURPOSE, "epsilon": 1.0, "aggregations": ["sum", "max"]},
        )

        results = outcome.result.results
        # count uses the full budget; sum and max each get 1.0 / 2
        assert results["count"] == 2
        assert results["sum"] == pytest.approx(6.0 - 2 * math.log(2))
        assert results["max"] == pytest.approx(3.0 - 2 * math.log(2))
        assert "mean" not in results

    def test_no_records_returns_message(self) -> None:
        grant(self.services, SUBJECT, "location", PURPOSE, SCOPES)
        token = store_token(self.services, SUBJECT, PURPOSE, ["location"], SCOPES)

        outcome = self._execute(
            {"category": "location", "purpose": PURPOSE, "aggregations": ["mean", "count"]},
            token=token,
        )

        assert outcome.result.results == {"count": 0}
        assert outcome.result.message == NO_DATA_MESSAGE
        assert outcome.result.to_response()["message"] == NO_DATA_MESSAGE

    def test_non_numeric_payloads_give_null(self) -> None:
        grant(self.services, SUBJECT, "location", PURPOSE, SCOPES)
        add_records(self.services, SUBJECT, "location", [{"city": "Lisbon"}, {"flag": True}])
        token = store_token(self.services, SUBJECT, PURPOSE, ["location"], SCOPES)

        outcome = self._execute(
            {"category": "location", "purpose": PURPOSE, "aggregations": ["mean", "min"]},
            token=token,
        )

        assert outcome.result.results == {"count": 2, "mean": None, "min": None}

    def test_query_is_access_logged(self) -> None:
        client = ClientInfo(ip="203.0.113.9", user_agent="partner-sdk/1.0")
        self._execute({"category": "health", "purpose": PURPOSE}, client=client)

        events = self.services.access_logger.get_events(SUBJECT)
        assert len(events) == 1
        sink = events[0].to_sink_dict()
        assert sink["subject"] == SUBJECT
        assert sink["caller"] == self.caller.id
        assert sink["category"] == "health"
        assert sink["action"] == AccessActions.QUERY
        assert sink["clientIp"] == "203.0.113.9"
        assert sink["tokenId"] is not None

    def test_access_log_failure_does_not_fail_query(self) -> None:
        self.orchestrator.access_logger = AccessLogger(FailingAccessLogStorage())
        outcome = self._execute({"category": "health", "purpose": PURPOSE})
        assert outcome.result.results["count"] == 30

    # -- caller authentication ------------------------------------------

    @pytest.mark.parametrize("api_key", [None, "", "unknown-key"])
    def test_bad_api_key(self, api_key) -> None:
        with pytest.raises(UnauthenticatedError) as exc_info:
            self._execute({"category": "health", "purpose": PURPOSE}, api_key=api_key)
        assert exc_info.value.status_code == 401

    def test_revoked_caller(self) -> None:
        self.services.callers.revoke(self.caller.id)
        with pytest.raises(UnauthenticatedError):
            self._execute({"category": "health", "purpose": PURPOSE})

    def test_rate_limit_checked_before_token(self) -> None:
        self.orchestrator.limiter.rules[self.orchestrator.endpoint] = RateLimitRule(requests=1, window_ms=60_000)
        self._execute({"category": "health", "purpose": PURPOSE})

        with pytest.raises(RateLimitedError) as exc_info:
            self.orchestrator.execute(API_KEY, None, {"category": "health", "purpose": PURPOSE})
        assert exc_info.value.retry_after >= 1

    def test_rate_limit_status(self) -> None:
        self._execute({"category": "health", "purpose": PURPOSE})
        status = self.orchestrator.rate_limit_status(API_KEY)
        assert status.remaining == 99

    # -- token layer -----------------------------------------------------

    def test_missing_authorization(self) -> None:
        with pytest.raises(TokenMalformedError):
            self.orchestrator.execute(API_KEY, None, {"category": "health", "purpose": PURPOSE})

    def test_token_without_record(self) -> None:
        issued = self.services.tokens.issue(SUBJECT, PURPOSE, ["health"], SCOPES, 3600)
        with pytest.raises(TokenNotFoundError) as exc_info:
            self._execute({"category": "health", "purpose": PURPOSE}, token=issued.token)
        assert exc_info.value.code == ErrorCodes.TOKEN_NOT_FOUND

    def test_revoked_token(self) -> None:
        token_id = self.services.tokens.decode(self.token)["jti"]
        self.services.consent_storage.mark_token_revoked(token_id)

        with pytest.raises(TokenRevokedError) as exc_info:
            self._execute({"category": "health", "purpose": PURPOSE})
        assert exc_info.value.code == ErrorCodes.TOKEN_REVOKED

    def test_record_expiry_is_authoritative(self) -> None:
        token_id = self.services.tokens.decode(self.token)["jti"]
        record = self.services.consent_storage.tokens[token_id]
        record.expires_at = record.issued_at

        with pytest.raises(TokenExpiredError):
            self._execute({"category": "health", "purpose": PURPOSE})

    def test_purpose_mismatch(self) -> None:
        with pytest.raises(TokenMismatchError) as exc_info:
            self._execute({"category": "health", "purpose": "marketing"})
        assert exc_info.value.code == ErrorCodes.TOKEN_MISMATCH

    def test_category_not_in_token(self) -> None:
        with pytest.raises(TokenMismatchError):
            self._execute({"category": "financial", "purpose": PURPOSE})

    def test_token_scopes_must_cover_query(self) -> None:
        token = store_token(self.services, SUBJECT, PURPOSE, ["health"], ["read"])
        with pytest.raises(TokenMismatchError):
            self._execute({"category": "health", "purpose": PURPOSE}, token=token)

    @pytest.mark.parametrize("field,value", [
        ("scopes", ["read"]),
        ("categories", ["financial"]),
        ("purpose", "research"),
    ])
    def test_stored_record_must_match_claims(self, field, value) -> None:
        token_id = self.services.tokens.decode(self.token)["jti"]
        record = self.services.consent_storage.tokens[token_id]
        setattr(record, field, value)

        with pytest.raises(TokenMismatchError) as exc_info:
            self._execute({"category": "health", "purpose": PURPOSE})
        assert exc_info.value.error_code == ErrorCodes.TOKEN_MISMATCH

    def test_record_claim_order_is_ignored(self) -> None:
        token_id = self.services.tokens.decode(self.token)["jti"]
        record = self.services.consent_storage.tokens[token_id]
        record.scopes = list(reversed(SCOPES))

        outcome = self._execute({"category": "health", "purpose": PURPOSE})
        assert outcome.result.results["count"] == 30

    # -- request validation ----------------------------------------------

    @pytest.mark.parametrize("body", [
        {"category": "health", "purpose": PURPOSE, "epsilon": 0},
        {"category": "health", "purpose": PURPOSE, "epsilon": 11},
        {"category": "health", "purpose": PURPOSE, "epsilon": True},
        {"category": "health", "purpose": PURPOSE, "aggregations": ["median"]},
        {"category": "health", "purpose": PURPOSE, "aggregations": []},
        {"category": "", "purpose": PURPOSE},
        {"purpose": PURPOSE},
        ["not", "an", "object"],
    ])
    def test_invalid_request_body(self, body) -> None:
        with pytest.raises(InvalidParameterError) as exc_info:
            self._execute(body)
        assert exc_info.value.error_code == ErrorCodes.INVALID_PARAMETER

    def test_raw_body_bytes_decoded(self) -> None:
        outcome = self._execute(b'{"category": "health", "purpose": "telemedicine"}')
        assert outcome.result.epsilon == 1.0

    @pytest.mark.parametrize("body", [b"", b"{not json", "\xff"])
    def test_undecodable_body(self, body) -> None:
        with pytest.raises(InvalidParameterError):
            self._execute(body)

    def test_body_decoded_after_rate_limit(self) -> None:
        self.services.limiter.rules[self.orchestrator.endpoint] = RateLimitRule(requests=1, window_ms=60_000)

        with pytest.raises(InvalidParameterError):
            self._execute(b"{not json")
        with pytest.raises(RateLimitedError):
            self._execute(b"{not json")

    def test_epsilon_limits_from_config(self) -> None:
        services = make_services(dp_default_epsilon=0.25, dp_max_epsilon=0.5)
        services.callers.register("Configured partner", api_key=API_KEY)
        grant(services, SUBJECT, "health", PURPOSE, SCOPES)
        token = store_token(services, SUBJECT, PURPOSE, ["health"], SCOPES)

        outcome = services.orchestrator.execute(
            API_KEY, f"Bearer {token}", {"category": "health", "purpose": PURPOSE},
        )
        assert outcome.result.epsilon == 0.25

        with pytest.raises(InvalidParameterError) as exc_info:
            services.orchestrator.execute(
                API_KEY, f"Bearer {token}", {"category": "health", "purpose": PURPOSE, "epsilon": 0.75},
            )
        assert exc_info.value.details.get("field") == "epsilon"

    def test_duplicate_aggregations_collapse(self) -> None:
        outcome = self._execute({
            "category": "health", "purpose": PURPOSE, "aggregations": ["count", "count"],
        })
        assert outcome.result.results == {"count": 30}

    # -- consent policy ----------------------------------------------------

    def test_policy_revoked_after_token_issued(self) -> None:
        grant(self.services, SUBJECT, "health", PURPOSE, SCOPES, status=ConsentPolicyStatus.REVOKED)
        with pytest.raises(ConsentRevokedError):
            self._execute({"category": "health", "purpose": PURPOSE})

    def test_policy_without_required_scopes(self) -> None:
        grant(self.services, SUBJECT, "health", PURPOSE, ["read"])
        with pytest.raises(InsufficientScopesError) as exc_info:
            self._execute({"category": "health", "purpose": PURPOSE})
        assert exc_info.value.missing_scopes == ["aggregate"]

    def test_policy_missing(self) -> None:
        token = store_token(self.services, SUBJECT, "research", ["health"], SCOPES)
        with pytest.raises(MissingConsentError):
            self._execute({"category": "health", "purpose": "research"}, token=token)

    def test_unknown_category(self) -> None:
        grant(self.services, SUBJECT, "sleep", PURPOSE, SCOPES)
        token = store_token(self.services, SUBJECT, PURPOSE, ["sleep"], SCOPES)

        with pytest.raises(UnknownCategoryError) as exc_info:
            self._execute({"category": "sleep", "purpose": PURPOSE}, token=token)
        assert exc_info.value.error_code == ErrorCodes.UNKNOWN_CATEGORY


class TestExtractNumericValues:
    def test_walks_nested_payloads(self) -> None:
        records = [
            RawRecord(subject_id=SUBJECT, category_key="health",
                      payload={"steps": 8000, "vitals": {"hr": 61.5, "spo2": [97, 98]}}),
            RawRecord(subject_id=SUBJECT, category_key="health",
                      payload={"ok": True, "label": "run", "bad": float("nan")}),
        ]

        assert sorted(extract_numeric_values(records)) == [61.5, 97.0, 98.0, 8000.0]
