"""
Consent Manager for the PDP engine
Policy upserts and deletion, consent token issuing and revocation, and
raw record registration, each written to the access log
"""

from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..config import SecurityConfig, get_security_config
from ..constants import AccessActions, Endpoints
from ..crypto.jwt import ConsentTokenService
from ..exceptions import ConflictError, InvalidParameterError, NotFoundError, UnknownCategoryError
from ..policy.audit import AccessLogger
from ..policy.evaluator import PolicyEvaluator
from ..query.records import RawRecord, RecordStorage
from ..utils.client_info import ClientInfo
from ..utils.validators import validate_record_payload, validate_subject_id, validate_ttl_seconds
from .models import (
    ConsentPolicy,
    ConsentTokenRecord,
    DataCategory,
    PolicyUpsertRequest,
    RecordRegisterRequest,
    TokenIssueRequest,
)
from .storage import ConsentStorage

logger = structlog.get_logger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def _parse_payload(model: Type[PayloadT], data: Any, subject_id: str) -> PayloadT:
    if not isinstance(data, dict):
        raise InvalidParameterError("Request body must be a JSON object", field="body")
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        logger.warning("Invalid consent payload", subject_id=subject_id, model=model.__name__)
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise InvalidParameterError("Validation failed", details={"errors": errors})


class ConsentManager:
    def __init__(
        self,
        storage: ConsentStorage,
        evaluator: PolicyEvaluator,
        tokens: ConsentTokenService,
        records: RecordStorage,
        access_logger: AccessLogger,
        config: Optional[SecurityConfig] = None
    ):
        self.storage = storage
        self.evaluator = evaluator
        self.tokens = tokens
        self.records = records
        self.access_logger = access_logger
        self.config = config or get_security_config()

    def _log_event(self, subject_id: str, endpoint: str, action: str,
                   categories: List[str], purpose: Optional[str] = None,
                   token_id: Optional[str] = None, client: Optional[ClientInfo] = None) -> None:
        try:
            self.access_logger.log_access(
                subject_id=subject_id,
                endpoint=endpoint,
                action=action,
                categories=categories,
                purpose=purpose,
                token_id=token_id,
                client=client,
            )
        except Exception as exc:
            logger.error("Failed to log consent event", subject_id=subject_id,
                         action=action, error=str(exc))

    def _require_category(self, category_key: str) -> DataCategory:
        category = self.storage.get_category(category_key)
        if category is None:
            raise UnknownCategoryError(category_key)
        return category

    async def list_categories(self) -> List[DataCategory]:
        return self.storage.list_categories()

    async def list_policies(self, subject_id: str) -> List[ConsentPolicy]:
        subject_id = validate_subject_id(subject_id)
        return self.storage.list_policies(subject_id)

    async def upsert_policy(
        self,
        subject_id: str,
        policy_data: Dict[str, Any],
        client: Optional[ClientInfo] = None
    ) -> ConsentPolicy:
        """
        Create or update a consent policy

        With an ``id`` the named policy is updated. Otherwise the row for
        (subject, category, purpose) is updated in place, or created.
        """
        subject_id = validate_subject_id(subject_id)
        payload = _parse_payload(PolicyUpsertRequest, policy_data, subject_id)
        self._require_category(payload.category_key)

        now = datetime.now(UTC)
        if payload.id:
            policy = self.storage.get_policy(payload.id)
            if policy is None or policy.subject_id != subject_id:
                raise NotFoundError("Consent policy", payload.id,
                                    reason="The consent policy does not exist or you do not have access to it")
            policy.category_key = payload.category_key
            policy.purpose = payload.purpose
        else:
            policy = self.storage.find_policy(subject_id, payload.category_key, payload.purpose)
            if policy is None:
                policy = ConsentPolicy(
                    subject_id=subject_id,
                    category_key=payload.category_key,
                    purpose=payload.purpose,
                    created_at=now,
                )

        policy.status = payload.status
        policy.scopes = list(payload.scopes)
        policy.expires_at = payload.expires_at
        policy.updated_at = now

        saved = self.storage.save_policy(policy)

        self._log_event(subject_id, Endpoints.CONSENT_POLICIES, AccessActions.POLICY_UPDATED,
                        [saved.category_key], purpose=saved.purpose, client=client)
        logger.info("Consent policy upserted", subject_id=subject_id,
                    policy_id=saved.id, status=saved.status.value)
        return saved

    async def delete_policy(
        self,
        subject_id: str,
        policy_id: str,
        client: Optional[ClientInfo] = None
    ) -> None:
        subject_id = validate_subject_id(subject_id)
        policy = self.storage.get_policy(policy_id)
        if policy is None or policy.subject_id != subject_id:
            raise NotFoundError("Consent policy", policy_id,
                                reason="The consent policy does not exist or you do not have access to it")

        self.storage.delete_policy(policy_id)
        self._log_event(subject_id, Endpoints.CONSENT_POLICIES, AccessActions.POLICY_DELETED,
                        [policy.category_key], purpose=policy.purpose, client=client)

    async def issue_token(
        self,
        subject_id: str,
        token_data: Dict[str, Any],
        client: Optional[ClientInfo] = None
    ) -> Dict[str, Any]:
        """
        Issue a consent token after confirming standing consent

        Returns:
            {"token", "expiresAt", "tokenId"}
        """
        subject_id = validate_subject_id(subject_id)
        payload = _parse_payload(TokenIssueRequest, token_data, subject_id)

        ttl_seconds = validate_ttl_seconds(
            payload.ttl_seconds if payload.ttl_seconds is not None else self.config.token_ttl_seconds,
            max_seconds=self.config.token_max_ttl_seconds,
        )

        self.evaluator.ensure_allowed(subject_id, payload.categories, payload.purpose, payload.scopes)

        issued = self.tokens.issue(
            subject_id,
            payload.purpose,
            payload.categories,
            payload.scopes,
            ttl_seconds,
        )

        self.storage.store_token(ConsentTokenRecord(
            id=issued.token_id,
            subject_id=subject_id,
            purpose=payload.purpose,
            categories=list(payload.categories),
            scopes=list(payload.scopes),
            issued_at=datetime.now(UTC),
            expires_at=issued.expires_at,
        ))

        self._log_event(subject_id, Endpoints.CONSENT_TOKENS, AccessActions.TOKEN_ISSUED,
                        list(payload.categories), purpose=payload.purpose,
                        token_id=issued.token_id, client=client)

        return {
            "token": issued.token,
            "expiresAt": issued.expires_at.isoformat(),
            "tokenId": issued.token_id,
        }

    async def revoke_token(
        self,
        subject_id: str,
        token_id: str,
        client: Optional[ClientInfo] = None
    ) -> Dict[str, Any]:
        subject_id = validate_subject_id(subject_id)
        record = self.storage.get_token(token_id)
        if record is None or record.subject_id != subject_id:
            raise NotFoundError(
                "Consent token", token_id,
                reason="The consent token you are trying to revoke does not exist "
                       "or you do not have permission to revoke it",
            )

        if record.revoked:
            raise ConflictError(
                "Token is already revoked",
                reason="This consent token has already been revoked and is no longer active",
            )

        if record.is_expired():
            raise ConflictError(
                "Token has already expired",
                reason=f"This consent token expired on {record.expires_at.date().isoformat()} "
                       "and cannot be revoked",
            )

        if not self.storage.mark_token_revoked(token_id):
            raise ConflictError("Token is already revoked")

        self._log_event(subject_id, Endpoints.CONSENT_TOKENS, AccessActions.TOKEN_REVOKED,
                        record.categories, purpose=record.purpose, token_id=token_id, client=client)

        return {"message": "Token revoked successfully", "tokenId": token_id}

    async def list_tokens(self, subject_id: str) -> List[ConsentTokenRecord]:
        subject_id = validate_subject_id(subject_id)
        return self.storage.list_tokens(subject_id)

    async def register_record(
        self,
        subject_id: str,
        record_data: Dict[str, Any],
        client: Optional[ClientInfo] = None
    ) -> RawRecord:
        subject_id = validate_subject_id(subject_id)
        payload = _parse_payload(RecordRegisterRequest, record_data, subject_id)
        self._require_category(payload.category_key)

        record = self.records.add_record(RawRecord(
            subject_id=subject_id,
            category_key=payload.category_key,
            payload=validate_record_payload(payload.payload),
        ))

        self._log_event(subject_id, Endpoints.DATA_REGISTER, AccessActions.RECORD_REGISTERED,
                        [payload.category_key], purpose="data-storage", client=client)
        return record
