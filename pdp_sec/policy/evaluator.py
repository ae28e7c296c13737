"""
Consent policy evaluation
Decides whether a subject's live policies allow a (categories, purpose, scopes) request
"""

from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..consent.models import ConsentPolicy, ConsentPolicyStatus
from ..consent.storage import ConsentStorage
from ..exceptions import (
    ConsentExpiredError,
    ConsentRestrictedError,
    ConsentRevokedError,
    InsufficientScopesError,
    InvalidParamsError,
    MissingConsentError,
)

logger = structlog.get_logger(__name__)


def _string_set(value: Any, name: str, allow_empty: bool) -> List[str]:
    """Normalize a list/tuple/set of non-empty strings, preserving first-seen order"""
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        raise InvalidParamsError(f"{name} must be a list of strings")

    items: List[str] = []
    for item in value:
        if not isinstance(item, str) or not item:
            raise InvalidParamsError(f"{name} must contain only non-empty strings")
        if item not in items:
            items.append(item)

    if not items and not allow_empty:
        raise InvalidParamsError(f"{name} must not be empty")

    return items


class PolicyEvaluator:
    """
    Enforces consent policies for data access.

    Every call reads the live rows from storage. When several rows exist
    for the same category the most recently updated one is effective.
    """

    def __init__(
        self,
        storage: ConsentStorage,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC)
    ):
        self.storage = storage
        self.clock = clock

    def _effective_policies(
        self,
        subject_id: str,
        categories: List[str],
        purpose: str
    ) -> Dict[str, ConsentPolicy]:
        effective: Dict[str, ConsentPolicy] = {}
        for policy in self.storage.get_policies(subject_id, categories, purpose):
            current = effective.get(policy.category_key)
            if current is None or policy.updated_at > current.updated_at:
                effective[policy.category_key] = policy
        return effective

    def ensure_allowed(
        self,
        subject_id: Any,
        categories: Any,
        purpose: Any,
        required_scopes: Any
    ) -> None:
        """
        Check that every category is covered by a usable policy

        Args:
            subject_id: Data subject
            categories: Category keys requested
            purpose: Processing purpose
            required_scopes: Scopes the operation needs

        Raises:
            InvalidParamsError: Unusable arguments
            MissingConsentError: No policy for one or more categories
            ConsentRevokedError / ConsentRestrictedError / ConsentExpiredError /
            InsufficientScopesError: First failing category, in request order
        """
        if not isinstance(subject_id, str) or not subject_id:
            raise InvalidParamsError("subject_id is required")
        if not isinstance(purpose, str) or not purpose:
            raise InvalidParamsError("purpose is required")

        category_list = _string_set(categories, "categories", allow_empty=False)
        scope_list = _string_set(required_scopes, "scopes", allow_empty=True)

        effective = self._effective_policies(subject_id, category_list, purpose)

        missing = [category for category in category_list if category not in effective]
        if missing:
            logger.warning("Consent policy missing",
                           subject_id=subject_id, categories=missing, purpose=purpose)
            raise MissingConsentError(missing, purpose, subject_id=subject_id)

        now = self.clock()
        for category in category_list:
            policy = effective[category]

            if policy.status == ConsentPolicyStatus.REVOKED:
                logger.warning("Consent revoked", subject_id=subject_id, category=category)
                raise ConsentRevokedError(category, purpose, subject_id=subject_id)

            if policy.status == ConsentPolicyStatus.RESTRICTED:
                logger.warning("Consent restricted", subject_id=subject_id, category=category)
                raise ConsentRestrictedError(category, purpose, subject_id=subject_id)

            if policy.is_expired(now):
                logger.warning("Consent expired", subject_id=subject_id, category=category)
                raise ConsentExpiredError(
                    category,
                    purpose,
                    expired_at=policy.expires_at.date().isoformat(),
                    subject_id=subject_id,
                )

            missing_scopes = policy.missing_scopes(scope_list)
            if missing_scopes:
                logger.warning("Insufficient consent scopes",
                               subject_id=subject_id, category=category, missing=missing_scopes)
                raise InsufficientScopesError(category, missing_scopes, subject_id=subject_id)

        logger.debug("Consent allowed", subject_id=subject_id, categories=category_list, purpose=purpose)

    def is_allowed(self, subject_id: str, categories: List[str], purpose: str,
                   required_scopes: List[str]) -> bool:
        """Boolean form of ensure_allowed; parameter errors still raise"""
        try:
            self.ensure_allowed(subject_id, categories, purpose, required_scopes)
        except (MissingConsentError, ConsentRevokedError, ConsentRestrictedError,
                ConsentExpiredError, InsufficientScopesError):
            return False
        return True
