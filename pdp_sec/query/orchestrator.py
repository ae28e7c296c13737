"""
Query orchestration for the PDP engine

Entry point for differentially private queries. A query passes caller
authentication, rate limiting, consent token verification, token
binding and consent policy evaluation before any record is read, and
the response only ever contains noised values.
"""

import json
from datetime import datetime, UTC
from typing import Any, Callable, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..config import SecurityConfig, get_security_config
from ..constants import AccessActions, NO_DATA_MESSAGE
from ..consent.storage import ConsentStorage
from ..crypto.jwt import ConsentTokenClaims, ConsentTokenService, extract_bearer_token
from ..exceptions import (
    InvalidParameterError,
    TokenExpiredError,
    TokenMismatchError,
    TokenNotFoundError,
    TokenRevokedError,
    UnauthenticatedError,
    UnknownCategoryError,
)
from ..policy.audit import AccessLogger
from ..policy.callers import ApiCaller, CallerRegistry
from ..policy.evaluator import PolicyEvaluator
from ..privacy.bounds import CategoryBoundsRegistry
from ..privacy.dp_mechanisms import NoiseEngine, get_noise_engine, validate_epsilon
from ..ratelimit.limiter import RateLimiter, RateLimitResult
from ..utils.client_info import ClientInfo
from .aggregations import compute_aggregations, noised_count
from .models import QueryOutcome, QueryRequest, QueryResult
from .records import RecordStorage

logger = structlog.get_logger(__name__)


def decode_json_body(raw: Any) -> Any:
    """Decode a raw request body; already-parsed values pass through"""
    if not isinstance(raw, (bytes, bytearray, str)):
        return raw
    if not raw:
        raise InvalidParameterError("Request body is required", field="body")
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidParameterError("Request body must be valid JSON", field="body")


class QueryOrchestrator:
    """Runs a PDP query through every gate and computes the noised result"""

    def __init__(
        self,
        callers: CallerRegistry,
        limiter: RateLimiter,
        tokens: ConsentTokenService,
        consent_storage: ConsentStorage,
        evaluator: PolicyEvaluator,
        records: RecordStorage,
        access_logger: AccessLogger,
        noise: Optional[NoiseEngine] = None,
        bounds: Optional[CategoryBoundsRegistry] = None,
        config: Optional[SecurityConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC)
    ):
        self.config = config or get_security_config()
        self.callers = callers
        self.limiter = limiter
        self.tokens = tokens
        self.consent_storage = consent_storage
        self.evaluator = evaluator
        self.records = records
        self.access_logger = access_logger
        self.noise = noise or get_noise_engine()
        self.bounds = bounds or CategoryBoundsRegistry.from_config(self.config)
        self.clock = clock

    @property
    def endpoint(self) -> str:
        return self.config.query_endpoint

    def authenticate(self, api_key: Optional[str]) -> ApiCaller:
        """Resolve an API key to an ACTIVE caller"""
        if not api_key:
            raise UnauthenticatedError("API key required")

        caller = self.callers.get_by_api_key(api_key)
        if caller is None:
            logger.warning("Unknown API key presented")
            raise UnauthenticatedError("Invalid API key")

        if not caller.is_active:
            logger.warning("Revoked API caller presented key", caller_id=caller.id)
            raise UnauthenticatedError("API client has been revoked")

        return caller

    def verify_token(self, authorization: Optional[str]) -> ConsentTokenClaims:
        """
        Verify the bearer token and its persisted record

        The stored record is authoritative for revocation and expiry.
        """
        token = extract_bearer_token(authorization)
        claims = self.tokens.verify(token)

        if not claims.jti:
            raise TokenNotFoundError()

        record = self.consent_storage.get_token(claims.jti)
        if record is None or record.subject_id != claims.sub:
            logger.warning("Consent token has no matching record", subject_id=claims.sub)
            raise TokenNotFoundError(claims.jti)

        if record.revoked:
            logger.warning("Revoked consent token presented",
                           subject_id=claims.sub, token_id=record.id)
            raise TokenRevokedError(record.id)

        if record.is_expired(self.clock()):
            raise TokenExpiredError()

        if (
            record.purpose != claims.purpose
            or sorted(record.categories) != sorted(claims.categories)
            or sorted(record.scopes) != sorted(claims.scopes)
        ):
            logger.warning("Consent token claims differ from stored record",
                           subject_id=claims.sub, token_id=record.id)
            raise TokenMismatchError(
                "Consent token does not match its issued record",
                reason="This consent token was altered after issuance",
            )

        return claims

    def parse_request(self, body: Any) -> QueryRequest:
        """Decode and validate a query body, filling the configured epsilon default"""
        body = decode_json_body(body)
        if not isinstance(body, dict):
            raise InvalidParameterError("Request body must be a JSON object", field="body")
        try:
            request = QueryRequest.model_validate(body)
        except PydanticValidationError as e:
            errors = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise InvalidParameterError("Validation failed", details={"errors": errors})

        epsilon = request.epsilon if request.epsilon is not None else self.config.dp_default_epsilon
        if epsilon > self.config.dp_max_epsilon:
            raise InvalidParameterError(
                f"epsilon must not exceed {self.config.dp_max_epsilon}", field="epsilon"
            )

        validate_epsilon(epsilon, context="pdp query")
        return request.model_copy(update={"epsilon": epsilon})

    def check_binding(self, claims: ConsentTokenClaims, request: QueryRequest) -> None:
        """The request must stay within what the token was issued for"""
        if request.purpose != claims.purpose:
            raise TokenMismatchError(
                "Request purpose does not match consent token",
                reason=f"This consent token was issued for '{claims.purpose}' purpose only",
            )

        if request.category not in claims.categories:
            raise TokenMismatchError(
                f"Consent token does not cover category: {request.category}",
                reason=f"This consent token does not include '{request.category}' data",
            )

        missing = [s for s in self.config.required_query_scopes if s not in claims.scopes]
        if missing:
            raise TokenMismatchError(
                f"Consent token lacks scopes: {', '.join(missing)}",
                reason=f"This consent token does not grant: {', '.join(missing)}",
            )

    def execute(
        self,
        api_key: Optional[str],
        authorization: Optional[str],
        body: Any,
        client: Optional[ClientInfo] = None
    ) -> QueryOutcome:
        """
        Run a differentially private query

        Args:
            api_key: Value of the x-api-key header
            authorization: Value of the Authorization header
            body: Raw request body bytes, or an already parsed JSON value
            client: Network metadata for the access log

        Returns:
            QueryOutcome with the noised result and rate limit state

        Raises:
            SecurityError subclasses for every denial
        """
        caller = self.authenticate(api_key)
        rate_limit = self.limiter.enforce(caller.api_key, self.endpoint)

        claims = self.verify_token(authorization)
        request = self.parse_request(body)
        self.check_binding(claims, request)

        self.evaluator.ensure_allowed(
            claims.sub,
            [request.category],
            claims.purpose,
            list(self.config.required_query_scopes),
        )

        if self.consent_storage.get_category(request.category) is None:
            raise UnknownCategoryError(request.category)

        records = self.records.get_records(claims.sub, request.category)
        record_count = len(records)

        results = {"count": noised_count(self.noise, record_count, request.epsilon)}
        message = None
        if record_count == 0:
            message = NO_DATA_MESSAGE
        else:
            results.update(compute_aggregations(
                self.noise,
                self.bounds,
                request.category,
                records,
                list(request.aggregations),
                request.epsilon,
            ))

        result = QueryResult(
            results=results,
            epsilon=request.epsilon,
            category=request.category,
            purpose=request.purpose,
            timestamp=self.clock().isoformat(),
            record_count=results["count"],
            message=message,
        )

        self._log_access(caller, claims, request.category, client)

        logger.info("PDP query served",
                    subject_id=claims.sub,
                    caller_id=caller.id,
                    category=request.category,
                    aggregations=list(request.aggregations),
                    epsilon=request.epsilon)

        return QueryOutcome(result=result, rate_limit=rate_limit)

    def rate_limit_status(self, api_key: Optional[str]) -> RateLimitResult:
        """Read-only usage for a caller on the query endpoint"""
        caller = self.authenticate(api_key)
        return self.limiter.status(caller.api_key, self.endpoint)

    def _log_access(
        self,
        caller: ApiCaller,
        claims: ConsentTokenClaims,
        category: str,
        client: Optional[ClientInfo]
    ) -> None:
        try:
            self.access_logger.log_access(
                subject_id=claims.sub,
                caller_id=caller.id,
                endpoint=self.endpoint,
                action=AccessActions.QUERY,
                categories=[category],
                purpose=claims.purpose,
                token_id=claims.jti,
                client=client,
            )
        except Exception as e:
            logger.error("Failed to log access event",
                         subject_id=claims.sub, caller_id=caller.id, error=str(e))
