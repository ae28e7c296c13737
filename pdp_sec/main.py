"""
PDP Security & Privacy Module - FastAPI Application
Provides consent-gated differentially private queries, consent policy
and token management, raw record registration, API client management
and access-log review
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Type, TypeVar
import logging
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .config import get_security_config
from .constants import ErrorCodes, Headers, SERVICE_NAME, SERVICE_VERSION
from .exceptions import InvalidParameterError, NotFoundError, SecurityError
from .policy.callers import CallerCreateRequest, CallerUpdateRequest
from .query.orchestrator import decode_json_body
from .services import Services, build_services
from .utils.client_info import ClientInfo, client_info_from_headers
from .utils.db import as_utc

settings = get_security_config()

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Initialize services
services: Optional[Services] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global services

    logger.info("Starting PDP Security & Privacy Module", version=SERVICE_VERSION)

    # Services provided beforehand (tests, embedding) are kept
    if services is None:
        services = build_services(settings)

    logger.info("Security services initialized")

    yield

    logger.info("Shutting down PDP Security & Privacy Module")


# Create FastAPI app
app = FastAPI(
    title="PDP Security & Privacy Module",
    description="Consent-gated differentially private queries over personal data",
    version=SERVICE_VERSION,
    debug=settings.debug_mode,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SecurityError)
async def security_error_handler(request: Request, exc: SecurityError):
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, code=exc.error_code, error=exc.message)
    else:
        logger.info("Request denied", path=request.url.path, code=exc.error_code)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", path=request.url.path, error=str(exc))
    return JSONResponse(
        {"error": "Internal server error", "code": ErrorCodes.INTERNAL_ERROR},
        status_code=500,
    )


def _require_services() -> Services:
    if services is None:
        raise HTTPException(status_code=503, detail="Security services not available")
    return services


def _client(request: Request) -> ClientInfo:
    fallback = request.client.host if request.client else None
    return client_info_from_headers(request.headers, fallback)


async def _json_body(request: Request) -> Any:
    return decode_json_body(await request.body())


ModelT = TypeVar("ModelT", bound=BaseModel)


def _validated(model: Type[ModelT], body: Any) -> ModelT:
    if not isinstance(body, dict):
        raise InvalidParameterError("Request body must be a JSON object", field="body")
    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise InvalidParameterError("Validation failed", details={"errors": errors})


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "components": {
            "query_orchestrator": services is not None,
            "consent_manager": services is not None,
            "rate_limiter": services is not None,
        },
        "timestamp": datetime.now(UTC).isoformat(),
    }


# =============================================================================
# PDP QUERY ENDPOINTS
# =============================================================================

@app.post("/api/pdp/query")
async def pdp_query(request: Request):
    """
    Run a differentially private aggregate query

    Requires an API key (x-api-key) and a consent token
    (Authorization: Bearer ...). Only noised values are returned.
    """
    svc = _require_services()

    # Decoded by the orchestrator after authentication and rate limiting
    outcome = svc.orchestrator.execute(
        api_key=request.headers.get(Headers.API_KEY),
        authorization=request.headers.get(Headers.AUTHORIZATION),
        body=await request.body(),
        client=_client(request),
    )

    return JSONResponse(outcome.result.to_response(), headers=outcome.rate_limit.headers())


@app.get("/api/pdp/rate-limit")
async def pdp_rate_limit(request: Request):
    """Current rate limit usage for the calling API key"""
    svc = _require_services()
    status = svc.orchestrator.rate_limit_status(request.headers.get(Headers.API_KEY))
    return JSONResponse(
        {
            "limit": status.limit,
            "remaining": status.remaining,
            "resetTime": status.reset_time.isoformat(),
        },
        headers=status.headers(),
    )


# =============================================================================
# CONSENT ENDPOINTS
# =============================================================================

@app.get("/consent/categories")
async def list_categories():
    """Data category catalog"""
    svc = _require_services()
    categories = await svc.consent_manager.list_categories()
    return {"categories": [c.model_dump(mode="json") for c in categories]}


@app.get("/consent/{subject_id}/policies")
async def list_policies(subject_id: str):
    """Consent policies held by a data subject"""
    svc = _require_services()
    policies = await svc.consent_manager.list_policies(subject_id)
    return {"subject_id": subject_id, "policies": [p.model_dump(mode="json") for p in policies]}


@app.put("/consent/{subject_id}/policies")
async def upsert_policy(subject_id: str, request: Request):
    """Create or update a consent policy"""
    svc = _require_services()
    body = await _json_body(request)
    policy = await svc.consent_manager.upsert_policy(subject_id, body, _client(request))
    logger.info("Consent policy updated", subject_id=subject_id, policy_id=policy.id)
    return {"status": "success", "policy": policy.model_dump(mode="json")}


@app.delete("/consent/{subject_id}/policies/{policy_id}")
async def delete_policy(subject_id: str, policy_id: str, request: Request):
    """Delete a consent policy"""
    svc = _require_services()
    await svc.consent_manager.delete_policy(subject_id, policy_id, _client(request))
    return {"status": "success", "policyId": policy_id}


@app.get("/consent/{subject_id}/tokens")
async def list_tokens(subject_id: str):
    """Consent tokens issued for a data subject"""
    svc = _require_services()
    tokens = await svc.consent_manager.list_tokens(subject_id)
    return {"subject_id": subject_id, "tokens": [t.model_dump(mode="json") for t in tokens]}


@app.post("/consent/{subject_id}/tokens", status_code=201)
async def issue_token(subject_id: str, request: Request):
    """Issue a consent token covering standing consent"""
    svc = _require_services()
    body = await _json_body(request)
    return await svc.consent_manager.issue_token(subject_id, body, _client(request))


@app.post("/consent/{subject_id}/tokens/{token_id}/revoke")
async def revoke_token(subject_id: str, token_id: str, request: Request):
    """Revoke a consent token"""
    svc = _require_services()
    return await svc.consent_manager.revoke_token(subject_id, token_id, _client(request))


# =============================================================================
# DATA ENDPOINTS
# =============================================================================

@app.post("/data/{subject_id}/records", status_code=201)
async def register_record(subject_id: str, request: Request):
    """Register a raw record for a data subject"""
    svc = _require_services()
    body = await _json_body(request)
    record = await svc.consent_manager.register_record(subject_id, body, _client(request))
    return {"status": "success", "recordId": record.id, "category": record.category_key}


# =============================================================================
# MAINTENANCE ENDPOINTS
# =============================================================================

@app.post("/maintenance/rate-limits/cleanup")
async def cleanup_rate_limits(older_than_hours: Optional[float] = None):
    """Delete expired rate limit buckets"""
    svc = _require_services()
    if older_than_hours is not None and older_than_hours <= 0:
        raise InvalidParameterError("older_than_hours must be positive", field="older_than_hours")
    deleted = svc.limiter.cleanup(older_than_hours)
    return {"deleted": deleted}


# =============================================================================
# API CLIENT ENDPOINTS
# =============================================================================

@app.get("/clients")
async def list_clients():
    """Registered API clients; keys are never listed"""
    svc = _require_services()
    return {"clients": [c.to_public_dict() for c in svc.callers.list_callers()]}


@app.post("/clients", status_code=201)
async def create_client(request: Request):
    """Register an API client and return its key once"""
    svc = _require_services()
    payload = _validated(CallerCreateRequest, await _json_body(request))
    caller = svc.callers.register(payload.name, payload.description)
    return {"client": caller.to_public_dict(), "apiKey": caller.api_key}


@app.patch("/clients/{client_id}")
async def update_client(client_id: str, request: Request):
    """Rename, describe, revoke or reactivate an API client"""
    svc = _require_services()
    payload = _validated(CallerUpdateRequest, await _json_body(request))
    caller = svc.callers.update(
        client_id,
        name=payload.name,
        description=payload.description,
        status=payload.status,
    )
    if caller is None:
        raise NotFoundError("API client", client_id)
    return {"client": caller.to_public_dict()}


@app.post("/clients/{client_id}/regenerate-key")
async def regenerate_client_key(client_id: str):
    """Issue a new API key; the previous key stops working"""
    svc = _require_services()
    caller = svc.callers.regenerate_key(client_id)
    if caller is None:
        raise NotFoundError("API client", client_id)
    return {"clientId": caller.id, "apiKey": caller.api_key}


@app.delete("/clients/{client_id}")
async def delete_client(client_id: str):
    """Delete an API client; its access log entries are kept"""
    svc = _require_services()
    if not svc.callers.delete(client_id):
        raise NotFoundError("API client", client_id)
    return {"status": "success", "clientId": client_id}


# =============================================================================
# ACCESS LOG ENDPOINTS
# =============================================================================

@app.get("/audit/access-logs")
async def list_access_logs(
    subject_id: Optional[str] = None,
    client_id: Optional[str] = None,
    endpoint: Optional[str] = None,
    category: Optional[str] = None,
    purpose: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
):
    """Access events, newest first, filtered by subject, client, endpoint, category, purpose and time"""
    svc = _require_services()
    if not 1 <= limit <= 1000:
        raise InvalidParameterError("limit must be between 1 and 1000", field="limit")

    events = svc.access_logger.get_events(
        subject_id,
        limit,
        caller_id=client_id,
        endpoint=endpoint,
        category=category,
        purpose=purpose,
        start=as_utc(start),
        end=as_utc(end),
    )
    logs: List[Dict[str, Any]] = [
        {**event.to_sink_dict(), "id": event.id, "timestamp": event.timestamp.isoformat()}
        for event in events
    ]
    return {"logs": logs, "count": len(logs)}


# =============================================================================
# CONFIGURATION ENDPOINT
# =============================================================================

class SecurityConfigOut(BaseModel):
    """Subset of security configuration exposed for ops tooling; never the secret"""

    jwt_algorithm: str
    token_ttl_seconds: int
    token_max_ttl_seconds: int
    dp_default_epsilon: float
    dp_max_epsilon: float
    dp_delta: float
    required_query_scopes: List[str]
    rate_limit_retention_hours: int
    debug_mode: bool
    log_level: str


@app.get("/security/config", response_model=SecurityConfigOut)
async def security_config_view():
    """Sanitized view of the running configuration"""
    svc = _require_services()
    config = svc.config
    return SecurityConfigOut(
        jwt_algorithm=config.jwt_algorithm,
        token_ttl_seconds=config.token_ttl_seconds,
        token_max_ttl_seconds=config.token_max_ttl_seconds,
        dp_default_epsilon=config.dp_default_epsilon,
        dp_max_epsilon=config.dp_max_epsilon,
        dp_delta=config.dp_delta,
        required_query_scopes=list(config.required_query_scopes),
        rate_limit_retention_hours=config.rate_limit_retention_hours,
        debug_mode=config.debug_mode,
        log_level=config.log_level,
    )


# =============================================================================
# ROOT ENDPOINT
# =============================================================================

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "PDP Security & Privacy Module",
        "version": SERVICE_VERSION,
        "status": "operational",
        "features": {
            "differential_privacy": True,
            "consent_tokens": True,
            "consent_policies": True,
            "rate_limiting": True,
            "api_clients": True,
            "access_logs": True,
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
