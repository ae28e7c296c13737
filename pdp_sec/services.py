"""
Service wiring for the PDP engine
Builds storage adapters and components from a SecurityConfig
"""

from typing import Iterable, Optional

import structlog
from pydantic import BaseModel, ConfigDict

from .config import SecurityConfig, get_security_config
from .consent.manager import ConsentManager
from .consent.models import DataCategory
from .consent.storage import ConsentStorage, InMemoryConsentStorage
from .crypto.jwt import ConsentTokenService
from .policy.audit import AccessLogger, AccessLogStorage, InMemoryAccessLogStorage
from .policy.callers import CallerRegistry, InMemoryCallerRegistry
from .policy.evaluator import PolicyEvaluator
from .privacy.bounds import CategoryBoundsRegistry
from .privacy.dp_mechanisms import NoiseEngine, RandomSource
from .query.orchestrator import QueryOrchestrator
from .query.records import InMemoryRecordStorage, RecordStorage
from .ratelimit.limiter import RateLimiter
from .ratelimit.storage import InMemoryRateLimitStore, SQLRateLimitStore

logger = structlog.get_logger(__name__)

DEFAULT_CATEGORIES = (
    DataCategory(key="health", name="Health", description="Step counts, heart rate, temperature"),
    DataCategory(key="financial", name="Financial", description="Transaction amounts"),
    DataCategory(key="location", name="Location", description="Latitude and longitude"),
)


class Services(BaseModel):
    """All engine components sharing one configuration"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    config: SecurityConfig
    consent_storage: ConsentStorage
    records: RecordStorage
    callers: CallerRegistry
    access_logger: AccessLogger
    limiter: RateLimiter
    tokens: ConsentTokenService
    evaluator: PolicyEvaluator
    noise: NoiseEngine
    bounds: CategoryBoundsRegistry
    orchestrator: QueryOrchestrator
    consent_manager: ConsentManager


def build_services(
    config: Optional[SecurityConfig] = None,
    in_memory: bool = False,
    random_source: Optional[RandomSource] = None,
    categories: Iterable[DataCategory] = DEFAULT_CATEGORIES
) -> Services:
    """
    Wire every component

    Args:
        config: Configuration (process-wide instance when omitted)
        in_memory: Use in-memory stores instead of the database
        random_source: Randomness for the noise engine
        categories: Catalog entries seeded on startup

    Returns:
        Services container
    """
    config = config or get_security_config()

    if in_memory:
        consent_storage: ConsentStorage = InMemoryConsentStorage()
        records: RecordStorage = InMemoryRecordStorage()
        callers: CallerRegistry = InMemoryCallerRegistry()
        access_storage: AccessLogStorage = InMemoryAccessLogStorage()
        rate_store: SQLRateLimitStore = InMemoryRateLimitStore()
    else:
        consent_storage = ConsentStorage(config.database_url)
        records = RecordStorage(config.database_url)
        callers = CallerRegistry(config.database_url)
        access_storage = AccessLogStorage(config.database_url)
        rate_store = SQLRateLimitStore(config.database_url)

    for category in categories:
        consent_storage.add_category(category)

    access_logger = AccessLogger(access_storage)
    limiter = RateLimiter(rate_store, config=config)
    tokens = ConsentTokenService(config)
    evaluator = PolicyEvaluator(consent_storage)
    noise = NoiseEngine(random_source, delta=config.dp_delta)
    bounds = CategoryBoundsRegistry.from_config(config)

    orchestrator = QueryOrchestrator(
        callers=callers,
        limiter=limiter,
        tokens=tokens,
        consent_storage=consent_storage,
        evaluator=evaluator,
        records=records,
        access_logger=access_logger,
        noise=noise,
        bounds=bounds,
        config=config,
    )
    consent_manager = ConsentManager(
        storage=consent_storage,
        evaluator=evaluator,
        tokens=tokens,
        records=records,
        access_logger=access_logger,
        config=config,
    )

    logger.info("Services initialized", in_memory=in_memory)

    return Services(
        config=config,
        consent_storage=consent_storage,
        records=records,
        callers=callers,
        access_logger=access_logger,
        limiter=limiter,
        tokens=tokens,
        evaluator=evaluator,
        noise=noise,
        bounds=bounds,
        orchestrator=orchestrator,
        consent_manager=consent_manager,
    )
