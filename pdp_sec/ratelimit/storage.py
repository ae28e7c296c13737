"""
Rate limit counter stores
Fixed-window bucket persistence with atomic check-and-increment
"""

import threading
from datetime import datetime, UTC
from typing import Dict, Optional, Tuple

import structlog
from sqlalchemy import (
    BigInteger, Column, DateTime, Integer, String, UniqueConstraint, delete, select, update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from ..exceptions import StorageError
from ..utils.db import create_storage_engine

logger = structlog.get_logger(__name__)

Base = declarative_base()

MAX_INSERT_ATTEMPTS = 3

BucketKey = Tuple[str, str, int]


class RateLimitBucketDB(Base):
    """SQLAlchemy model for rate limit buckets"""
    __tablename__ = "rate_limit_buckets"
    __table_args__ = (
        UniqueConstraint("caller_key", "endpoint", "window_start", name="uq_bucket_window"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    caller_key = Column(String, nullable=False, index=True)
    endpoint = Column(String, nullable=False)
    window_start = Column(BigInteger, nullable=False, index=True)  # epoch ms
    request_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class SQLRateLimitStore:
    """Counter store backed by a relational database"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or "sqlite:///pdp.db"
        self.engine = create_storage_engine(self.database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    def _bucket_filter(self, caller_key: str, endpoint: str, window_start: int):
        return (
            RateLimitBucketDB.caller_key == caller_key,
            RateLimitBucketDB.endpoint == endpoint,
            RateLimitBucketDB.window_start == window_start,
        )

    def increment_if_below(
        self,
        caller_key: str,
        endpoint: str,
        window_start: int,
        limit: int
    ) -> Tuple[bool, int]:
        """
        Atomically add one request to the bucket if it has capacity

        Returns:
            (incremented, request_count) where request_count is the bucket
            count after the operation
        """
        try:
            for _ in range(MAX_INSERT_ATTEMPTS):
                with self.SessionLocal() as session:
                    now = datetime.now(UTC)
                    result = session.execute(
                        update(RateLimitBucketDB)
                        .where(
                            *self._bucket_filter(caller_key, endpoint, window_start),
                            RateLimitBucketDB.request_count < limit,
                        )
                        .values(
                            request_count=RateLimitBucketDB.request_count + 1,
                            updated_at=now,
                        )
                    )
                    if result.rowcount == 1:
                        count = session.execute(
                            select(RateLimitBucketDB.request_count)
                            .where(*self._bucket_filter(caller_key, endpoint, window_start))
                        ).scalar_one()
                        session.commit()
                        return True, count

                    existing = session.execute(
                        select(RateLimitBucketDB.request_count)
                        .where(*self._bucket_filter(caller_key, endpoint, window_start))
                    ).scalar_one_or_none()
                    if existing is not None:
                        session.rollback()
                        return False, existing

                    session.add(RateLimitBucketDB(
                        caller_key=caller_key,
                        endpoint=endpoint,
                        window_start=window_start,
                        request_count=1,
                        created_at=now,
                        updated_at=now,
                    ))
                    try:
                        session.commit()
                        return True, 1
                    except IntegrityError:
                        # Another request created the bucket first
                        session.rollback()

            raise StorageError("increment_rate_limit_bucket", reason="Bucket insert kept conflicting")

        except SQLAlchemyError as e:
            logger.error("Failed to increment rate limit bucket", endpoint=endpoint, error=str(e))
            raise StorageError("increment_rate_limit_bucket") from e

    def get_count(self, caller_key: str, endpoint: str, window_start: int) -> int:
        """Current request count for a bucket (0 when absent)"""
        try:
            with self.SessionLocal() as session:
                count = session.execute(
                    select(RateLimitBucketDB.request_count)
                    .where(*self._bucket_filter(caller_key, endpoint, window_start))
                ).scalar_one_or_none()
                return count or 0

        except SQLAlchemyError as e:
            logger.error("Failed to read rate limit bucket", endpoint=endpoint, error=str(e))
            raise StorageError("get_rate_limit_bucket") from e

    def delete_older_than(self, cutoff_ms: int) -> int:
        """Delete buckets whose window started before cutoff_ms"""
        try:
            with self.SessionLocal() as session:
                result = session.execute(
                    delete(RateLimitBucketDB).where(RateLimitBucketDB.window_start < cutoff_ms)
                )
                session.commit()
                return result.rowcount or 0

        except SQLAlchemyError as e:
            logger.error("Failed to clean up rate limit buckets", error=str(e))
            raise StorageError("cleanup_rate_limit_buckets") from e

    def delete_for(self, caller_key: str, endpoint: Optional[str] = None) -> int:
        """Delete every bucket for a caller, optionally for one endpoint"""
        try:
            with self.SessionLocal() as session:
                stmt = delete(RateLimitBucketDB).where(RateLimitBucketDB.caller_key == caller_key)
                if endpoint:
                    stmt = stmt.where(RateLimitBucketDB.endpoint == endpoint)
                result = session.execute(stmt)
                session.commit()
                return result.rowcount or 0

        except SQLAlchemyError as e:
            logger.error("Failed to reset rate limit buckets", error=str(e))
            raise StorageError("reset_rate_limit_buckets") from e


class InMemoryRateLimitStore(SQLRateLimitStore):
    """In-memory counter store for testing and single-process deployments"""

    def __init__(self):
        self.buckets: Dict[BucketKey, int] = {}
        self._lock = threading.Lock()

    def increment_if_below(
        self,
        caller_key: str,
        endpoint: str,
        window_start: int,
        limit: int
    ) -> Tuple[bool, int]:
        key = (caller_key, endpoint, window_start)
        with self._lock:
            count = self.buckets.get(key, 0)
            if count >= limit:
                return False, count
            self.buckets[key] = count + 1
            return True, count + 1

    def get_count(self, caller_key: str, endpoint: str, window_start: int) -> int:
        with self._lock:
            return self.buckets.get((caller_key, endpoint, window_start), 0)

    def delete_older_than(self, cutoff_ms: int) -> int:
        with self._lock:
            stale = [key for key in self.buckets if key[2] < cutoff_ms]
            for key in stale:
                del self.buckets[key]
            return len(stale)

    def delete_for(self, caller_key: str, endpoint: Optional[str] = None) -> int:
        with self._lock:
            matching = [
                key for key in self.buckets
                if key[0] == caller_key and (endpoint is None or key[1] == endpoint)
            ]
            for key in matching:
                del self.buckets[key]
            return len(matching)
