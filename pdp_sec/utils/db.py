"""
Shared SQLAlchemy helpers for the storage adapters
"""

from datetime import datetime, UTC
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool


def create_storage_engine(database_url: str) -> Engine:
    """
    Create an engine for a storage adapter

    In-memory SQLite databases are pinned to a single shared connection so
    every session sees the same data.
    """
    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url == "sqlite://"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; treat them as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC before it reaches a DateTime column"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
