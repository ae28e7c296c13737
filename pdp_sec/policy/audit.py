"""
Access logging for the PDP engine
Records who touched which subject's data, for what purpose, and from where
"""

import json
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from ..exceptions import StorageError
from ..utils.client_info import ClientInfo
from ..utils.db import as_utc, create_storage_engine, to_db_datetime
from ..utils.ids import generate_access_id

logger = structlog.get_logger(__name__)

Base = declarative_base()


class AccessEvent(BaseModel):
    """Individual access event"""
    id: str = Field(default_factory=generate_access_id)
    subject_id: str
    caller_id: Optional[str] = None
    endpoint: str
    action: str
    categories: List[str] = Field(default_factory=list)
    purpose: Optional[str] = None
    token_id: Optional[str] = None
    client_ip: str = "unknown"
    user_agent: str = "unknown"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_sink_dict(self) -> Dict[str, Any]:
        """Shape handed to external access-log sinks"""
        return {
            "subject": self.subject_id,
            "caller": self.caller_id,
            "category": self.categories[0] if len(self.categories) == 1 else list(self.categories),
            "purpose": self.purpose,
            "tokenId": self.token_id,
            "endpoint": self.endpoint,
            "action": self.action,
            "clientIp": self.client_ip,
            "userAgent": self.user_agent,
        }


class AccessLogDB(Base):
    """SQLAlchemy model for access events"""
    __tablename__ = "access_logs"

    id = Column(String, primary_key=True)
    subject_id = Column(String, nullable=False, index=True)
    caller_id = Column(String, index=True)
    endpoint = Column(String, nullable=False)
    action = Column(String, nullable=False)
    categories = Column(Text, nullable=False)  # JSON array
    purpose = Column(String(200))
    token_id = Column(String)
    client_ip = Column(String)
    user_agent = Column(Text)
    timestamp = Column(DateTime, nullable=False, index=True)


class AccessLogStorage:
    """Database sink for access events"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or "sqlite:///pdp.db"
        self.engine = create_storage_engine(self.database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    def store_event(self, event: AccessEvent) -> bool:
        """Store an access event"""
        try:
            with self.SessionLocal() as session:
                session.add(AccessLogDB(
                    id=event.id,
                    subject_id=event.subject_id,
                    caller_id=event.caller_id,
                    endpoint=event.endpoint,
                    action=event.action,
                    categories=json.dumps(event.categories),
                    purpose=event.purpose,
                    token_id=event.token_id,
                    client_ip=event.client_ip,
                    user_agent=event.user_agent,
                    timestamp=to_db_datetime(event.timestamp),
                ))
                session.commit()
                return True

        except SQLAlchemyError as e:
            logger.error("Failed to store access event", event_id=event.id, error=str(e))
            raise StorageError("store_access_event") from e

    def get_events(
        self,
        subject_id: Optional[str] = None,
        limit: int = 100,
        caller_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        category: Optional[str] = None,
        purpose: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[AccessEvent]:
        """Access events matching every given filter, newest first"""
        try:
            with self.SessionLocal() as session:
                query = session.query(AccessLogDB)
                if subject_id:
                    query = query.filter_by(subject_id=subject_id)
                if caller_id:
                    query = query.filter_by(caller_id=caller_id)
                if endpoint:
                    query = query.filter_by(endpoint=endpoint)
                if category:
                    # categories is a JSON array; match the quoted key
                    query = query.filter(AccessLogDB.categories.contains(json.dumps(category), autoescape=True))
                if purpose:
                    query = query.filter_by(purpose=purpose)
                if start:
                    query = query.filter(AccessLogDB.timestamp >= to_db_datetime(start))
                if end:
                    query = query.filter(AccessLogDB.timestamp <= to_db_datetime(end))
                rows = query.order_by(AccessLogDB.timestamp.desc()).limit(limit).all()
                return [
                    AccessEvent(
                        id=row.id,
                        subject_id=row.subject_id,
                        caller_id=row.caller_id,
                        endpoint=row.endpoint,
                        action=row.action,
                        categories=json.loads(row.categories or "[]"),
                        purpose=row.purpose,
                        token_id=row.token_id,
                        client_ip=row.client_ip or "unknown",
                        user_agent=row.user_agent or "unknown",
                        timestamp=as_utc(row.timestamp),
                    )
                    for row in rows
                ]

        except SQLAlchemyError as e:
            logger.error("Failed to read access events", error=str(e))
            raise StorageError("get_access_events") from e


class InMemoryAccessLogStorage(AccessLogStorage):
    """In-memory access log for testing"""

    def __init__(self):
        self.events: List[AccessEvent] = []

    def store_event(self, event: AccessEvent) -> bool:
        self.events.append(event)
        return True

    def get_events(
        self,
        subject_id: Optional[str] = None,
        limit: int = 100,
        caller_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        category: Optional[str] = None,
        purpose: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[AccessEvent]:
        filtered = [
            e for e in self.events
            if (not subject_id or e.subject_id == subject_id)
            and (not caller_id or e.caller_id == caller_id)
            and (not endpoint or e.endpoint == endpoint)
            and (not category or category in e.categories)
            and (not purpose or e.purpose == purpose)
            and (not start or e.timestamp >= start)
            and (not end or e.timestamp <= end)
        ]
        filtered.sort(key=lambda e: e.timestamp, reverse=True)
        return filtered[:limit]


class AccessLogger:
    """Builds access events and hands them to the configured sink"""

    def __init__(self, storage_backend: Optional[AccessLogStorage] = None):
        self.storage = storage_backend if storage_backend is not None else InMemoryAccessLogStorage()

    def log_access(
        self,
        subject_id: str,
        endpoint: str,
        action: str,
        caller_id: Optional[str] = None,
        categories: Optional[List[str]] = None,
        purpose: Optional[str] = None,
        token_id: Optional[str] = None,
        client: Optional[ClientInfo] = None
    ) -> AccessEvent:
        """Record an access event; storage failures propagate to the caller"""
        client = client or ClientInfo()
        event = AccessEvent(
            subject_id=subject_id,
            caller_id=caller_id,
            endpoint=endpoint,
            action=action,
            categories=list(categories or []),
            purpose=purpose,
            token_id=token_id,
            client_ip=client.ip,
            user_agent=client.user_agent,
        )

        self.storage.store_event(event)

        logger.info("Access event logged",
                    subject_id=subject_id,
                    caller_id=caller_id,
                    endpoint=endpoint,
                    action=action)

        return event

    def get_events(self, subject_id: Optional[str] = None, limit: int = 100, **filters: Any) -> List[AccessEvent]:
        """
        Read back access events, newest first

        Supported filters: caller_id, endpoint, category, purpose, start, end.
        """
        return self.storage.get_events(subject_id, limit, **filters)
