"""
Raw record storage for the PDP engine
Per-subject sample data that feeds the noised aggregations
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
from ..utils.db import as_utc, create_storage_engine, to_db_datetime
from ..utils.ids import generate_record_id

logger = structlog.get_logger(__name__)

Base = declarative_base()


class RawRecord(BaseModel):
    """A subject's data point in one category"""
    id: str = Field(default_factory=generate_record_id)
    subject_id: str
    category_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RawRecordDB(Base):
    """SQLAlchemy model for raw records"""
    __tablename__ = "raw_records"

    id = Column(String, primary_key=True)
    subject_id = Column(String, nullable=False, index=True)
    category_key = Column(String(50), nullable=False, index=True)
    payload = Column(Text, nullable=False)  # JSON object
    created_at = Column(DateTime, nullable=False)


class RecordStorage:
    """Storage adapter for raw records"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or "sqlite:///pdp.db"
        self.engine = create_storage_engine(self.database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    def _from_db_model(self, db_record: RawRecordDB) -> RawRecord:
        payload: Dict[str, Any] = {}
        try:
            loaded = json.loads(db_record.payload)
            if isinstance(loaded, dict):
                payload = loaded
        except json.JSONDecodeError:
            logger.warning("Invalid payload JSON", record_id=db_record.id)

        return RawRecord(
            id=db_record.id,
            subject_id=db_record.subject_id,
            category_key=db_record.category_key,
            payload=payload,
            created_at=as_utc(db_record.created_at),
        )

    def add_record(self, record: RawRecord) -> RawRecord:
        """Store a new record"""
        try:
            with self.SessionLocal() as session:
                session.add(RawRecordDB(
                    id=record.id,
                    subject_id=record.subject_id,
                    category_key=record.category_key,
                    payload=json.dumps(record.payload),
                    created_at=to_db_datetime(record.created_at),
                ))
                session.commit()

                logger.info("Stored raw record", record_id=record.id,
                            subject_id=record.subject_id, category=record.category_key)
                return record

        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error("Failed to store record", record_id=record.id, error=str(e))
            raise StorageError("add_record") from e

    def get_records(self, subject_id: str, category_key: str) -> List[RawRecord]:
        """Records for a subject in a category, newest first"""
        try:
            with self.SessionLocal() as session:
                rows = (
                    session.query(RawRecordDB)
                    .filter_by(subject_id=subject_id, category_key=category_key)
                    .order_by(RawRecordDB.created_at.desc())
                    .all()
                )
                return [self._from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to load records", subject_id=subject_id,
                         category=category_key, error=str(e))
            raise StorageError("get_records") from e


class InMemoryRecordStorage(RecordStorage):
    """In-memory storage for testing"""

    def __init__(self):
        self.records: Dict[str, RawRecord] = {}

    def add_record(self, record: RawRecord) -> RawRecord:
        self.records[record.id] = record.model_copy(deep=True)
        return record

    def get_records(self, subject_id: str, category_key: str) -> List[RawRecord]:
        matching = [
            r.model_copy(deep=True) for r in self.records.values()
            if r.subject_id == subject_id and r.category_key == category_key
        ]
        return sorted(matching, key=lambda r: r.created_at, reverse=True)
