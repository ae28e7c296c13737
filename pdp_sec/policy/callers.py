"""
API caller registry
Resolves API keys presented in the x-api-key header to registered callers
and manages their lifecycle (register, update, revoke, key rotation, delete)
"""

from datetime import datetime, UTC
from typing import Any, Dict, List, Literal, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from ..constants import CallerStatus
from ..exceptions import StorageError
from ..utils.db import as_utc, create_storage_engine, to_db_datetime
from ..utils.ids import generate_api_key, generate_caller_id

logger = structlog.get_logger(__name__)

Base = declarative_base()


class ApiCaller(BaseModel):
    """A registered API client"""
    id: str = Field(default_factory=generate_caller_id)
    name: str
    description: Optional[str] = None
    api_key: str = Field(default_factory=generate_api_key)
    status: str = Field(default=CallerStatus.ACTIVE)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status == CallerStatus.ACTIVE

    def to_public_dict(self) -> Dict[str, Any]:
        """Caller fields safe to list; the API key is only shown at creation and rotation"""
        return self.model_dump(mode="json", exclude={"api_key"})


class CallerCreateRequest(BaseModel):
    """Register a new API client"""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class CallerUpdateRequest(BaseModel):
    """Change an API client's name, description or status"""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    status: Optional[Literal["ACTIVE", "REVOKED"]] = None


class ApiCallerDB(Base):
    """SQLAlchemy model for API callers"""
    __tablename__ = "api_callers"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    api_key = Column(String, nullable=False, unique=True, index=True)
    status = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False)


class CallerRegistry:
    """Storage-backed registry of API callers"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or "sqlite:///pdp.db"
        self.engine = create_storage_engine(self.database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    def _from_db_model(self, row: ApiCallerDB) -> ApiCaller:
        return ApiCaller(
            id=row.id,
            name=row.name,
            description=row.description,
            api_key=row.api_key,
            status=row.status,
            created_at=as_utc(row.created_at),
        )

    def add(self, caller: ApiCaller) -> ApiCaller:
        """Register a caller"""
        try:
            with self.SessionLocal() as session:
                session.add(ApiCallerDB(
                    id=caller.id,
                    name=caller.name,
                    description=caller.description,
                    api_key=caller.api_key,
                    status=caller.status,
                    created_at=to_db_datetime(caller.created_at),
                ))
                session.commit()

                logger.info("Registered API caller", caller_id=caller.id, name=caller.name)
                return caller

        except SQLAlchemyError as e:
            logger.error("Failed to register caller", caller_id=caller.id, error=str(e))
            raise StorageError("add_caller") from e

    def register(self, name: str, description: Optional[str] = None,
                 api_key: Optional[str] = None) -> ApiCaller:
        """Create and store a new ACTIVE caller"""
        caller = ApiCaller(name=name, description=description)
        if api_key:
            caller.api_key = api_key
        return self.add(caller)

    def get(self, caller_id: str) -> Optional[ApiCaller]:
        try:
            with self.SessionLocal() as session:
                row = session.get(ApiCallerDB, caller_id)
                return self._from_db_model(row) if row else None

        except SQLAlchemyError as e:
            logger.error("Failed to get caller", caller_id=caller_id, error=str(e))
            raise StorageError("get_caller") from e

    def get_by_api_key(self, api_key: str) -> Optional[ApiCaller]:
        """Look up a caller by API key"""
        try:
            with self.SessionLocal() as session:
                row = session.query(ApiCallerDB).filter_by(api_key=api_key).first()
                return self._from_db_model(row) if row else None

        except SQLAlchemyError as e:
            logger.error("Failed to look up caller", error=str(e))
            raise StorageError("get_caller") from e

    def list_callers(self) -> List[ApiCaller]:
        try:
            with self.SessionLocal() as session:
                rows = session.query(ApiCallerDB).order_by(ApiCallerDB.created_at.desc()).all()
                return [self._from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to list callers", error=str(e))
            raise StorageError("list_callers") from e

    def update(
        self,
        caller_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[str] = None
    ) -> Optional[ApiCaller]:
        """Apply the given field changes; None leaves a field untouched"""
        try:
            with self.SessionLocal() as session:
                row = session.get(ApiCallerDB, caller_id)
                if row is None:
                    return None
                if name is not None:
                    row.name = name
                if description is not None:
                    row.description = description
                if status is not None:
                    row.status = status
                session.commit()

                logger.info("Updated API caller", caller_id=caller_id, status=row.status)
                return self._from_db_model(row)

        except SQLAlchemyError as e:
            logger.error("Failed to update caller", caller_id=caller_id, error=str(e))
            raise StorageError("update_caller") from e

    def revoke(self, caller_id: str) -> bool:
        """Mark a caller REVOKED; its key stops authenticating"""
        try:
            with self.SessionLocal() as session:
                updated = (
                    session.query(ApiCallerDB)
                    .filter_by(id=caller_id)
                    .update({"status": CallerStatus.REVOKED})
                )
                session.commit()
                if updated:
                    logger.info("Revoked API caller", caller_id=caller_id)
                return updated > 0

        except SQLAlchemyError as e:
            logger.error("Failed to revoke caller", caller_id=caller_id, error=str(e))
            raise StorageError("revoke_caller") from e

    def regenerate_key(self, caller_id: str) -> Optional[ApiCaller]:
        """Replace a caller's API key; the old key stops authenticating immediately"""
        try:
            with self.SessionLocal() as session:
                row = session.get(ApiCallerDB, caller_id)
                if row is None:
                    return None
                row.api_key = generate_api_key()
                session.commit()

                logger.info("Rotated API key", caller_id=caller_id)
                return self._from_db_model(row)

        except SQLAlchemyError as e:
            logger.error("Failed to rotate API key", caller_id=caller_id, error=str(e))
            raise StorageError("regenerate_api_key") from e

    def delete(self, caller_id: str) -> bool:
        try:
            with self.SessionLocal() as session:
                deleted = session.query(ApiCallerDB).filter_by(id=caller_id).delete()
                session.commit()
                if deleted:
                    logger.info("Deleted API caller", caller_id=caller_id)
                return deleted > 0

        except SQLAlchemyError as e:
            logger.error("Failed to delete caller", caller_id=caller_id, error=str(e))
            raise StorageError("delete_caller") from e


class InMemoryCallerRegistry(CallerRegistry):
    """In-memory registry for testing"""

    def __init__(self):
        self.callers: Dict[str, ApiCaller] = {}

    def add(self, caller: ApiCaller) -> ApiCaller:
        self.callers[caller.id] = caller
        return caller

    def get(self, caller_id: str) -> Optional[ApiCaller]:
        caller = self.callers.get(caller_id)
        return caller.model_copy() if caller else None

    def get_by_api_key(self, api_key: str) -> Optional[ApiCaller]:
        for caller in self.callers.values():
            if caller.api_key == api_key:
                return caller.model_copy()
        return None

    def list_callers(self) -> List[ApiCaller]:
        return sorted(self.callers.values(), key=lambda c: c.created_at, reverse=True)

    def update(
        self,
        caller_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[str] = None
    ) -> Optional[ApiCaller]:
        caller = self.callers.get(caller_id)
        if caller is None:
            return None
        if name is not None:
            caller.name = name
        if description is not None:
            caller.description = description
        if status is not None:
            caller.status = status
        return caller.model_copy()

    def revoke(self, caller_id: str) -> bool:
        caller = self.callers.get(caller_id)
        if caller is None:
            return False
        caller.status = CallerStatus.REVOKED
        return True

    def regenerate_key(self, caller_id: str) -> Optional[ApiCaller]:
        caller = self.callers.get(caller_id)
        if caller is None:
            return None
        caller.api_key = generate_api_key()
        return caller.model_copy()

    def delete(self, caller_id: str) -> bool:
        return self.callers.pop(caller_id, None) is not None
