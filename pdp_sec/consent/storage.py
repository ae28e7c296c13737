"""
Consent storage adapters for the PDP engine
Database adapters for data categories, consent policies and token records
"""

import json
from datetime import datetime, UTC
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import Boolean, Column, DateTime, String, Text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from ..exceptions import StorageError
from ..utils.db import as_utc, create_storage_engine, to_db_datetime
from .models import ConsentPolicy, ConsentPolicyStatus, ConsentTokenRecord, DataCategory

logger = structlog.get_logger(__name__)

Base = declarative_base()


class DataCategoryDB(Base):
    """SQLAlchemy model for data categories"""
    __tablename__ = "data_categories"

    key = Column(String(50), primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)


class ConsentPolicyDB(Base):
    """SQLAlchemy model for consent policies"""
    __tablename__ = "consent_policies"

    id = Column(String, primary_key=True)
    subject_id = Column(String, nullable=False, index=True)
    category_key = Column(String(50), nullable=False, index=True)
    purpose = Column(String(200), nullable=False)
    status = Column(String, nullable=False)
    scopes = Column(Text, nullable=False)  # JSON array

    expires_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class ConsentTokenDB(Base):
    """SQLAlchemy model for issued consent tokens"""
    __tablename__ = "consent_tokens"

    id = Column(String, primary_key=True)
    subject_id = Column(String, nullable=False, index=True)
    purpose = Column(String(200), nullable=False)
    categories = Column(Text, nullable=False)  # JSON array
    scopes = Column(Text, nullable=False)  # JSON array
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime)


def _load_list(raw: Optional[str], **context) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON list in storage", **context)
        return []
    return [item for item in value if isinstance(item, str)] if isinstance(value, list) else []


class ConsentStorage:
    """Storage adapter for categories, policies and token records"""

    def __init__(self, database_url: Optional[str] = None):
        # Default to SQLite for development
        self.database_url = database_url or "sqlite:///pdp.db"
        self.engine = create_storage_engine(self.database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    # -- conversions -----------------------------------------------------

    def _policy_to_db_model(self, policy: ConsentPolicy) -> ConsentPolicyDB:
        """Convert ConsentPolicy to database model"""
        return ConsentPolicyDB(
            id=policy.id,
            subject_id=policy.subject_id,
            category_key=policy.category_key,
            purpose=policy.purpose,
            status=policy.status.value,
            scopes=json.dumps(policy.scopes),
            expires_at=to_db_datetime(policy.expires_at),
            created_at=to_db_datetime(policy.created_at),
            updated_at=to_db_datetime(policy.updated_at),
        )

    def _policy_from_db_model(self, db_policy: ConsentPolicyDB) -> ConsentPolicy:
        """Convert database model to ConsentPolicy"""
        return ConsentPolicy(
            id=db_policy.id,
            subject_id=db_policy.subject_id,
            category_key=db_policy.category_key,
            purpose=db_policy.purpose,
            status=ConsentPolicyStatus(db_policy.status),
            scopes=_load_list(db_policy.scopes, policy_id=db_policy.id),
            expires_at=as_utc(db_policy.expires_at),
            created_at=as_utc(db_policy.created_at),
            updated_at=as_utc(db_policy.updated_at),
        )

    def _token_to_db_model(self, record: ConsentTokenRecord) -> ConsentTokenDB:
        return ConsentTokenDB(
            id=record.id,
            subject_id=record.subject_id,
            purpose=record.purpose,
            categories=json.dumps(record.categories),
            scopes=json.dumps(record.scopes),
            issued_at=to_db_datetime(record.issued_at),
            expires_at=to_db_datetime(record.expires_at),
            revoked=record.revoked,
            revoked_at=to_db_datetime(record.revoked_at),
        )

    def _token_from_db_model(self, db_token: ConsentTokenDB) -> ConsentTokenRecord:
        return ConsentTokenRecord(
            id=db_token.id,
            subject_id=db_token.subject_id,
            purpose=db_token.purpose,
            categories=_load_list(db_token.categories, token_id=db_token.id),
            scopes=_load_list(db_token.scopes, token_id=db_token.id),
            issued_at=as_utc(db_token.issued_at),
            expires_at=as_utc(db_token.expires_at),
            revoked=bool(db_token.revoked),
            revoked_at=as_utc(db_token.revoked_at),
        )

    # -- categories ------------------------------------------------------

    def add_category(self, category: DataCategory) -> DataCategory:
        """Insert a category if it is not already in the catalog"""
        try:
            with self.SessionLocal() as session:
                if session.get(DataCategoryDB, category.key) is None:
                    session.add(DataCategoryDB(
                        key=category.key,
                        name=category.name,
                        description=category.description,
                    ))
                    session.commit()
                    logger.info("Added data category", category=category.key)
                return category

        except SQLAlchemyError as e:
            logger.error("Failed to add category", category=category.key, error=str(e))
            raise StorageError("add_category") from e

    def get_category(self, key: str) -> Optional[DataCategory]:
        """Get a catalog entry by key"""
        try:
            with self.SessionLocal() as session:
                db_category = session.get(DataCategoryDB, key)
                if db_category is None:
                    return None
                return DataCategory(
                    key=db_category.key,
                    name=db_category.name,
                    description=db_category.description,
                )

        except SQLAlchemyError as e:
            logger.error("Failed to get category", category=key, error=str(e))
            raise StorageError("get_category") from e

    def list_categories(self) -> List[DataCategory]:
        """All catalog entries ordered by display name"""
        try:
            with self.SessionLocal() as session:
                rows = session.query(DataCategoryDB).order_by(DataCategoryDB.name).all()
                return [
                    DataCategory(key=row.key, name=row.name, description=row.description)
                    for row in rows
                ]

        except SQLAlchemyError as e:
            logger.error("Failed to list categories", error=str(e))
            raise StorageError("list_categories") from e

    # -- policies --------------------------------------------------------

    def save_policy(self, policy: ConsentPolicy) -> ConsentPolicy:
        """Insert a policy or update the row with the same ID"""
        try:
            with self.SessionLocal() as session:
                db_policy = session.get(ConsentPolicyDB, policy.id)
                if db_policy is None:
                    session.add(self._policy_to_db_model(policy))
                else:
                    db_policy.category_key = policy.category_key
                    db_policy.purpose = policy.purpose
                    db_policy.status = policy.status.value
                    db_policy.scopes = json.dumps(policy.scopes)
                    db_policy.expires_at = to_db_datetime(policy.expires_at)
                    db_policy.updated_at = to_db_datetime(policy.updated_at)
                session.commit()

                logger.info("Stored consent policy", policy_id=policy.id,
                            subject_id=policy.subject_id, category=policy.category_key)
                return policy

        except SQLAlchemyError as e:
            logger.error("Failed to store policy", policy_id=policy.id, error=str(e))
            raise StorageError("save_policy") from e

    def get_policy(self, policy_id: str) -> Optional[ConsentPolicy]:
        """Get a specific policy by ID"""
        try:
            with self.SessionLocal() as session:
                db_policy = session.get(ConsentPolicyDB, policy_id)
                if db_policy:
                    return self._policy_from_db_model(db_policy)
                return None

        except SQLAlchemyError as e:
            logger.error("Failed to get policy", policy_id=policy_id, error=str(e))
            raise StorageError("get_policy") from e

    def find_policy(self, subject_id: str, category_key: str, purpose: str) -> Optional[ConsentPolicy]:
        """Most recently updated policy for a (subject, category, purpose) tuple"""
        policies = self.get_policies(subject_id, [category_key], purpose)
        return policies[0] if policies else None

    def get_policies(
        self,
        subject_id: str,
        category_keys: Iterable[str],
        purpose: str
    ) -> List[ConsentPolicy]:
        """Policies for a subject matching any of the categories and the purpose, newest first"""
        keys = list(category_keys)
        try:
            with self.SessionLocal() as session:
                rows = (
                    session.query(ConsentPolicyDB)
                    .filter(
                        ConsentPolicyDB.subject_id == subject_id,
                        ConsentPolicyDB.category_key.in_(keys),
                        ConsentPolicyDB.purpose == purpose,
                    )
                    .order_by(ConsentPolicyDB.updated_at.desc())
                    .all()
                )
                return [self._policy_from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to load policies", subject_id=subject_id, error=str(e))
            raise StorageError("get_policies") from e

    def list_policies(self, subject_id: str) -> List[ConsentPolicy]:
        """All policies for a subject, newest first"""
        try:
            with self.SessionLocal() as session:
                rows = (
                    session.query(ConsentPolicyDB)
                    .filter_by(subject_id=subject_id)
                    .order_by(ConsentPolicyDB.created_at.desc())
                    .all()
                )
                return [self._policy_from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to list policies", subject_id=subject_id, error=str(e))
            raise StorageError("list_policies") from e

    def delete_policy(self, policy_id: str) -> bool:
        """Delete a policy; False when it does not exist"""
        try:
            with self.SessionLocal() as session:
                deleted = session.query(ConsentPolicyDB).filter_by(id=policy_id).delete()
                session.commit()
                return deleted > 0

        except SQLAlchemyError as e:
            logger.error("Failed to delete policy", policy_id=policy_id, error=str(e))
            raise StorageError("delete_policy") from e

    # -- tokens ----------------------------------------------------------

    def store_token(self, record: ConsentTokenRecord) -> ConsentTokenRecord:
        """Persist a newly issued token"""
        try:
            with self.SessionLocal() as session:
                session.add(self._token_to_db_model(record))
                session.commit()

                logger.info("Stored consent token", token_id=record.id, subject_id=record.subject_id)
                return record

        except SQLAlchemyError as e:
            logger.error("Failed to store token", token_id=record.id, error=str(e))
            raise StorageError("store_token") from e

    def get_token(self, token_id: str) -> Optional[ConsentTokenRecord]:
        """Get a token record by ID (the jti claim)"""
        try:
            with self.SessionLocal() as session:
                db_token = session.get(ConsentTokenDB, token_id)
                if db_token:
                    return self._token_from_db_model(db_token)
                return None

        except SQLAlchemyError as e:
            logger.error("Failed to get token", token_id=token_id, error=str(e))
            raise StorageError("get_token") from e

    def list_tokens(self, subject_id: str) -> List[ConsentTokenRecord]:
        """All token records for a subject, newest first"""
        try:
            with self.SessionLocal() as session:
                rows = (
                    session.query(ConsentTokenDB)
                    .filter_by(subject_id=subject_id)
                    .order_by(ConsentTokenDB.issued_at.desc())
                    .all()
                )
                return [self._token_from_db_model(row) for row in rows]

        except SQLAlchemyError as e:
            logger.error("Failed to list tokens", subject_id=subject_id, error=str(e))
            raise StorageError("list_tokens") from e

    def mark_token_revoked(self, token_id: str) -> bool:
        """
        Set the revoked flag on a token

        The flag only moves from false to true. Returns False when the token
        does not exist or was already revoked.
        """
        try:
            with self.SessionLocal() as session:
                updated = (
                    session.query(ConsentTokenDB)
                    .filter(ConsentTokenDB.id == token_id, ConsentTokenDB.revoked.is_(False))
                    .update({"revoked": True, "revoked_at": to_db_datetime(datetime.now(UTC))})
                )
                session.commit()
                if updated:
                    logger.info("Revoked consent token", token_id=token_id)
                return updated > 0

        except SQLAlchemyError as e:
            logger.error("Failed to revoke token", token_id=token_id, error=str(e))
            raise StorageError("mark_token_revoked") from e


class InMemoryConsentStorage(ConsentStorage):
    """In-memory storage for testing"""

    def __init__(self):
        self.categories: Dict[str, DataCategory] = {}
        self.policies: Dict[str, ConsentPolicy] = {}
        self.tokens: Dict[str, ConsentTokenRecord] = {}

    def add_category(self, category: DataCategory) -> DataCategory:
        self.categories.setdefault(category.key, category)
        return category

    def get_category(self, key: str) -> Optional[DataCategory]:
        return self.categories.get(key)

    def list_categories(self) -> List[DataCategory]:
        return sorted(self.categories.values(), key=lambda c: c.name)

    def save_policy(self, policy: ConsentPolicy) -> ConsentPolicy:
        self.policies[policy.id] = policy.model_copy(deep=True)
        return policy

    def get_policy(self, policy_id: str) -> Optional[ConsentPolicy]:
        policy = self.policies.get(policy_id)
        return policy.model_copy(deep=True) if policy else None

    def get_policies(
        self,
        subject_id: str,
        category_keys: Iterable[str],
        purpose: str
    ) -> List[ConsentPolicy]:
        keys = set(category_keys)
        matching = [
            p.model_copy(deep=True) for p in self.policies.values()
            if p.subject_id == subject_id and p.category_key in keys and p.purpose == purpose
        ]
        return sorted(matching, key=lambda p: p.updated_at, reverse=True)

    def list_policies(self, subject_id: str) -> List[ConsentPolicy]:
        matching = [p.model_copy(deep=True) for p in self.policies.values() if p.subject_id == subject_id]
        return sorted(matching, key=lambda p: p.created_at, reverse=True)

    def delete_policy(self, policy_id: str) -> bool:
        return self.policies.pop(policy_id, None) is not None

    def store_token(self, record: ConsentTokenRecord) -> ConsentTokenRecord:
        self.tokens[record.id] = record.model_copy(deep=True)
        return record

    def get_token(self, token_id: str) -> Optional[ConsentTokenRecord]:
        record = self.tokens.get(token_id)
        return record.model_copy(deep=True) if record else None

    def list_tokens(self, subject_id: str) -> List[ConsentTokenRecord]:
        matching = [t.model_copy(deep=True) for t in self.tokens.values() if t.subject_id == subject_id]
        return sorted(matching, key=lambda t: t.issued_at, reverse=True)

    def mark_token_revoked(self, token_id: str) -> bool:
        record = self.tokens.get(token_id)
        if record is None or record.revoked:
            return False
        record.revoked = True
        record.revoked_at = datetime.now(UTC)
        return True
