"""
Base repository class for data access layer.

Repositories wrap a sync SQLAlchemy Session owned by the caller; they add
and flush but never commit, so a whole indexer window or settlement step
commits or rolls back as one unit.

Example:
    class PoolRepository(BaseRepository[Pool]):
        def find_unsettled_guided(self) -> List[Pool]:
            return self.where(Pool.oracle_type == ORACLE_GUIDED, Pool.flags.op("&")(17) == 0)
"""
from abc import ABC
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy import desc, func, inspect
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from marketsync.core.logging import get_logger

logger = get_logger(__name__)

_ON_CONFLICT_INSERTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}

T = TypeVar("T")


class BaseRepository(Generic[T], ABC):
    """
    Base repository class providing common data access methods.

    Attributes:
        model_type: The SQLAlchemy model class this repository manages
        db: The database session
    """

    def __init__(self, model_type: Type[T], db: Session):
        """
        Initialize the repository.

        Args:
            model_type: The SQLAlchemy model class
            db: The database session
        """
        self.model_type = model_type
        self.db = db

    @property
    def _pk(self):
        return inspect(self.model_type).primary_key[0]

    # ========================================================================
    # CRUD Operations
    # ========================================================================

    def find_by_id(self, id: Any) -> Optional[T]:
        """Find a single record by primary key."""
        return self.db.get(self.model_type, id)

    def find_all(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order_by: Optional[str] = None
    ) -> List[T]:
        """
        Find all records with optional pagination.

        Args:
            limit: Maximum number of records to return
            offset: Number of records to skip
            order_by: Column name to order by (prefix with '-' for descending)
        """
        query = self.db.query(self.model_type)

        if order_by:
            if order_by.startswith('-'):
                query = query.order_by(desc(getattr(self.model_type, order_by[1:])))
            else:
                query = query.order_by(getattr(self.model_type, order_by))

        if offset is not None:
            query = query.offset(offset)

        if limit is not None:
            query = query.limit(limit)

        return query.all()

    def create(self, **kwargs) -> T:
        """
        Create a new record and flush it so later queries in the session see it.

        Returns:
            The created record (not yet committed to database)
        """
        instance = self.model_type(**kwargs)
        self.db.add(instance)
        self.db.flush()
        return instance

    def insert_if_absent(self, lookup: Dict[str, Any], **values) -> Optional[T]:
        """
        Idempotent insert keyed by `lookup`.

        A concurrent writer can commit the same key between the lookup and the
        insert; PostgreSQL and SQLite then skip the row with ON CONFLICT DO
        NOTHING, other dialects roll back a savepoint.

        Returns:
            The new record, or None when a row with the same key already exists
        """
        if self.filter_by_first(**lookup) is not None:
            return None

        row = {**lookup, **values}
        upsert = _ON_CONFLICT_INSERTS.get(self.db.get_bind().dialect.name)
        if upsert is not None:
            self.db.flush()
            stmt = upsert(self.model_type).values([row]).on_conflict_do_nothing().returning(self.model_type)
            instance = self.db.scalars(stmt).first()
        else:
            try:
                with self.db.begin_nested():
                    instance = self.create(**row)
            except IntegrityError:
                instance = None

        if instance is None:
            logger.debug(f"{self.model_type.__name__} {lookup} inserted concurrently; skipping")
        return instance

    def update(self, id: Any, **kwargs) -> Optional[T]:
        """
        Update a record by primary key.

        Returns:
            The updated record, or None if not found
        """
        instance = self.find_by_id(id)
        if instance:
            for key, value in kwargs.items():
                if hasattr(instance, key):
                    setattr(instance, key, value)
            if hasattr(instance, "updated_at"):
                instance.updated_at = datetime.utcnow()
            self.db.flush()
        return instance

    # ========================================================================
    # Query Builders
    # ========================================================================

    def query(self) -> Query:
        """Get a new query object for this model."""
        return self.db.query(self.model_type)

    def filter_by(self, **kwargs) -> List[T]:
        """Filter records by keyword arguments."""
        return self.db.query(self.model_type).filter_by(**kwargs).all()

    def filter_by_first(self, **kwargs) -> Optional[T]:
        """Filter records by keyword arguments and return first match."""
        return self.db.query(self.model_type).filter_by(**kwargs).first()

    def where(self, *criterion) -> List[T]:
        """Filter records using SQLAlchemy expressions."""
        return self.db.query(self.model_type).filter(*criterion).all()

    def where_first(self, *criterion) -> Optional[T]:
        """Filter records using SQLAlchemy expressions and return first match."""
        return self.db.query(self.model_type).filter(*criterion).first()

    # ========================================================================
    # Existence Checks
    # ========================================================================

    def exists(self, id: Any) -> bool:
        """Check if a record with given primary key exists."""
        return self.find_by_id(id) is not None

    def exists_where(self, *criterion) -> bool:
        """Check if any record matching the criterion exists."""
        return self.db.query(
            self.db.query(self.model_type).filter(*criterion).exists()
        ).scalar()

    def count(self, *criterion) -> int:
        """Count records matching optional criterion."""
        query = self.db.query(func.count(self._pk))
        if criterion:
            query = query.filter(*criterion)
        return query.scalar() or 0

    # ========================================================================
    # Save Operations
    # ========================================================================

    def flush(self) -> None:
        """Flush pending changes without committing."""
        self.db.flush()

    def refresh(self, instance: T) -> T:
        """Refresh an instance from the database."""
        self.db.refresh(instance)
        return instance
