"""Durable key-value registry over a SQLModel table.

Every write opens its own session and re-reads the row before mutating it,
so one task's writer never clobbers another task's row. Writes aimed at an
id that no longer exists are dropped silently: this is what discards late
progress from a poller whose record was replaced or deleted.
"""

import logging
from datetime import datetime
from typing import Callable, Generic, List, Optional, Type, TypeVar

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, select

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=SQLModel)


class Registry(Generic[T]):
    def __init__(self, engine: Engine, model: Type[T]):
        self._engine = engine
        self._model = model

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def get(self, record_id: str) -> Optional[T]:
        with self._session() as session:
            return session.get(self._model, record_id)

    def put(self, record: T) -> T:
        """Insert or overwrite a whole record."""
        with self._session() as session:
            record = session.merge(record)
            session.commit()
            return record

    def upsert(self, record_id: str, mutator: Callable[[T], None]) -> Optional[T]:
        """Re-read ``record_id``, apply ``mutator`` in place and commit.

        Returns the updated record, or None when the id is gone.
        """
        with self._session() as session:
            record = session.get(self._model, record_id)
            if record is None:
                logger.debug("[REGISTRY] drop write for missing %s %s", self._model.__name__, record_id)
                return None
            mutator(record)
            if hasattr(record, "updated_at"):
                record.updated_at = datetime.now()
            session.add(record)
            session.commit()
            return record

    def replace(self, old_id: str, record: T) -> Optional[T]:
        """Delete ``old_id`` and insert ``record`` in one transaction.

        Returns None without inserting when ``old_id`` is already gone.
        """
        with self._session() as session:
            old = session.get(self._model, old_id)
            if old is None:
                logger.debug("[REGISTRY] drop replace of missing %s %s", self._model.__name__, old_id)
                return None
            session.delete(old)
            record = session.merge(record)
            session.commit()
            return record

    def delete(self, record_id: str) -> bool:
        with self._session() as session:
            record = session.get(self._model, record_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
            return True

    def list_all(self) -> List[T]:
        with self._session() as session:
            stmt = select(self._model)
            if hasattr(self._model, "created_at"):
                stmt = stmt.order_by(self._model.created_at.desc())
            return list(session.exec(stmt).all())

    def find_one(self, **filters) -> Optional[T]:
        with self._session() as session:
            stmt = select(self._model)
            for field, value in filters.items():
                stmt = stmt.where(getattr(self._model, field) == value)
            return session.exec(stmt).first()
