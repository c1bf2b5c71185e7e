# backend/app/repositories/base_repository.py
"""
Base repository for the HealNest booking service.

Repositories own every SQL statement. They flush but never commit: the
service layer decides transaction boundaries, so a repository call can
always be composed with others inside one unit of work.
"""

import logging
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Generic data access for a single model.

    Attributes:
        db: SQLAlchemy session (owned by the caller)
        model: mapped class this repository reads and writes
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    def _wrap(self, action: str, exc: SQLAlchemyError) -> RepositoryException:
        self.logger.error("Failed to %s %s: %s", action, self.model.__name__, exc)
        return RepositoryException(f"Failed to {action} {self.model.__name__}: {exc}")

    def get_by_id(self, id: str) -> Optional[T]:
        try:
            return self.db.get(self.model, id)
        except SQLAlchemyError as exc:
            raise self._wrap("load", exc) from exc

    def create(self, **kwargs: Any) -> T:
        """
        Add and flush a new row.

        Raises:
            RepositoryException: on any constraint or driver error; the
                original ``IntegrityError`` is kept as ``__cause__``.
        """
        entity = self.model(**kwargs)
        self.db.add(entity)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.logger.warning("Constraint rejected new %s: %s", self.model.__name__, exc.orig)
            self.db.rollback()
            raise RepositoryException(f"Integrity constraint violated: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise self._wrap("create", exc) from exc
        return entity

    def update(self, entity: T, **changes: Any) -> T:
        """Set ``changes`` on a loaded row and flush."""
        for key, value in changes.items():
            if not hasattr(entity, key):
                raise AttributeError(f"{self.model.__name__} has no attribute {key!r}")
            setattr(entity, key, value)
        try:
            self.db.flush()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise self._wrap("update", exc) from exc
        return entity

    def delete(self, entity: T) -> None:
        self.db.delete(entity)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise RepositoryException(f"{self.model.__name__} is still referenced: {exc.orig}") from exc

    def exists(self, **criteria: Any) -> bool:
        try:
            return self.db.query(self.model).filter_by(**criteria).first() is not None
        except SQLAlchemyError as exc:
            raise self._wrap("query", exc) from exc

    def refresh(self, instance: T) -> None:
        self.db.refresh(instance)
