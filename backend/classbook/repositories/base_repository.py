# backend/classbook/repositories/base_repository.py
"""
Base Repository Pattern for the Classbook backend.

Repositories own every SQL statement; services own transaction boundaries.
Nothing in a repository commits. Conditional state changes are expressed as
single UPDATE statements whose WHERE clause carries the precondition, so
callers learn whether they won a race from the affected row count.
"""

import logging
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """Generic data access helpers shared by the concrete repositories."""

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(self.__class__.__name__)

    def get_by_id(self, id: str) -> Optional[T]:
        try:
            return self.db.get(self.model, id)
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to get {self.model.__name__}: {str(e)}")

    def refresh_by_id(self, id: str) -> Optional[T]:
        """Load a row bypassing any stale copy in the identity map."""
        return self.db.get(self.model, id, populate_existing=True)

    def create(self, **kwargs: Any) -> T:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def expire_cached(self, id: str) -> None:
        """Expire an identity-map copy after a Core-level UPDATE changed its row."""
        cached = self.db.identity_map.get(identity_key(self.model, id))
        if cached is not None:
            self.db.expire(cached)
