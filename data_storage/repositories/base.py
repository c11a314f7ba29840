#!/usr/bin/env python3
"""
Tiris Backend
Repository Base

Shared plumbing for the repositories: primary-key lookup, pagination and
translation of unique-constraint violations into stable conflict markers.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.logger import get_logger
from common.exceptions import ConflictError
from common.constants import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from common.utils import parse_uuid

# (tokens, marker): the marker fires when any token appears in the driver
# message. PostgreSQL reports the index name, SQLite the "table.column" list.
ConflictRules = Sequence[Tuple[Tuple[str, ...], str]]


def clamp_limit(limit: Optional[int]) -> int:
    if not limit or limit <= 0:
        return DEFAULT_PAGE_LIMIT
    return min(limit, MAX_PAGE_LIMIT)


class BaseRepository:
    """
    Repository base class.

    Every method takes the SQLAlchemy session of the caller's unit of work,
    so that a service can compose several repository calls atomically.
    """

    model = None
    conflicts: ConflictRules = ()

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def get_by_id(self, session: Session, entity_id) -> Optional[Any]:
        """
        Fetch a row by primary key.

        Soft-deleted rows are treated as absent.
        """
        entity_id = parse_uuid(entity_id)
        query = select(self.model).filter(self.model.id == entity_id)
        if hasattr(self.model, 'deleted_at'):
            query = query.filter(self.model.deleted_at.is_(None))
        return session.execute(query).scalars().first()

    def add(self, session: Session, entity):
        """Insert ``entity`` and flush, translating uniqueness violations."""
        session.add(entity)
        self.flush(session)
        return entity

    def flush(self, session: Session):
        """
        Flush pending changes.

        Raises:
            ConflictError: If a known uniqueness rule fired
            IntegrityError: For any other constraint violation
        """
        try:
            session.flush()
        except IntegrityError as e:
            marker = self._conflict_marker(str(e.orig))
            if marker is None:
                raise
            self.logger.info(f"Uniqueness rule fired on {self.model.__tablename__}: {marker}")
            raise ConflictError(marker) from None

    def _conflict_marker(self, message: str) -> Optional[str]:
        for tokens, marker in self.conflicts:
            if any(token in message for token in tokens):
                return marker
        return None

    def update_fields(self, session: Session, entity, fields: Dict[str, Any]):
        """Apply a partial update of mutable columns and flush."""
        for key, value in fields.items():
            if value is not None and hasattr(entity, key):
                setattr(entity, key, value)
        self.flush(session)
        return entity

    def paginate(self, session: Session, query, limit: Optional[int] = None,
                 offset: int = 0, order_by=None) -> Tuple[List[Any], int]:
        """
        Run ``query`` with a total count.

        Returns:
            (rows, total) where total ignores limit and offset
        """
        total = session.execute(
            select(func.count()).select_from(query.order_by(None).subquery())
        ).scalar_one()
        if order_by is not None:
            query = query.order_by(*order_by) if isinstance(order_by, (list, tuple)) else query.order_by(order_by)
        rows = session.execute(
            query.limit(clamp_limit(limit)).offset(max(offset or 0, 0))
        ).scalars().all()
        return list(rows), total
