"""
Helpers for working with SQLAlchemy sessions in a dialect-agnostic way.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session


def utcnow() -> datetime:
    """Return timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_dialect_name(session: Session, default: str = "sqlite") -> str:
    """
    Return SQLAlchemy dialect name for the session's bind.

    Falls back to ``default`` when the bound engine cannot be resolved.
    """
    bind = session.get_bind()
    if bind is None:
        return default
    dialect = getattr(bind, "dialect", None)
    name = getattr(dialect, "name", None)
    return name or default


def insert_ignoring_conflicts(
    session: Session,
    table: Any,
    rows: Iterable[Mapping[str, Any]],
    *,
    conflict_columns: Iterable[str],
) -> int:
    """
    Insert ``rows`` skipping any that collide with an existing unique key.

    Returns the number of rows actually inserted.
    """
    values = [dict(row) for row in rows]
    if not values:
        return 0

    dialect = get_dialect_name(session)
    if dialect == "postgresql":
        stmt = (
            pg_insert(table)
            .values(values)
            .on_conflict_do_nothing(index_elements=list(conflict_columns))
        )
    elif dialect == "sqlite":
        stmt = sqlite_insert(table).values(values).on_conflict_do_nothing(
            index_elements=list(conflict_columns)
        )
    else:
        stmt = insert(table).prefix_with("IGNORE").values(values)

    result = session.execute(stmt)
    return int(result.rowcount or 0)
