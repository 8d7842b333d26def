"""
Atomic Insert-or-Increment

Single-statement upserts against the natural-key UNIQUE constraints:

    INSERT ... ON CONFLICT (key) DO UPDATE SET col = col + excluded.col
    RETURNING *

Both PostgreSQL and SQLite (>= 3.35) support this form, so a concurrent
writer never sees a read-modify-write window: the database applies the
increment under the row lock and hands back the post-increment row.
"""

from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import case, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement


def dialect_insert(session: AsyncSession) -> Callable:
    """Dialect-specific ``insert`` construct supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def greatest(left: ColumnElement, right: ColumnElement) -> ColumnElement:
    """Portable GREATEST() for two non-null expressions."""
    return case((right > left, right), else_=left)


def least(left: ColumnElement, right: ColumnElement) -> ColumnElement:
    return case((right < left, right), else_=left)


async def upsert_increment(
    session: AsyncSession,
    model: Any,
    key: Mapping[str, Any],
    deltas: Mapping[str, Any],
    assign: Optional[Mapping[str, Any]] = None,
) -> Row:
    """
    Insert a rollup row or add ``deltas`` to the existing one.

    Args:
        session: Session with an open transaction
        model: Mapped rollup class with a UNIQUE constraint over ``key``
        key: Natural key column values
        deltas: Column -> amount to add; used as initial values on insert
        assign: Descriptive columns overwritten when the new value is not NULL

    Returns:
        Row: The row as it stands after the increment
    """
    if not deltas:
        raise ValueError("upsert_increment requires at least one delta")

    table = model.__table__
    assign = {name: value for name, value in (assign or {}).items() if value is not None}

    stmt = dialect_insert(session)(table).values(**key, **deltas, **assign)

    set_: Dict[str, Any] = {
        name: table.c[name] + stmt.excluded[name] for name in deltas
    }
    for name in assign:
        set_[name] = stmt.excluded[name]
    if "updated_at" in table.c:
        set_["updated_at"] = func.now()

    stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=set_).returning(*table.c)
    result = await session.execute(stmt)
    return result.one()
