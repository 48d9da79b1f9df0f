"""
Dialect-aware INSERT ... ON CONFLICT statements.

Unique constraints guard (role_id, permission_id) and (user_id, permission_id).
Writing through these helpers turns a concurrent duplicate into a no-op or an
update instead of an IntegrityError.
"""
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import Table
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


class UnsupportedDialectError(RuntimeError):
    """The configured database has no INSERT ... ON CONFLICT support here."""


def _insert_for(session: AsyncSession, table: Table):
    bind = session.get_bind()
    dialect = bind.dialect.name if bind is not None else ""
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise UnsupportedDialectError(f"Upsert is not supported for dialect '{dialect}'")


async def insert_ignore(
    session: AsyncSession,
    table: Table,
    rows: Sequence[Mapping[str, Any]],
    index_elements: Iterable[str],
) -> None:
    """Insert rows, silently skipping those that violate the unique index."""
    if not rows:
        return
    stmt = _insert_for(session, table).values(list(rows))
    stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))
    await session.execute(stmt)


async def upsert(
    session: AsyncSession,
    table: Table,
    values: Mapping[str, Any],
    index_elements: Iterable[str],
    update_columns: Iterable[str],
) -> None:
    """Insert one row or update the listed columns of the conflicting row."""
    stmt = _insert_for(session, table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={column: stmt.excluded[column] for column in update_columns},
    )
    await session.execute(stmt)
