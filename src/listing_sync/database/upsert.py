"""
Column-scoped upserts.

Writers that share a row (the traffic and orders metric passes) each update
only the columns they own, so running them independently or concurrently
never overwrites the other pass's values. PostgreSQL and SQLite use a native
``INSERT ... ON CONFLICT DO UPDATE``; other backends fall back to a locked
read-modify-write per row.
"""

import uuid
from typing import Any, Dict, List, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from listing_sync.utils.dates import utcnow
from listing_sync.utils.logger import get_logger

logger = get_logger(__name__)

_NATIVE_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def upsert_column_scoped(
    db: Session,
    model,
    rows: List[Dict[str, Any]],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
) -> int:
    """
    Insert ``rows`` or update only ``update_columns`` on key conflict.

    Args:
        db: Session; the caller owns the commit
        model: Declarative model class
        rows: Full rows used when inserting
        conflict_columns: Columns of the unique key
        update_columns: Columns this writer owns

    Returns:
        Number of rows written
    """
    if not rows:
        return 0

    now = utcnow()
    for row in rows:
        row.setdefault("id", uuid.uuid4())
        row.setdefault("created_at", now)
        row["updated_at"] = now

    dialect = db.get_bind().dialect.name
    insert = _NATIVE_INSERTS.get(dialect)

    if insert is None:
        return _upsert_read_modify_write(db, model, rows, conflict_columns, update_columns)

    table = model.__table__
    stmt = insert(table).values(rows)

    set_ = {column: stmt.excluded[column] for column in update_columns}
    set_["updated_at"] = stmt.excluded["updated_at"]

    stmt = stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=set_)
    db.execute(stmt)

    logger.debug(f"Upserted {len(rows)} {table.name} rows ({dialect}), columns={list(update_columns)}")
    return len(rows)


def _upsert_read_modify_write(db, model, rows, conflict_columns, update_columns) -> int:
    for row in rows:
        key_filter = [getattr(model, column) == row[column] for column in conflict_columns]
        existing = db.query(model).filter(*key_filter).with_for_update().first()

        if existing is None:
            db.add(model(**row))
            continue

        for column in update_columns:
            setattr(existing, column, row.get(column))
        existing.updated_at = row["updated_at"]

    db.flush()
    return len(rows)
