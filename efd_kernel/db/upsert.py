"""
Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING`` for bulk writes.

Both supported backends (PostgreSQL in production, SQLite in tests) accept
the same conflict clause and ``RETURNING``, but SQLAlchemy exposes it through
dialect-specific ``insert`` constructs.
"""

from collections.abc import Sequence
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def insert_ignoring_conflicts(
    session: Session,
    model: type,
    rows: Sequence[dict[str, Any]],
    conflict_columns: Sequence[str],
) -> list:
    """
    Insert ``rows`` into ``model``'s table, skipping rows whose conflict key
    already exists.

    Returns:
        Primary keys of the rows actually inserted.  Rows skipped because of
        a conflict are not included, so ``len(result)`` is the number of new
        rows.

    Raises:
        NotImplementedError: The bound dialect has no conflict clause support.
    """
    if not rows:
        return []

    dialect = session.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise NotImplementedError(f"ON CONFLICT inserts not supported on {dialect}")

    stmt = (
        insert(model)
        .values(list(rows))
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
        .returning(model.id)
    )
    return list(session.execute(stmt).scalars().all())
