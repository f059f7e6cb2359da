"""Dialect-aware ``INSERT .. ON CONFLICT`` construction.

Production runs on PostgreSQL; the test-suite runs on SQLite. Both dialects
expose the same ``on_conflict_do_update`` / ``on_conflict_do_nothing`` API on
their own ``insert`` construct, so callers only need the right one.
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(db: AsyncSession, model):
    """Return an ``Insert`` for ``model`` supporting ON CONFLICT clauses."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT upserts are not supported on {dialect}")
