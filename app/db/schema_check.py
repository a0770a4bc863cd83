"""
Create missing fee tables and columns on an existing database.

Run once after deploying (idempotent):
  python -m app.db.schema_check
"""
import asyncio
import logging
from typing import List

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine

import app.core.models  # noqa: F401  registers tables on Base.metadata
from app.db.session import Base, engine

logger = logging.getLogger(__name__)

# Creation order follows foreign keys.
REQUIRED_TABLES: List[str] = [
    "students",
    "batches",
    "batch_students",
    "fee_structures",
    "fee_components",
    "student_fees",
    "fee_payments",
    "fee_payment_allocations",
    "fee_audit_logs",
]

# Columns added after the first release; (table, column, DDL type, default).
ADDED_COLUMNS = [
    ("student_fees", "version", "INTEGER", "1"),
    ("fee_components", "priority", "INTEGER", None),
]


def _missing_tables(sync_conn) -> List[str]:
    existing = set(inspect(sync_conn).get_table_names())
    return [t for t in REQUIRED_TABLES if t not in existing]


def _missing_columns(sync_conn) -> List[tuple]:
    inspector = inspect(sync_conn)
    missing = []
    for table, column, ddl_type, default in ADDED_COLUMNS:
        columns = {c["name"] for c in inspector.get_columns(table)}
        if column not in columns:
            missing.append((table, column, ddl_type, default))
    return missing


async def ensure_tables(db_engine: AsyncEngine) -> List[str]:
    """Create any missing fee table and add late columns. Returns the names of created tables."""
    async with db_engine.begin() as conn:
        missing = await conn.run_sync(_missing_tables)
        if missing:
            tables = [Base.metadata.tables[name] for name in missing]
            await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, tables=tables))

        for table, column, ddl_type, default in await conn.run_sync(_missing_columns):
            clause = f" NOT NULL DEFAULT {default}" if default is not None else ""
            await conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}{clause}"))
            logger.info("Added column %s.%s", table, column)

    if missing:
        logger.info("Created missing tables: %s", ", ".join(missing))
    else:
        logger.info("All required fee tables already exist in the database.")
    return missing


async def main() -> None:
    await ensure_tables(engine)


if __name__ == "__main__":
    from app.core.logging import setup_logging

    setup_logging()
    asyncio.run(main())
