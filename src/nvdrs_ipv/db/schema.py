"""
Schema creation and additive migration.

``ensure_schema`` is safe to run on every process start. It creates missing
tables and indexes, then adds any model column absent from an existing table.
Columns are never dropped or altered.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import Column, inspect
from sqlalchemy.engine import Engine

from ..errors import SchemaError
from .models import Base

logger = logging.getLogger(__name__)


def _missing_column(table_name: str, column: Column) -> Column:
    """Detached copy of ``column`` suitable for ALTER TABLE ... ADD COLUMN."""
    if not column.nullable and column.server_default is None:
        raise SchemaError(
            f"Cannot add NOT NULL column {table_name}.{column.name} without a server default"
        )
    server_default = column.server_default.arg if column.server_default is not None else None
    return Column(column.name, column.type, nullable=column.nullable, server_default=server_default)


def ensure_schema(engine: Engine, log: Optional[logging.Logger] = None) -> List[str]:
    """
    Create tables/indexes if absent and add missing columns.

    Args:
        engine: Engine for the target database
        log: Optional logger (defaults to the module logger)

    Returns:
        ``table.column`` names that were added, empty when already current

    Raises:
        SchemaError: If bringing the schema up to date would need a
            non-additive change
    """
    log = log or logger
    Base.metadata.create_all(engine, checkfirst=True)

    added: List[str] = []
    with engine.begin() as conn:
        inspector = inspect(conn)
        ops = Operations(MigrationContext.configure(conn))
        for table in Base.metadata.sorted_tables:
            existing_columns = {c["name"] for c in inspector.get_columns(table.name)}
            for column in table.columns:
                if column.name in existing_columns:
                    continue
                ops.add_column(table.name, _missing_column(table.name, column))
                added.append(f"{table.name}.{column.name}")
                log.info("Added column %s.%s", table.name, column.name)

            existing_indexes = {ix["name"] for ix in inspector.get_indexes(table.name)}
            for index in table.indexes:
                if index.name not in existing_indexes:
                    index.create(conn)
                    log.info("Created index %s", index.name)

    if added:
        log.info("Schema migrated: %d column(s) added", len(added))
    return added


__all__ = ["ensure_schema"]
