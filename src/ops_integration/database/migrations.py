"""Idempotent schema migration step, run once at startup.

``create_all`` creates missing tables but never alters existing ones, so
columns added after a table first shipped are applied here as alembic
operations, each guarded by inspecting the live schema. Running the step
any number of times converges on the same schema.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

from .models import Base

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnPatch:
    """A column that may be missing from databases created by older releases."""
    table: str
    column: Callable[[], sa.Column]
    index_name: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.table}.{self.column().name}"


SCHEMA_PATCHES: List[ColumnPatch] = [
    ColumnPatch(
        table="quotes",
        column=lambda: sa.Column("job_appointment_id", sa.String(36), nullable=True),
        index_name="ix_quotes_job_appointment_id",
    ),
    ColumnPatch(
        table="outbox_events",
        column=lambda: sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    ),
    ColumnPatch(
        table="outbox_events",
        column=lambda: sa.Column("last_error", sa.Text(), nullable=True),
    ),
    ColumnPatch(
        table="outbox_events",
        column=lambda: sa.Column("claimed_at", sa.DateTime(), nullable=True),
    ),
    ColumnPatch(
        table="payment_records",
        column=lambda: sa.Column("appointment_locked", sa.Boolean(), nullable=False, server_default="0"),
    ),
]


def apply_schema_patches(connection: Connection) -> List[str]:
    """Add any missing patched columns and their indexes.

    Args:
        connection: Sync connection (use ``AsyncConnection.run_sync``).

    Returns:
        Names (``table.column``) of the columns added by this call.
    """
    op = Operations(MigrationContext.configure(connection))
    inspector = sa.inspect(connection)
    applied: List[str] = []

    for patch in SCHEMA_PATCHES:
        if not inspector.has_table(patch.table):
            continue

        column = patch.column()
        existing = {col["name"] for col in inspector.get_columns(patch.table)}
        if column.name not in existing:
            op.add_column(patch.table, column)
            applied.append(patch.name)
            logger.info(f"Added column {patch.name}")

        if patch.index_name:
            indexes = {ix["name"] for ix in inspector.get_indexes(patch.table)}
            if patch.index_name not in indexes:
                op.create_index(patch.index_name, patch.table, [column.name])

        # Column lists are cached per table on the inspector
        inspector = sa.inspect(connection)

    return applied


def create_schema(connection: Connection) -> List[str]:
    Base.metadata.create_all(connection)
    return apply_schema_patches(connection)


async def run_migrations(engine: AsyncEngine) -> List[str]:
    """Create missing tables and apply column patches in one transaction."""
    async with engine.begin() as conn:
        return await conn.run_sync(create_schema)
