"""
Plugin-private table migrations

Plugins own tables named "<plugin>_<name>" in a MetaData of their own and
declare integer-versioned migrations for them. Host tables stay under Alembic;
these migrations are applied by the registry on activation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Connection, MetaData, Table
from sqlalchemy.ext.asyncio import AsyncEngine

from cms_core.exceptions import MigrationFailureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PluginMigration:
    plugin: str
    version: int
    upgrade: Callable[[Connection], Any] | None = None
    tables: tuple[Table, ...] = ()
    description: str = ""

    def apply(self, connection: Connection) -> None:
        if self.upgrade is not None:
            self.upgrade(connection)
            return
        for table in self.tables:
            table.create(connection, checkfirst=True)


def pending_migrations(migrations: Iterable[PluginMigration], current_version: int) -> list[PluginMigration]:
    return sorted((m for m in migrations if m.version > current_version), key=lambda m: m.version)


class SqlAlchemyMigrationRunner:
    """Applies plugin migrations against an async engine, one transaction per call."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def migrate(self, plugin: str, migrations: Iterable[PluginMigration], current_version: int) -> int:
        """
        Apply every migration newer than `current_version` in ascending order.

        Returns:
            The resulting schema version (unchanged when nothing was pending).

        Raises:
            MigrationFailureError: naming the version that failed; the whole
                batch is rolled back.
        """
        pending = pending_migrations(migrations, current_version)
        if not pending:
            return current_version

        version = current_version
        try:
            async with self.engine.begin() as conn:
                for migration in pending:
                    version = migration.version
                    logger.info("Applying migration %s v%d %s", plugin, version, migration.description)
                    await conn.run_sync(migration.apply)
        except Exception as e:
            logger.error("Migration %s v%d failed, rolled back: %s", plugin, version, e)
            raise MigrationFailureError(plugin, version, str(e)) from e
        return pending[-1].version

    async def drop_tables(self, plugin: str, metadata: MetaData) -> None:
        if not metadata.tables:
            return
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.drop_all, checkfirst=True)
        except Exception as e:
            logger.error("Dropping tables for %s failed: %s", plugin, e)
            raise MigrationFailureError(plugin, None, str(e)) from e
        logger.info("Dropped %d table(s) for %s", len(metadata.tables), plugin)
