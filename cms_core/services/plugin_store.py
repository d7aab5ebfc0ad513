"""
Plugin Store

Persistence of PluginRecord rows behind a small async interface, so the
lifecycle controller and settings engine never touch sessions directly.

Every mutating call is a single-row transaction. Settings writes lock the
row (SELECT ... FOR UPDATE where the backend supports it) so concurrent
writers serialize per plugin.
"""

import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cms_core.exceptions import PluginNotFoundError
from cms_core.models.plugin_record import PluginRecord

logger = logging.getLogger(__name__)

# Columns that lifecycle code is allowed to change through update()
UPDATABLE_FIELDS = frozenset({"active", "schema_version", "last_error", "tenant_id"})


class PluginStore(Protocol):
    async def get(self, identifier: str) -> PluginRecord | None: ...

    async def ensure(self, identifier: str, tenant_id: int | None = None) -> PluginRecord: ...

    async def update(self, identifier: str, **fields: Any) -> PluginRecord: ...

    async def put_settings(self, identifier: str, values: dict[str, Any]) -> PluginRecord: ...

    async def delete(self, identifier: str) -> bool: ...

    async def all(self) -> list[PluginRecord]: ...


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update plugin record fields: {', '.join(sorted(unknown))}")


def _merge_settings(current: dict[str, Any] | None, values: dict[str, Any]) -> dict[str, Any]:
    """Return a new settings dict; a value of None removes the key."""
    merged = dict(current or {})
    for key, value in values.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class SqlAlchemyPluginStore:
    """PluginStore backed by the host database through an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, identifier: str) -> PluginRecord | None:
        async with self.session_factory() as db:
            return await db.get(PluginRecord, identifier)

    async def ensure(self, identifier: str, tenant_id: int | None = None) -> PluginRecord:
        async with self.session_factory() as db:
            record = await db.get(PluginRecord, identifier)
            if record is not None:
                return record

            record = PluginRecord(
                identifier=identifier,
                active=False,
                schema_version=0,
                settings={},
                tenant_id=tenant_id,
            )
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                # Another worker created it first
                await db.rollback()
                record = await db.get(PluginRecord, identifier)
            else:
                logger.info("Plugin record created: %s", identifier)
            return record

    async def update(self, identifier: str, **fields: Any) -> PluginRecord:
        _check_fields(fields)
        async with self.session_factory() as db:
            async with db.begin():
                record = await self._locked(db, identifier)
                for name, value in fields.items():
                    setattr(record, name, value)
            return record

    async def put_settings(self, identifier: str, values: dict[str, Any]) -> PluginRecord:
        async with self.session_factory() as db:
            async with db.begin():
                record = await self._locked(db, identifier)
                # Assign a fresh dict so the JSON column is flagged dirty
                record.settings = _merge_settings(record.settings, values)
            return record

    async def delete(self, identifier: str) -> bool:
        async with self.session_factory() as db:
            async with db.begin():
                record = await db.get(PluginRecord, identifier)
                if record is None:
                    return False
                await db.delete(record)
        logger.info("Plugin record deleted: %s", identifier)
        return True

    async def all(self) -> list[PluginRecord]:
        async with self.session_factory() as db:
            result = await db.execute(select(PluginRecord).order_by(PluginRecord.identifier))
            return list(result.scalars().all())

    @staticmethod
    async def _locked(db: AsyncSession, identifier: str) -> PluginRecord:
        result = await db.execute(
            select(PluginRecord).where(PluginRecord.identifier == identifier).with_for_update()
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise PluginNotFoundError(identifier)
        return record


class InMemoryPluginStore:
    """
    Process-local PluginStore.

    Used by tests and by embedders without a database. Returned records are
    detached copies; mutating them has no effect on stored state.
    """

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _to_record(row: dict[str, Any]) -> PluginRecord:
        return PluginRecord(**copy.deepcopy(row))

    async def get(self, identifier: str) -> PluginRecord | None:
        row = self._rows.get(identifier)
        return self._to_record(row) if row is not None else None

    async def ensure(self, identifier: str, tenant_id: int | None = None) -> PluginRecord:
        async with self._lock:
            if identifier not in self._rows:
                now = datetime.now(timezone.utc)
                self._rows[identifier] = {
                    "identifier": identifier,
                    "active": False,
                    "schema_version": 0,
                    "settings": {},
                    "tenant_id": tenant_id,
                    "last_error": None,
                    "created_at": now,
                    "updated_at": now,
                }
                logger.info("Plugin record created: %s", identifier)
            return self._to_record(self._rows[identifier])

    async def update(self, identifier: str, **fields: Any) -> PluginRecord:
        _check_fields(fields)
        async with self._lock:
            row = self._rows.get(identifier)
            if row is None:
                raise PluginNotFoundError(identifier)
            row.update(fields)
            row["updated_at"] = datetime.now(timezone.utc)
            return self._to_record(row)

    async def put_settings(self, identifier: str, values: dict[str, Any]) -> PluginRecord:
        async with self._lock:
            row = self._rows.get(identifier)
            if row is None:
                raise PluginNotFoundError(identifier)
            row["settings"] = _merge_settings(row["settings"], copy.deepcopy(values))
            row["updated_at"] = datetime.now(timezone.utc)
            return self._to_record(row)

    async def delete(self, identifier: str) -> bool:
        async with self._lock:
            removed = self._rows.pop(identifier, None) is not None
        if removed:
            logger.info("Plugin record deleted: %s", identifier)
        return removed

    async def all(self) -> list[PluginRecord]:
        return [self._to_record(self._rows[key]) for key in sorted(self._rows)]
