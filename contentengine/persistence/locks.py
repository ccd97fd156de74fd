from __future__ import annotations

from contextlib import asynccontextmanager
import hashlib
import logging
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


logger = logging.getLogger(__name__)

# Process-local fallback for dialects without advisory locks (SQLite in tests and local runs).
_local_held: set[int] = set()


def lock_key(name: str) -> int:
    # Hash names to a signed int64, the key space of pg_advisory_lock.
    digest = hashlib.sha256(name.encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)


class AdvisoryLock:
    """Non-blocking named mutual exclusion backed by Postgres session advisory locks.

    Each held key pins a dedicated connection: the lock lives exactly as long as
    that session, so a crashed holder releases it automatically.
    """

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        if engine is None:
            from contentengine.persistence.db import engine as default_engine

            engine = default_engine
        self._engine = engine
        self._held: dict[int, AsyncConnection] = {}

    @property
    def _native(self) -> bool:
        return self._engine.dialect.name == "postgresql"

    async def try_acquire(self, key: int) -> bool:
        # Never wait: callers skip their cycle when the lock is taken.
        if not self._native:
            if key in _local_held:
                return False
            _local_held.add(key)
            return True
        if key in self._held:
            return False
        conn = await self._engine.connect()
        try:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            result = await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})
            acquired = bool(result.scalar())
        except BaseException:
            await conn.close()
            raise
        if not acquired:
            await conn.close()
            return False
        self._held[key] = conn
        logger.debug("advisory_lock_acquired key=%s", key)
        return True

    async def release(self, key: int) -> None:
        if not self._native:
            _local_held.discard(key)
            return
        conn = self._held.pop(key, None)
        if conn is None:
            return
        try:
            await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
        except Exception:
            # A pooled connection keeps session locks; drop the backend session instead.
            logger.warning("advisory_lock_unlock_failed key=%s", key, exc_info=True)
            await conn.invalidate()
        else:
            logger.debug("advisory_lock_released key=%s", key)
        finally:
            await conn.close()

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        # Yield whether the lock was acquired; release only what this holder owns.
        key = lock_key(name)
        acquired = await self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(key)
