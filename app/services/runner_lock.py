from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

log = logging.getLogger("services.runner_lock")

_TRY_LOCK_SQL = text("SELECT pg_try_advisory_lock(:key)")
_UNLOCK_SQL = text("SELECT pg_advisory_unlock(:key)")


class AdvisoryLock:
    """
    Межпроцессная блокировка цикла очереди (pg session advisory lock).

    Блокировка сессионная, поэтому держим под неё отдельное соединение на всё
    время работы цикла: через пул обычных транзакций unlock ушёл бы в другую сессию.
    """

    def __init__(self, engine: AsyncEngine, key: int) -> None:
        self._engine = engine
        self.key = int(key)
        self._conn: Optional[AsyncConnection] = None

    @property
    def held(self) -> bool:
        return self._conn is not None

    async def try_acquire(self) -> bool:
        if self._conn is not None:
            return True
        conn: Optional[AsyncConnection] = None
        try:
            conn = await self._engine.connect()
            acquired = bool((await conn.execute(_TRY_LOCK_SQL, {"key": self.key})).scalar())
            await conn.commit()
        except Exception as exc:  # noqa: BLE001
            log.warning("advisory lock %s: acquire failed: %s", self.key, exc)
            if conn is not None:
                await self._close(conn)
            return False

        if not acquired:
            log.info("advisory lock %s is held by another runner", self.key)
            await self._close(conn)
            return False

        self._conn = conn
        log.debug("advisory lock %s acquired", self.key)
        return True

    async def release(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.execute(_UNLOCK_SQL, {"key": self.key})
            await conn.commit()
            log.debug("advisory lock %s released", self.key)
        except Exception as exc:  # noqa: BLE001
            # соединение с висящим lock не должно вернуться в пул
            log.warning("advisory lock %s: release failed, dropping connection: %s", self.key, exc)
            try:
                await conn.invalidate()
            except Exception as inv_exc:  # noqa: BLE001
                log.warning("advisory lock: invalidate failed: %s", inv_exc)
        finally:
            await self._close(conn)

    @staticmethod
    async def _close(conn: AsyncConnection) -> None:
        try:
            await conn.close()
        except Exception as exc:  # noqa: BLE001
            log.warning("advisory lock: closing connection failed: %s", exc)
