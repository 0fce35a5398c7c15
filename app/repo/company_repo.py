# app/repo/company_repo.py
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.types import String

from app.db.tx import run_on_engine

log = logging.getLogger("repo.company")

_NAMES_SQL = text(
    "SELECT inn, short_name FROM dadata_result WHERE inn IN :inns"
).bindparams(bindparam("inns", expanding=True, type_=String()))

_RESET_FLAGS_SQL = text(
    """
    UPDATE dadata_result
    SET server_error = NULL,
        analysis_ok = NULL,
        analysis_started_at = NULL
    WHERE inn IN :inns
    """
).bindparams(bindparam("inns", expanding=True, type_=String()))


class CompanyRepo:
    """
    Карточки компаний каталога (dadata_result) — внешняя таблица.
    Отсюда берутся названия, сюда же пишутся денормализованные флаги анализа.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get_names(self, inns: list[str]) -> dict[str, str]:
        if not inns:
            return {}

        async def _action(conn: AsyncConnection) -> dict[str, str]:
            result = await conn.execute(_NAMES_SQL, {"inns": list(inns)})
            return {str(inn): short_name or "" for inn, short_name in result.all() if inn}

        return await run_on_engine(self._engine, _action)

    async def update_flags(
        self,
        inn: str,
        *,
        server_error: Optional[int] = None,
        analysis_ok: Optional[int] = None,
        touch_started_at: bool = False,
    ) -> None:
        sets: list[str] = []
        params: dict[str, object] = {"inn": inn}
        if server_error is not None:
            sets.append("server_error = :server_error")
            params["server_error"] = int(server_error)
        if analysis_ok is not None:
            sets.append("analysis_ok = :analysis_ok")
            params["analysis_ok"] = int(analysis_ok)
        if touch_started_at:
            sets.append("analysis_started_at = COALESCE(analysis_started_at, now())")
        if not sets:
            return
        sql = text(f"UPDATE dadata_result SET {', '.join(sets)} WHERE inn = :inn")

        async def _action(conn: AsyncConnection) -> None:
            await conn.execute(sql, params)

        await run_on_engine(self._engine, _action)

    async def reset_flags(self, inns: list[str]) -> None:
        if not inns:
            return

        async def _action(conn: AsyncConnection) -> None:
            await conn.execute(_RESET_FLAGS_SQL, {"inns": list(inns)})

        await run_on_engine(self._engine, _action)
