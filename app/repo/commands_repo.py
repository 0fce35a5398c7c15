# app/repo/commands_repo.py
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from app.db.tx import dump_json, load_json, run_on_engine
from app.schemas.analysis import normalize_inns

log = logging.getLogger("repo.commands")

_INSERT_SQL = text(
    "INSERT INTO ai_analysis_commands (action, payload) VALUES (:action, CAST(:payload AS jsonb))"
)
_CONSUME_SQL = text(
    "DELETE FROM ai_analysis_commands WHERE action = 'stop' RETURNING payload"
)
_PENDING_STOPS_SQL = text(
    "SELECT id, payload FROM ai_analysis_commands WHERE action = 'stop' ORDER BY id FOR UPDATE"
)
_UPDATE_PAYLOAD_SQL = text(
    "UPDATE ai_analysis_commands SET payload = CAST(:payload AS jsonb) WHERE id = :id"
)
_DELETE_SQL = text("DELETE FROM ai_analysis_commands WHERE id = :id")


class CommandsRepo:
    """
    Команды для фонового обработчика (сейчас только 'stop').
    Команда живёт до тех пор, пока цикл очереди её не прочитает
    или компанию не поставят в очередь заново (discard_stops).
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def push_stop(self, payload: dict[str, Any]) -> None:
        async def _action(conn: AsyncConnection) -> None:
            await conn.execute(_INSERT_SQL, {"action": "stop", "payload": dump_json(payload)})

        await run_on_engine(self._engine, _action)

    async def consume_stop(self) -> list[str]:
        """Удаляет все stop-команды и возвращает объединение запрошенных ИНН."""

        async def _action(conn: AsyncConnection) -> list[str]:
            result = await conn.execute(_CONSUME_SQL)
            requested: list[str] = []
            for (payload,) in result.all():
                data = load_json(payload)
                if isinstance(data, dict):
                    requested.extend(normalize_inns(data.get("inns")))
            return list(dict.fromkeys(requested))

        return await run_on_engine(self._engine, _action)

    async def discard_stops(self, inns: list[str]) -> int:
        """
        Убирает ИНН из ещё не прочитанных stop-команд.

        Вызывается при повторной постановке в очередь: старый запрос на остановку
        не должен отменить новый запуск. Команды, в которых не осталось ИНН,
        удаляются. Возвращает число изменённых команд.
        """
        targets = set(normalize_inns(inns))
        if not targets:
            return 0

        async def _action(conn: AsyncConnection) -> int:
            result = await conn.execute(_PENDING_STOPS_SQL)
            touched = 0
            for command_id, raw in result.all():
                data = load_json(raw)
                if not isinstance(data, dict):
                    continue
                requested = normalize_inns(data.get("inns"))
                remaining = [inn for inn in requested if inn not in targets]
                if len(remaining) == len(requested):
                    continue
                touched += 1
                if remaining:
                    data["inns"] = remaining
                    await conn.execute(
                        _UPDATE_PAYLOAD_SQL, {"id": command_id, "payload": dump_json(data)}
                    )
                else:
                    await conn.execute(_DELETE_SQL, {"id": command_id})
            return touched

        touched = await run_on_engine(self._engine, _action)
        if touched:
            log.info("discarded pending stop for %s (%d commands)", ", ".join(sorted(targets)), touched)
        return touched
