# app/repo/events_repo.py
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from app.db.tx import dump_json, load_json, run_on_engine
from app.schemas.events import EventFilter, EventRecord

log = logging.getLogger("repo.events")

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50

_INSERT_SQL = text(
    """
    INSERT INTO ai_debug_events (
        event_type, source, direction, request_id, company_id, company_name, message, payload
    )
    VALUES (
        :event_type, :source, :direction, :request_id, :company_id, :company_name, :message,
        CAST(:payload AS jsonb)
    )
    RETURNING id
    """
)

_CATEGORY_CONDITIONS = {
    "traffic": "event_type IN ('request', 'response')",
    "error": "event_type = 'error'",
    "notification": "event_type = 'notification'",
}


def normalize_paging(page: Any, page_size: Any) -> tuple[int, int]:
    try:
        page_num = int(page)
    except (TypeError, ValueError):
        page_num = 1
    try:
        size = int(page_size)
    except (TypeError, ValueError):
        size = DEFAULT_PAGE_SIZE
    return max(1, page_num), min(max(1, size), MAX_PAGE_SIZE)


def build_event_where(flt: EventFilter) -> tuple[str, dict[str, Any]]:
    """WHERE-часть для выборки журнала; пустая строка, если фильтров нет."""
    filters: list[str] = []
    params: dict[str, Any] = {}

    categories = list(dict.fromkeys(flt.categories)) or list(_CATEGORY_CONDITIONS)
    type_conditions = [_CATEGORY_CONDITIONS[c] for c in categories]
    if len(type_conditions) < len(_CATEGORY_CONDITIONS):
        filters.append("(" + " OR ".join(type_conditions) + ")")

    if flt.company_id:
        filters.append("company_id = :company_id")
        params["company_id"] = flt.company_id
    if flt.q:
        filters.append(
            "(message ILIKE :q OR company_id ILIKE :q OR company_name ILIKE :q OR request_id ILIKE :q)"
        )
        params["q"] = f"%{flt.q}%"
    if flt.date_from is not None:
        filters.append("created_at >= :date_from")
        params["date_from"] = flt.date_from
    if flt.date_to is not None:
        filters.append("created_at <= :date_to")
        params["date_to"] = flt.date_to

    where_sql = f"WHERE {' AND '.join(filters)}" if filters else ""
    return where_sql, params


class EventsRepo:
    """ai_debug_events: журнал запросов/ответов/ошибок/уведомлений (append-only)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def insert(self, row: dict[str, Any]) -> int:
        params = dict(row)
        params["payload"] = dump_json(params.get("payload"))

        async def _action(conn: AsyncConnection) -> int:
            return int((await conn.execute(_INSERT_SQL, params)).scalar_one())

        return await run_on_engine(self._engine, _action)

    async def list(self, flt: EventFilter) -> tuple[list[EventRecord], int, int, int]:
        page, page_size = normalize_paging(flt.page, flt.page_size)
        where_sql, params = build_event_where(flt)
        list_sql = text(
            f"""
            SELECT id, created_at, event_type, source, direction, request_id,
                   company_id, company_name, message, payload
            FROM ai_debug_events
            {where_sql}
            ORDER BY created_at DESC, id DESC
            LIMIT :limit OFFSET :offset
            """
        )
        count_sql = text(f"SELECT COUNT(*) FROM ai_debug_events {where_sql}")

        async def _action(conn: AsyncConnection) -> tuple[list[EventRecord], int]:
            result = await conn.execute(
                list_sql, {**params, "limit": page_size, "offset": (page - 1) * page_size}
            )
            items = []
            for row in result.mappings():
                data = dict(row)
                data["payload"] = load_json(data.get("payload"))
                items.append(EventRecord.model_validate(data))
            total = (await conn.execute(count_sql, params)).scalar_one()
            return items, int(total or 0)

        items, total = await run_on_engine(self._engine, _action)
        return items, total, page, page_size

    async def purge(self) -> None:
        async def _action(conn: AsyncConnection) -> None:
            await conn.execute(text("TRUNCATE ai_debug_events RESTART IDENTITY"))

        await run_on_engine(self._engine, _action)
        log.warning("ai_debug_events purged")
