# app/repo/queue_repo.py
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.types import String

from app.db.tx import dump_json, load_json, run_on_engine
from app.schemas.analysis import QueueFilterRequest, QueueItem, QueuePayload

log = logging.getLogger("repo.queue")

# Компания считается «в работе», если статус активный и старт был не раньше,
# чем QUEUE_STALE_INTERVAL назад (зависшие записи не блокируют постановку).
QUEUE_STALE_INTERVAL = "120 minutes"

_UPSERT_SQL = text(
    """
    INSERT INTO ai_analysis_queue (inn, queued_at, queued_by, payload)
    VALUES (:inn, now(), :queued_by, CAST(:payload AS jsonb))
    ON CONFLICT (inn) DO UPDATE
    SET queued_at = EXCLUDED.queued_at,
        queued_by = COALESCE(EXCLUDED.queued_by, ai_analysis_queue.queued_by),
        payload = EXCLUDED.payload
    """
)

_DEQUEUE_SQL = text(
    """
    WITH next_item AS (
        SELECT q.inn
        FROM ai_analysis_queue q
        ORDER BY q.queued_at ASC, q.inn ASC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
    )
    DELETE FROM ai_analysis_queue q
    USING next_item
    WHERE q.inn = next_item.inn
    RETURNING q.inn, q.payload, q.queued_at, q.queued_by
    """
)

_REMOVE_SQL = text(
    "DELETE FROM ai_analysis_queue WHERE inn IN :inns RETURNING inn"
).bindparams(bindparam("inns", expanding=True, type_=String()))

_LIST_SQL = text(
    f"""
    WITH queue_items AS (
        SELECT
            'queue'::text AS source,
            q.inn,
            q.queued_at,
            q.queued_by,
            q.payload
        FROM ai_analysis_queue q
    ),
    running_items AS (
        SELECT
            'running'::text AS source,
            s.inn,
            COALESCE(s.last_started_at, now()) AS queued_at,
            NULL::text AS queued_by,
            NULL::jsonb AS payload
        FROM company_analysis_state s
        LEFT JOIN ai_analysis_queue q ON q.inn = s.inn
        WHERE q.inn IS NULL
          AND s.status IN ('running', 'stopping')
          AND s.last_started_at > now() - interval '{QUEUE_STALE_INTERVAL}'
    ),
    combined AS (
        SELECT * FROM queue_items
        UNION ALL
        SELECT * FROM running_items
    )
    SELECT
        c.source,
        c.inn,
        c.queued_at,
        c.queued_by,
        c.payload,
        s.status AS analysis_status,
        s.stage AS analysis_stage,
        s.progress AS analysis_progress,
        s.last_started_at AS analysis_started_at,
        s.attempts AS analysis_attempts
    FROM combined c
    LEFT JOIN company_analysis_state s ON s.inn = c.inn
    ORDER BY c.queued_at ASC
    LIMIT :limit
    """
)


def _row_to_item(row: Any) -> QueueItem:
    return QueueItem(
        inn=str(row["inn"]),
        queued_at=row.get("queued_at"),
        queued_by=row.get("queued_by"),
        payload=QueuePayload.from_raw(load_json(row.get("payload"))),
    )


def _status_conditions(statuses: list[str]) -> list[str]:
    requested = set(statuses)
    conditions: list[str] = []
    if "not_started" in requested:
        conditions.append("(s.inn IS NULL OR (s.last_started_at IS NULL AND s.last_finished_at IS NULL))")
    if "failed" in requested:
        conditions.append(
            "(s.status = 'failed' OR COALESCE(s.server_error, FALSE) OR COALESCE(s.no_valid_site, FALSE))"
        )
    if "partial" in requested:
        conditions.append("(s.last_finished_at IS NOT NULL AND NOT COALESCE(s.analysis_ok, FALSE))")
    if "completed" in requested:
        conditions.append("(s.status = 'completed' OR COALESCE(s.analysis_ok, FALSE))")
    return conditions


def build_filter_sql(flt: QueueFilterRequest) -> tuple[str, dict[str, Any]]:
    """Собирает WHERE для выборки компаний каталога под массовую постановку."""
    where: list[str] = ["(d.status = 'ACTIVE' OR d.status = 'REORGANIZING')"]
    params: dict[str, Any] = {}

    if flt.query:
        where.append("(d.short_name ILIKE :q OR d.inn ILIKE :q)")
        params["q"] = f"%{flt.query}%"
    if flt.starts_with:
        where.append("(d.short_name ILIKE :sw OR d.inn ILIKE :sw)")
        params["sw"] = f"{flt.starts_with}%"
    if flt.okved:
        where.append("TRIM(d.main_okved) ~ ('^' || :okved || '(\\.|$)')")
        params["okved"] = flt.okved
    if flt.industry_id is not None and flt.industry_id > 0:
        where.append("d.industry_id = :industry_id")
        params["industry_id"] = flt.industry_id
    if not flt.include_queued:
        where.append("q.inn IS NULL")
    if not flt.include_running:
        where.append(
            "NOT (COALESCE(s.status, '') IN ('running', 'stopping') "
            f"AND s.last_started_at > now() - interval '{QUEUE_STALE_INTERVAL}')"
        )
    conditions = _status_conditions(list(flt.statuses))
    if conditions:
        where.append("(" + " OR ".join(conditions) + ")")

    return " AND ".join(where), params


class QueueRepo:
    """Таблица ai_analysis_queue: одна строка на ИНН, FIFO по queued_at."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def enqueue(self, inn: str, payload: QueuePayload, queued_by: Optional[str]) -> None:
        await self.enqueue_many([inn], payload, queued_by)

    async def enqueue_many(
        self, inns: list[str], payload: QueuePayload, queued_by: Optional[str]
    ) -> int:
        if not inns:
            return 0
        body = dump_json(payload.model_dump(mode="json"))
        params = [{"inn": inn, "queued_by": queued_by, "payload": body} for inn in inns]

        async def _action(conn: AsyncConnection) -> int:
            await conn.execute(_UPSERT_SQL, params)
            return len(params)

        return await run_on_engine(self._engine, _action)

    async def dequeue_next(self) -> Optional[QueueItem]:
        async def _action(conn: AsyncConnection) -> Optional[QueueItem]:
            row = (await conn.execute(_DEQUEUE_SQL)).mappings().first()
            return _row_to_item(row) if row is not None else None

        return await run_on_engine(self._engine, _action)

    async def remove(self, inns: list[str]) -> int:
        if not inns:
            return 0

        async def _action(conn: AsyncConnection) -> int:
            result = await conn.execute(_REMOVE_SQL, {"inns": list(inns)})
            return len(result.all())

        return await run_on_engine(self._engine, _action)

    async def list_items(self, limit: int = 200) -> list[dict[str, Any]]:
        async def _action(conn: AsyncConnection) -> list[dict[str, Any]]:
            result = await conn.execute(_LIST_SQL, {"limit": limit})
            items: list[dict[str, Any]] = []
            for row in result.mappings():
                item = dict(row)
                item["payload"] = load_json(item.get("payload"))
                if item.get("analysis_status") is None and item["source"] == "queue":
                    item["analysis_status"] = "queued"
                items.append(item)
            return items

        return await run_on_engine(self._engine, _action)

    async def select_by_filter(self, flt: QueueFilterRequest) -> tuple[int, list[str]]:
        where_sql, params = build_filter_sql(flt)
        base_from = (
            "FROM dadata_result d "
            "LEFT JOIN ai_analysis_queue q ON q.inn = d.inn "
            "LEFT JOIN company_analysis_state s ON s.inn = d.inn "
            f"WHERE {where_sql}"
        )
        count_sql = text(f"SELECT COUNT(*)::int AS cnt {base_from}")
        data_sql = text(
            f"SELECT d.inn {base_from} "
            "ORDER BY COALESCE(q.queued_at, s.last_started_at) NULLS LAST, d.inn "
            "LIMIT :limit"
        )

        async def _action(conn: AsyncConnection) -> tuple[int, list[str]]:
            total = (await conn.execute(count_sql, params)).scalar_one()
            rows = await conn.execute(data_sql, {**params, "limit": flt.limit})
            inns = [str(r[0]).strip() for r in rows.all() if r[0] and str(r[0]).strip()]
            return int(total or 0), list(dict.fromkeys(inns))

        return await run_on_engine(self._engine, _action)
