# app/db/schema.py
from __future__ import annotations

import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

log = logging.getLogger("db.schema")

_schema_lock = asyncio.Lock()
_schema_ready: set[int] = set()

# Порядок важен: таблицы создаются до индексов, внешняя dadata_result трогается
# только если она уже существует (её создаёт каталог, а не этот сервис).
_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS ai_analysis_queue (
        inn text PRIMARY KEY,
        queued_at timestamptz NOT NULL DEFAULT now(),
        queued_by text,
        payload jsonb
    )
    """,
    "ALTER TABLE ai_analysis_queue ADD COLUMN IF NOT EXISTS queued_by text",
    "ALTER TABLE ai_analysis_queue ADD COLUMN IF NOT EXISTS payload jsonb",
    "CREATE INDEX IF NOT EXISTS idx_ai_analysis_queue_queued_at ON ai_analysis_queue (queued_at)",
    """
    CREATE TABLE IF NOT EXISTS ai_analysis_commands (
        id bigserial PRIMARY KEY,
        action text NOT NULL,
        payload jsonb,
        created_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS company_analysis_state (
        inn text PRIMARY KEY,
        status text NOT NULL DEFAULT 'idle',
        stage text NULL,
        progress double precision NOT NULL DEFAULT 0,
        last_started_at timestamptz NULL,
        last_finished_at timestamptz NULL,
        duration_seconds integer NULL,
        attempts integer NOT NULL DEFAULT 0,
        stop_requested boolean NOT NULL DEFAULT FALSE,
        analysis_ok boolean NOT NULL DEFAULT FALSE,
        server_error boolean NOT NULL DEFAULT FALSE,
        no_valid_site boolean NOT NULL DEFAULT FALSE,
        info jsonb NOT NULL DEFAULT '{}'::jsonb,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_company_analysis_state_status ON company_analysis_state (status)",
    """
    CREATE TABLE IF NOT EXISTS ai_debug_events (
        id bigserial PRIMARY KEY,
        created_at timestamptz NOT NULL DEFAULT now(),
        event_type text NOT NULL,
        source text,
        direction text,
        request_id text,
        company_id text,
        company_name text,
        message text,
        payload jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ai_debug_events_created_at ON ai_debug_events (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_ai_debug_events_type ON ai_debug_events (event_type)",
    "CREATE INDEX IF NOT EXISTS idx_ai_debug_events_request_id ON ai_debug_events (request_id)",
    "CREATE INDEX IF NOT EXISTS idx_ai_debug_events_company_id ON ai_debug_events (company_id)",
    "ALTER TABLE IF EXISTS dadata_result ADD COLUMN IF NOT EXISTS server_error int",
    "ALTER TABLE IF EXISTS dadata_result ADD COLUMN IF NOT EXISTS analysis_ok int",
    "ALTER TABLE IF EXISTS dadata_result ADD COLUMN IF NOT EXISTS analysis_started_at timestamptz",
)


async def ensure_analysis_schema(engine: AsyncEngine) -> bool:
    """
    Идемпотентно создаёт таблицы очереди, команд, состояний и журнала.
    Выполняется один раз на процесс (на движок); повторные вызовы — no-op.
    Возвращает True, если DDL выполнялся в этом вызове.
    """
    key = id(engine)
    if key in _schema_ready:
        return False
    async with _schema_lock:
        if key in _schema_ready:
            return False
        async with engine.begin() as conn:
            for statement in _DDL:
                await conn.execute(text(statement))
        _schema_ready.add(key)
    log.info("analysis schema ensured (%s statements)", len(_DDL))
    return True
