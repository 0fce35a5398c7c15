# app/repo/state_repo.py
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.types import String

from app.db.tx import dump_json, load_json, run_on_engine
from app.schemas.analysis import CompanyAnalysisState, StateUpdateRequest

log = logging.getLogger("repo.state")

_COLUMNS = (
    "inn, status, stage, progress, last_started_at, last_finished_at, duration_seconds, "
    "attempts, stop_requested, analysis_ok, server_error, no_valid_site, info"
)


def _expanding(sql: str):
    return text(sql).bindparams(bindparam("inns", expanding=True, type_=String()))


_SELECT_SQL = _expanding(
    f"SELECT {_COLUMNS} FROM company_analysis_state WHERE inn IN :inns"
)

_QUEUE_MANY_SQL = text(
    f"""
    INSERT INTO company_analysis_state (inn, status, stage, progress, attempts, stop_requested)
    VALUES (:inn, 'queued', NULL, 0, 0, FALSE)
    ON CONFLICT (inn) DO UPDATE SET
        status = 'queued',
        stage = NULL,
        progress = 0,
        attempts = 0,
        last_started_at = NULL,
        last_finished_at = NULL,
        duration_seconds = NULL,
        stop_requested = FALSE,
        updated_at = now()
    """
)

_DEFER_SQL = text(
    """
    UPDATE company_analysis_state
    SET status = 'queued',
        last_finished_at = NULL,
        updated_at = now()
    WHERE inn = :inn
    """
)

_RUNNING_SQL = text(
    f"""
    INSERT INTO company_analysis_state (
        inn, status, stage, progress, last_started_at, attempts,
        stop_requested, analysis_ok, server_error, no_valid_site, info
    )
    VALUES (:inn, 'running', :stage, :progress, now(), 1, FALSE, FALSE, FALSE, FALSE, '{{}}'::jsonb)
    ON CONFLICT (inn) DO UPDATE SET
        status = 'running',
        stage = EXCLUDED.stage,
        progress = EXCLUDED.progress,
        last_started_at = now(),
        last_finished_at = NULL,
        duration_seconds = NULL,
        attempts = company_analysis_state.attempts + 1,
        stop_requested = FALSE,
        analysis_ok = FALSE,
        server_error = FALSE,
        no_valid_site = FALSE,
        info = '{{}}'::jsonb,
        updated_at = now()
    """
)

_PROGRESS_SQL = text(
    """
    UPDATE company_analysis_state
    SET progress = GREATEST(progress, :progress),
        stage = COALESCE(:stage, stage),
        updated_at = now()
    WHERE inn = :inn AND status IN ('running', 'stopping')
    """
)

_FINISH_SQL = text(
    """
    UPDATE company_analysis_state
    SET status = :status,
        progress = CASE
            WHEN :status = 'completed' THEN 1
            ELSE COALESCE(CAST(:progress AS double precision), progress)
        END,
        last_finished_at = now(),
        duration_seconds = :duration_seconds,
        analysis_ok = (:status = 'completed'),
        server_error = (:status = 'failed'),
        info = COALESCE(CAST(:info AS jsonb), info),
        stage = CASE WHEN :status = 'completed' THEN NULL ELSE stage END,
        updated_at = now()
    WHERE inn = :inn
    """
)

_STOPPED_SQL = _expanding(
    """
    UPDATE company_analysis_state
    SET status = 'stopped',
        last_finished_at = now(),
        duration_seconds = CASE
            WHEN last_started_at IS NULL THEN duration_seconds
            ELSE GREATEST(0, EXTRACT(EPOCH FROM now() - last_started_at)::int)
        END,
        updated_at = now()
    WHERE inn IN :inns AND status IN ('queued', 'running', 'stopping')
    RETURNING inn
    """
)

_REQUEST_STOP_SQL = _expanding(
    f"""
    UPDATE company_analysis_state
    SET stop_requested = TRUE,
        last_finished_at = CASE WHEN status = 'queued' THEN now() ELSE last_finished_at END,
        status = CASE
            WHEN status = 'running' THEN 'stopping'
            WHEN status = 'queued' THEN 'stopped'
            ELSE status
        END,
        updated_at = now()
    WHERE inn IN :inns AND status IN ('queued', 'running', 'stopping')
    RETURNING {_COLUMNS}
    """
)

_RESET_SQL = _expanding(
    """
    UPDATE company_analysis_state
    SET status = 'idle',
        stage = NULL,
        progress = 0,
        last_started_at = NULL,
        last_finished_at = NULL,
        duration_seconds = NULL,
        attempts = 0,
        stop_requested = FALSE,
        updated_at = now()
    WHERE inn IN :inns
    """
)

_UPDATABLE = (
    "status",
    "stage",
    "progress",
    "analysis_ok",
    "server_error",
    "no_valid_site",
    "info",
    "last_started_at",
    "last_finished_at",
    "duration_seconds",
    "stop_requested",
)


def _clamp_progress(value: Any) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, num))


def parse_state_row(row: Any) -> CompanyAnalysisState:
    info = load_json(row.get("info"))
    return CompanyAnalysisState(
        inn=str(row["inn"]),
        status=row.get("status") or "idle",
        stage=row.get("stage"),
        progress=_clamp_progress(row.get("progress")),
        last_started_at=row.get("last_started_at"),
        last_finished_at=row.get("last_finished_at"),
        duration_seconds=row.get("duration_seconds"),
        attempts=int(row.get("attempts") or 0),
        stop_requested=bool(row.get("stop_requested")),
        analysis_ok=bool(row.get("analysis_ok")),
        server_error=bool(row.get("server_error")),
        no_valid_site=bool(row.get("no_valid_site")),
        info=info if isinstance(info, dict) else None,
    )


class StateRepo:
    """company_analysis_state: жизненный цикл анализа по компании, строки не удаляются."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def _run(self, sql, params) -> None:
        async def _action(conn: AsyncConnection) -> None:
            await conn.execute(sql, params)

        await run_on_engine(self._engine, _action)

    async def get_many(self, inns: list[str]) -> list[CompanyAnalysisState]:
        if not inns:
            return []

        async def _action(conn: AsyncConnection) -> list[CompanyAnalysisState]:
            result = await conn.execute(_SELECT_SQL, {"inns": list(inns)})
            return [parse_state_row(row) for row in result.mappings()]

        return await run_on_engine(self._engine, _action)

    async def mark_queued_many(self, inns: list[str]) -> None:
        if inns:
            await self._run(_QUEUE_MANY_SQL, [{"inn": inn} for inn in inns])

    async def mark_deferred(self, inn: str) -> None:
        await self._run(_DEFER_SQL, {"inn": inn})

    async def mark_running(self, inn: str, *, stage: Optional[str], progress: float) -> None:
        await self._run(_RUNNING_SQL, {"inn": inn, "stage": stage, "progress": _clamp_progress(progress)})

    async def update_progress(self, inn: str, progress: float, *, stage: Optional[str] = None) -> None:
        await self._run(_PROGRESS_SQL, {"inn": inn, "progress": _clamp_progress(progress), "stage": stage})

    async def mark_finished(
        self,
        inn: str,
        *,
        status: str,
        duration_seconds: int,
        progress: Optional[float] = None,
        info: Optional[dict[str, Any]] = None,
    ) -> None:
        if status not in {"completed", "failed"}:
            raise ValueError(f"unsupported terminal status: {status}")
        await self._run(
            _FINISH_SQL,
            {
                "inn": inn,
                "status": status,
                "progress": None if progress is None else _clamp_progress(progress),
                "duration_seconds": max(0, int(duration_seconds)),
                "info": dump_json(info),
            },
        )

    async def mark_stopped(self, inns: list[str]) -> list[str]:
        if not inns:
            return []

        async def _action(conn: AsyncConnection) -> list[str]:
            result = await conn.execute(_STOPPED_SQL, {"inns": list(inns)})
            return [str(r[0]) for r in result.all()]

        return await run_on_engine(self._engine, _action)

    async def request_stop(self, inns: list[str]) -> list[CompanyAnalysisState]:
        """Только queued/running/stopping: завершённые компании запрос на остановку не меняет."""
        if not inns:
            return []

        async def _action(conn: AsyncConnection) -> list[CompanyAnalysisState]:
            result = await conn.execute(_REQUEST_STOP_SQL, {"inns": list(inns)})
            return [parse_state_row(row) for row in result.mappings()]

        return await run_on_engine(self._engine, _action)

    async def reset(self, inns: list[str]) -> None:
        if inns:
            await self._run(_RESET_SQL, {"inns": list(inns)})

    async def update(self, update: StateUpdateRequest) -> Optional[CompanyAnalysisState]:
        fields = update.model_dump(exclude_unset=True, exclude={"inn"})
        sets: list[str] = []
        params: dict[str, Any] = {"inn": update.inn}
        for name in _UPDATABLE:
            if name not in fields:
                continue
            value = fields[name]
            if name == "info":
                sets.append("info = CAST(:info AS jsonb)")
                params["info"] = dump_json(value or {})
                continue
            if name in {"progress", "analysis_ok", "server_error", "no_valid_site", "stop_requested"} and value is None:
                continue
            sets.append(f"{name} = :{name}")
            params[name] = value
        if not sets:
            return None
        sql = text(
            f"UPDATE company_analysis_state SET {', '.join(sets)}, updated_at = now() "
            f"WHERE inn = :inn RETURNING {_COLUMNS}"
        )

        async def _action(conn: AsyncConnection) -> Optional[CompanyAnalysisState]:
            row = (await conn.execute(sql, params)).mappings().first()
            return parse_state_row(row) if row is not None else None

        return await run_on_engine(self._engine, _action)
