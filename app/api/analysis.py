from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from app.api.deps import (
    get_event_log,
    get_integration_client,
    get_requested_by,
    get_runner,
    get_stores,
)
from app.config import settings
from app.jobs.analysis_runner import AnalysisRunner
from app.schemas.analysis import (
    CompanyAnalysisState,
    QueueDeleteRequest,
    QueueFilterRequest,
    QueuePayload,
    RunRequest,
    StateResponse,
    StateUpdateRequest,
    StopRequest,
    normalize_inns,
)
from app.services.event_log import EventLog
from app.services.integration_client import IntegrationClient
from app.services.orchestrator import AnalysisStores
from app.services.step_runner import StepRunner
from app.services.steps import build_plan, normalize_steps

log = logging.getLogger("api.analysis")
router = APIRouter(prefix="/analysis", tags=["analysis"])

DEBUG_STEP_SOURCE = "debug-step"


def _fail(status_code: int, error: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def resolve_launch(
    requested_mode: Optional[str], requested_steps: Any, *, debug: bool = False
) -> tuple[str, Optional[list[str]], bool]:
    """
    Итоговые (mode, steps, mode_locked).

    При AI_ANALYSIS_LOCK_MODE режим и шаги берутся из окружения; отладочный
    запуск одного шага блокировку игнорирует.
    """
    mode_locked = False if debug else bool(settings.AI_ANALYSIS_LOCK_MODE)
    if mode_locked:
        mode = settings.forced_launch_mode
    elif debug:
        mode = "steps"
    else:
        mode = "full" if requested_mode == "full" else "steps"

    if mode != "steps":
        return mode, None, mode_locked
    if mode_locked:
        return mode, settings.forced_steps, mode_locked
    steps = normalize_steps(requested_steps)
    return mode, (steps[:1] if debug else steps), mode_locked


def _split_inns(*values: Optional[list[str]]) -> list[str]:
    raw: list[str] = []
    for value in values:
        for chunk in value or []:
            raw.extend(str(chunk).split(","))
    return normalize_inns(raw)


@router.post("/run", summary="Поставить компании в очередь AI-анализа")
async def run_analysis(
    body: RunRequest,
    stores: AnalysisStores = Depends(get_stores),
    events: EventLog = Depends(get_event_log),
    client: Optional[IntegrationClient] = Depends(get_integration_client),
    runner: AnalysisRunner = Depends(get_runner),
    requested_by: Optional[str] = Depends(get_requested_by),
) -> JSONResponse:
    inns = normalize_inns(body.inns)
    if not inns:
        return _fail(status.HTTP_400_BAD_REQUEST, "Нет компаний для запуска")

    if client is None:
        return _fail(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "AI integration base URL is not configured "
            "(set AI_INTEGRATION_BASE или AI_ANALYZE_BASE/ANALYZE_BASE)",
        )

    await events.safe_log(
        type="request",
        message="Проверка доступности AI integration перед запуском",
        payload={"path": "/health", "method": "GET"},
    )
    health = await client.health(timeout=settings.health_timeout_s)
    await events.safe_log(
        type="response" if health.ok else "error",
        message=(
            "AI integration доступна перед запуском"
            if health.ok
            else f"AI integration недоступна перед запуском: {health.error}"
        ),
        payload={
            "path": "/health",
            "status": health.status,
            "data": health.data if health.ok else None,
        },
    )
    if not health.ok:
        return _fail(status.HTTP_502_BAD_GATEWAY, f"AI integration недоступна: {health.error}")

    payload_raw = dict(body.payload or {})
    source = body.source or (
        payload_raw.get("source") if isinstance(payload_raw.get("source"), str) else None
    ) or "manual"
    is_debug = source == DEBUG_STEP_SOURCE
    mode, steps, mode_locked = resolve_launch(body.mode, body.steps, debug=is_debug)
    integration = {
        "base": client.base_url,
        "mode": mode,
        "mode_locked": mode_locked,
        "steps": steps,
    }

    if is_debug and len(inns) == 1 and steps:
        return await _run_debug_step(inns[0], steps[0], client, events, requested_by, integration)

    payload = QueuePayload.model_validate(
        {
            **payload_raw,
            "source": source,
            "count": len(inns),
            "requested_at": _now_iso(),
            "mode": mode,
            "steps": steps,
            "defer_count": 0,
            "completed_steps": [],
        }
    )
    await stores.commands.discard_stops(inns)
    await stores.queue.enqueue_many(inns, payload, requested_by)
    await events.safe_log(
        type="notification",
        message="Компании поставлены в очередь на AI-анализ",
        payload={
            "inns": inns,
            "requestedBy": requested_by,
            "mode": mode,
            "steps": steps,
            "source": source,
        },
    )
    await stores.states.mark_queued_many(inns)

    integration["plan"] = build_plan(mode, steps, inns[0])
    runner.schedule()
    log.info("queued %d companies for analysis (mode=%s, by=%s)", len(inns), mode, requested_by)

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "ok": True,
            "queued": len(inns),
            "mode": mode,
            "steps": steps,
            "integration": integration,
        },
    )


async def _run_debug_step(
    inn: str,
    step: str,
    client: IntegrationClient,
    events: EventLog,
    requested_by: Optional[str],
    integration: dict[str, Any],
) -> JSONResponse:
    """Один шаг для одной компании синхронно, мимо очереди."""
    await events.safe_log(
        type="notification",
        company_id=inn,
        message="Запуск одиночного шага для отладки (без очереди)",
        payload={"step": step, "requestedBy": requested_by, "source": DEBUG_STEP_SOURCE},
    )
    runner = StepRunner(
        client,
        events,
        max_attempts=settings.AI_ANALYSIS_MAX_STEP_ATTEMPTS,
        retry_delay_s=settings.retry_delay_s,
        health_timeout_s=settings.health_timeout_s,
    )
    result = await runner.run_step(inn, step, settings.step_timeout_s)
    await events.safe_log(
        type="response" if result.ok else "error",
        company_id=inn,
        message=(
            f"Шаг {step} завершился успешно (debug)"
            if result.ok
            else f"Шаг {step} завершился ошибкой (debug): {result.error or 'unknown'}"
        ),
        payload={"status": result.status},
    )
    return JSONResponse(
        content={
            "ok": result.ok,
            "status": result.status,
            "error": result.error,
            "mode": integration["mode"],
            "steps": integration["steps"],
            "integration": integration,
        }
    )


@router.get("/queue", summary="Очередь и компании в работе")
async def list_queue(
    limit: int = Query(200, ge=1, le=1000),
    stores: AnalysisStores = Depends(get_stores),
) -> dict[str, Any]:
    items = await stores.queue.list_items(limit)
    return {"ok": True, "items": items}


@router.post("/queue", summary="Массовая постановка в очередь по фильтрам")
async def enqueue_by_filter(
    body: QueueFilterRequest,
    stores: AnalysisStores = Depends(get_stores),
    events: EventLog = Depends(get_event_log),
    client: Optional[IntegrationClient] = Depends(get_integration_client),
    runner: AnalysisRunner = Depends(get_runner),
    requested_by: Optional[str] = Depends(get_requested_by),
) -> JSONResponse:
    total, inns = await stores.queue.select_by_filter(body)
    if body.dry_run:
        return JSONResponse(content={"ok": True, "total": total, "inns": inns})

    if not inns:
        return _fail(status.HTTP_400_BAD_REQUEST, "Нет компаний по заданным условиям")
    if client is None:
        return _fail(
            status.HTTP_503_SERVICE_UNAVAILABLE, "AI integration base URL is not configured"
        )

    mode, steps, _ = resolve_launch(body.mode, body.steps)
    payload = QueuePayload.model_validate(
        {
            "source": "filter",
            "requested_at": _now_iso(),
            "requested_by": requested_by,
            "count": len(inns),
            "mode": mode,
            "steps": steps,
        }
    )
    await stores.commands.discard_stops(inns)
    await stores.queue.enqueue_many(inns, payload, requested_by)
    await stores.states.mark_queued_many(inns)
    await events.safe_log(
        type="notification",
        message="Компании поставлены в очередь на AI-анализ по фильтру",
        payload={"count": len(inns), "total": total, "requestedBy": requested_by, "mode": mode},
    )
    runner.schedule()
    return JSONResponse(content={"ok": True, "queued": len(inns), "total": total})


@router.delete("/queue", summary="Удалить компании из очереди")
async def remove_from_queue(
    body: QueueDeleteRequest,
    stores: AnalysisStores = Depends(get_stores),
) -> JSONResponse:
    inns = normalize_inns(body.inns)
    if not inns:
        return _fail(status.HTTP_400_BAD_REQUEST, "Не переданы компании для удаления из очереди")

    removed = await stores.queue.remove(inns)
    await stores.states.reset(inns)
    try:
        await stores.companies.reset_flags(inns)
    except Exception as exc:  # noqa: BLE001
        log.warning("queue delete: failed to reset company flags: %s", exc)
    return JSONResponse(content={"ok": True, "removed": removed})


@router.post("/stop", summary="Остановить анализ компаний")
async def stop_analysis(
    body: StopRequest,
    stores: AnalysisStores = Depends(get_stores),
    events: EventLog = Depends(get_event_log),
    requested_by: Optional[str] = Depends(get_requested_by),
) -> JSONResponse:
    inns = normalize_inns(body.inns)
    payload_raw = dict(body.payload or {})
    source = payload_raw.get("source") if isinstance(payload_raw.get("source"), str) else None
    payload: dict[str, Any] = {
        **payload_raw,
        "requested_by": requested_by,
        "requested_at": _now_iso(),
        "source": source or "manual",
        "inns": inns,
    }

    removed = 0
    if inns:
        removed = await stores.queue.remove(inns)
        payload["removed_from_queue"] = removed

    await stores.commands.push_stop(payload)
    items = await stores.states.request_stop(inns)
    await events.safe_log(
        type="notification",
        message="Запрошена остановка анализа",
        payload=payload,
    )
    log.info("stop requested for %d companies (removed from queue: %d)", len(inns), removed)
    return JSONResponse(
        content={
            "ok": True,
            "removed": removed,
            "items": [item.model_dump(mode="json") for item in items],
        }
    )


@router.get("/state", response_model=StateResponse, summary="Состояние анализа по компаниям")
async def get_state(
    inn: Optional[list[str]] = Query(None),
    inns: Optional[list[str]] = Query(None),
    stores: AnalysisStores = Depends(get_stores),
) -> StateResponse:
    requested = _split_inns(inn, inns)
    if not requested:
        return StateResponse(items=[])
    found = {item.inn: item for item in await stores.states.get_many(requested)}
    return StateResponse(
        items=[found.get(value) or CompanyAnalysisState(inn=value) for value in requested]
    )


@router.post("/update", summary="Ручное обновление состояния анализа")
async def update_state(
    body: StateUpdateRequest,
    stores: AnalysisStores = Depends(get_stores),
) -> JSONResponse:
    item = await stores.states.update(body)
    if item is None:
        return _fail(status.HTTP_404_NOT_FOUND, "Компания не найдена или нечего обновлять")
    return JSONResponse(content={"ok": True, "item": item.model_dump(mode="json")})
