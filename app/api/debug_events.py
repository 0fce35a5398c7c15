from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.api.deps import get_event_log, require_admin
from app.schemas.events import EventCreate, EventFilter, EventListResponse
from app.services.event_log import EventLog

log = logging.getLogger("api.debug-events")
router = APIRouter(prefix="/debug/events", tags=["debug-events"])

_CATEGORIES = ("traffic", "error", "notification")


def parse_categories(values: Optional[list[str]]) -> list[str]:
    """`category=traffic,error` и повторяющийся `category` — неизвестные значения игнорируются."""
    found: list[str] = []
    for value in values or []:
        for part in str(value).split(","):
            key = part.strip().lower()
            if key in _CATEGORIES and key not in found:
                found.append(key)
    return found


@router.get("", response_model=EventListResponse, summary="Журнал AI-интеграции")
async def list_events(
    category: Optional[list[str]] = Query(None),
    q: Optional[str] = Query(None),
    company_id: Optional[str] = Query(None, alias="companyId"),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    page: int = Query(1),
    page_size: int = Query(50, alias="pageSize"),
    events: EventLog = Depends(get_event_log),
) -> EventListResponse:
    flt = EventFilter(
        categories=parse_categories(category),
        q=(q or "").strip() or None,
        company_id=(company_id or "").strip() or None,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
    )
    return await events.list(flt)


@router.post("", summary="Добавить событие в журнал")
async def create_event(
    body: Any = Body(None),
    events: EventLog = Depends(get_event_log),
) -> JSONResponse:
    if not isinstance(body, dict):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": "Invalid payload"},
        )
    try:
        entry = EventCreate.model_validate(body)
    except ValidationError as exc:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "ok": False,
                "error": "Invalid payload",
                "details": exc.errors(include_url=False, include_context=False, include_input=False),
            },
        )
    event_id = await events.log(entry)
    return JSONResponse(content={"ok": True, "id": event_id})


@router.delete("", dependencies=[Depends(require_admin)], summary="Очистить журнал")
async def purge_events(events: EventLog = Depends(get_event_log)) -> dict[str, Any]:
    await events.purge()
    log.warning("debug events purged by admin request")
    return {"ok": True}
