from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import settings
from app.db.postgres import DatabaseNotConfigured, require_postgres_engine
from app.db.schema import ensure_analysis_schema
from app.jobs.analysis_runner import AnalysisRunner, get_analysis_runner
from app.repo.commands_repo import CommandsRepo
from app.repo.company_repo import CompanyRepo
from app.repo.events_repo import EventsRepo
from app.repo.queue_repo import QueueRepo
from app.repo.state_repo import StateRepo
from app.services.event_log import EventLog
from app.services.integration_client import IntegrationClient, get_integration_base
from app.services.orchestrator import AnalysisStores


async def get_engine() -> AsyncEngine:
    try:
        engine = require_postgres_engine()
    except DatabaseNotConfigured as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    await ensure_analysis_schema(engine)
    return engine


def get_stores(engine: AsyncEngine = Depends(get_engine)) -> AnalysisStores:
    return AnalysisStores(
        queue=QueueRepo(engine),
        states=StateRepo(engine),
        commands=CommandsRepo(engine),
        companies=CompanyRepo(engine),
    )


def get_event_log(engine: AsyncEngine = Depends(get_engine)) -> EventLog:
    return EventLog(EventsRepo(engine), CompanyRepo(engine))


def get_integration_client() -> Optional[IntegrationClient]:
    """None, если базовый URL AI integration не настроен."""
    base = get_integration_base()
    return IntegrationClient(base) if base else None


def get_runner() -> AnalysisRunner:
    return get_analysis_runner()


def get_requested_by(x_user_login: Optional[str] = Header(None)) -> Optional[str]:
    login = (x_user_login or "").strip()
    return login or None


def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    expected = settings.AI_ANALYSIS_ADMIN_KEY
    if not expected or not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
