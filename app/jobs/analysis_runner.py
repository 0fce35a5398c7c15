from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from app.config import settings
from app.db.postgres import require_postgres_engine
from app.repo.commands_repo import CommandsRepo
from app.repo.company_repo import CompanyRepo
from app.repo.events_repo import EventsRepo
from app.repo.queue_repo import QueueRepo
from app.repo.state_repo import StateRepo
from app.services.event_log import EventLog
from app.services.integration_client import IntegrationClient, get_integration_base
from app.services.orchestrator import AnalysisOrchestrator, AnalysisStores, RunSummary
from app.services.runner_lock import AdvisoryLock
from app.services.step_runner import StepRunner

log = logging.getLogger("jobs.analysis_runner")

RunOnce = Callable[[], Awaitable[Optional[RunSummary]]]


def build_orchestrator() -> AnalysisOrchestrator:
    """Собирает оркестратор из настроек процесса (DSN, базовый URL, таймауты)."""
    engine = require_postgres_engine()
    base = get_integration_base()
    if not base:
        raise RuntimeError("AI integration base URL is not configured")

    companies = CompanyRepo(engine)
    events = EventLog(EventsRepo(engine), companies)
    stores = AnalysisStores(
        queue=QueueRepo(engine),
        states=StateRepo(engine),
        commands=CommandsRepo(engine),
        companies=companies,
    )
    runner = StepRunner(
        IntegrationClient(base),
        events,
        max_attempts=settings.AI_ANALYSIS_MAX_STEP_ATTEMPTS,
        retry_delay_s=settings.retry_delay_s,
        health_timeout_s=settings.health_timeout_s,
    )
    return AnalysisOrchestrator(
        stores,
        events,
        runner,
        AdvisoryLock(engine, settings.AI_ANALYSIS_LOCK_KEY),
        step_timeout_s=settings.step_timeout_s,
        overall_timeout_s=settings.overall_timeout_s,
        max_defers=settings.AI_ANALYSIS_MAX_DEFERS,
        max_failure_streak=settings.AI_ANALYSIS_MAX_FAILURE_STREAK,
    )


async def run_analysis_once() -> Optional[RunSummary]:
    return await build_orchestrator().run()


class AnalysisRunner:
    """
    Фоновая задача цикла очереди с отслеживаемым жизненным циклом.

    API отвечает сразу и вызывает schedule(); если задача уже идёт в этом
    процессе, ставится флаг повторного прохода, чтобы свежие компании
    не ждали следующего запроса. shutdown() отменяет задачу и дожидается её.
    """

    def __init__(self, run_once: RunOnce = run_analysis_once) -> None:
        self._run_once = run_once
        self._task: Optional[asyncio.Task] = None
        self._rerun = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> bool:
        """True — запущена новая задача, False — отмечен повторный проход текущей."""
        if self.active:
            self._rerun = True
            return False
        self._rerun = False
        self._task = asyncio.create_task(self._loop(), name="ai-analysis-runner")
        return True

    async def _loop(self) -> None:
        while True:
            self._rerun = False
            try:
                summary = await self._run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Background AI analysis run failed")
                return
            if summary is None or not self._rerun:
                return
            log.info("analysis runner: new work arrived during the run, draining again")

    async def wait(self) -> None:
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        log.info("analysis runner stopped")


_runner: Optional[AnalysisRunner] = None


def get_analysis_runner() -> AnalysisRunner:
    global _runner
    if _runner is None:
        _runner = AnalysisRunner()
    return _runner
