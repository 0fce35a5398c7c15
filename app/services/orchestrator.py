from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from app.schemas.analysis import QueueItem, QueuePayload
from app.services.event_log import EventLog
from app.services.step_runner import StepResult, StepRunner
from app.services.steps import known_steps, normalize_steps

log = logging.getLogger("services.orchestrator")

TIMEOUT_ERROR = "AI integration timed out"


@dataclass
class AnalysisStores:
    """Хранилища, с которыми работает цикл очереди."""

    queue: Any
    states: Any
    commands: Any
    companies: Any


@dataclass
class RunResult:
    ok: bool
    status: int
    error: Optional[str] = None
    progress: float = 0.0
    completed_steps: list[str] = field(default_factory=list)


@dataclass
class JobOutcome:
    inn: str
    outcome: str  # completed | failed | deferred | stopped
    ok: bool = False
    status: int = 0
    error: Optional[str] = None
    progress: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "inn": self.inn,
            "outcome": self.outcome,
            "ok": self.ok,
            "status": self.status,
            "error": self.error,
            "progress": self.progress,
            "deferred": self.outcome == "deferred",
        }


@dataclass
class RunSummary:
    outcomes: list[JobOutcome] = field(default_factory=list)
    per_step: list[dict[str, Any]] = field(default_factory=list)
    halted_by_failures: bool = False


@dataclass
class _JobProgress:
    """Общий для выполнения и таймаута: что успело завершиться до отмены."""

    progress: float = 0.0
    completed: list[str] = field(default_factory=list)
    results: list[StepResult] = field(default_factory=list)


@dataclass
class _LoopState:
    failed_sequence: set[str] = field(default_factory=set)


class AnalysisOrchestrator:
    """
    Фоновый цикл очереди AI-анализа.

    Под advisory lock по одной берёт компании из ai_analysis_queue (FIFO),
    прогоняет шаги через StepRunner и фиксирует итог в company_analysis_state:
    completed / failed / stopped, либо откладывает в хвост очереди
    (не более max_defers раз). Остановка кооперативная: stop-команды читаются
    до старта компании и после выполнения шагов.
    """

    def __init__(
        self,
        stores: AnalysisStores,
        events: EventLog,
        runner: StepRunner,
        lock,
        *,
        step_timeout_s: float,
        overall_timeout_s: float,
        max_defers: int = 3,
        max_failure_streak: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stores = stores
        self._events = events
        self._runner = runner
        self._lock = lock
        self.step_timeout_s = step_timeout_s
        self.overall_timeout_s = overall_timeout_s
        self.max_defers = max(0, int(max_defers))
        self.max_failure_streak = max(0, int(max_failure_streak))
        self._clock = clock

    async def run(self) -> Optional[RunSummary]:
        """Один проход до опустошения очереди. None — очередь уже обрабатывает другой процесс."""
        if not await self._lock.try_acquire():
            log.info("analysis queue is already being processed, skipping duplicate runner")
            return None

        summary = RunSummary()
        try:
            await self._drain(summary)
            if summary.outcomes:
                await self._events.safe_log(
                    type="notification",
                    message="Фоновый запуск анализа завершён",
                    payload={
                        "results": [o.as_dict() for o in summary.outcomes],
                        "perStep": summary.per_step,
                        "halted": summary.halted_by_failures,
                    },
                )
        except asyncio.CancelledError:
            log.info("analysis loop cancelled")
            raise
        except Exception:
            log.exception("analysis loop failed")
        finally:
            await self._lock.release()
        return summary

    async def _drain(self, summary: RunSummary) -> None:
        state = _LoopState()
        while True:
            item = await self._stores.queue.dequeue_next()
            if item is None:
                break
            try:
                keep_going = await self._process(item, state, summary)
            except (asyncio.CancelledError, Exception):
                await self._return_to_queue(item)
                raise
            if not keep_going:
                break

    async def _return_to_queue(self, item: QueueItem) -> None:
        """Остановка процесса посреди работы: компания возвращается в очередь как была."""
        try:
            await self._stores.queue.enqueue(item.inn, item.payload, item.queued_by)
            await self._stores.states.mark_deferred(item.inn)
            log.info("analysis of %s interrupted by shutdown, returned to queue", item.inn)
        except Exception as exc:  # noqa: BLE001
            log.error("failed to return %s to queue on shutdown: %s", item.inn, exc)

    async def _consume_stops(self) -> set[str]:
        """
        Читает и удаляет stop-команды: такие компании убираются из очереди
        и помечаются stopped. Повторная постановка в очередь после этого
        считается новым запуском.
        """
        fresh = await self._stores.commands.consume_stop()
        if not fresh:
            return set()
        await self._stores.queue.remove(fresh)
        await self._stores.states.mark_stopped(fresh)
        log.info("stop requested for %s", ", ".join(fresh))
        await self._events.safe_log(
            type="notification",
            message="Обнаружены сигналы остановки, часть компаний пропущена",
            payload={"inns": fresh},
        )
        return set(fresh)

    async def _company_name(self, inn: str) -> Optional[str]:
        try:
            names = await self._stores.companies.get_names([inn])
        except Exception as exc:  # noqa: BLE001
            log.warning("company name lookup failed (inn=%s): %s", inn, exc)
            return None
        return names.get(inn) or None

    async def _stop(self, inn: str, name: Optional[str], message: str, summary: RunSummary) -> bool:
        await self._events.safe_log(
            type="notification",
            company_id=inn,
            company_name=name,
            message=message,
            payload={"stopRequested": True},
        )
        await self._stores.states.mark_stopped([inn])
        summary.outcomes.append(JobOutcome(inn=inn, outcome="stopped"))
        return True

    async def _process(self, item: QueueItem, state: _LoopState, summary: RunSummary) -> bool:
        """Обработка одной компании. False — цикл нужно остановить."""
        inn = item.inn
        payload = item.payload

        # только команды, прочитанные после выборки этой компании
        job_stops = await self._consume_stops()
        if inn in job_stops:
            return await self._stop(
                inn, None, "Анализ пропущен из-за запроса на остановку", summary
            )

        steps = normalize_steps(payload.steps) if payload.mode == "steps" else None
        defer_count = payload.defer_count
        attempt_no = defer_count + 1
        company_name = await self._company_name(inn)
        started = self._clock()

        job_stops |= await self._consume_stops()
        if inn in job_stops:
            return await self._stop(
                inn, company_name, "Анализ отменён перед запуском по запросу пользователя", summary
            )

        tracker = _JobProgress()
        if steps is not None:
            tracker.completed = [s for s in known_steps(payload.completed_steps) if s in steps]
            tracker.progress = len(tracker.completed) / len(steps)

        await self._stores.states.mark_running(
            inn,
            stage=self._next_stage(steps, tracker.completed),
            progress=tracker.progress,
        )
        await self._events.safe_log(
            type="notification",
            company_id=inn,
            company_name=company_name,
            notification_key="analysis_start",
        )
        log.info(
            "analysis started: inn=%s mode=%s attempt=%d/%d",
            inn,
            payload.mode,
            attempt_no,
            self.max_defers + 1,
        )

        try:
            result = await asyncio.wait_for(
                self._execute(inn, steps, tracker), timeout=self.overall_timeout_s
            )
        except asyncio.TimeoutError:
            log.warning("analysis of %s timed out after %.1fs", inn, self.overall_timeout_s)
            result = RunResult(
                ok=False,
                status=504,
                error=TIMEOUT_ERROR,
                progress=tracker.progress,
                completed_steps=list(tracker.completed),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            log.exception("analysis of %s failed unexpectedly", inn)
            result = RunResult(
                ok=False,
                status=500,
                error=str(exc) or "AI integration run failed",
                progress=tracker.progress,
                completed_steps=list(tracker.completed),
            )
        finally:
            await self._remove_from_queue(inn)

        if steps is not None:
            summary.per_step.append(
                {"inn": inn, "results": [r.as_dict() for r in tracker.results]}
            )

        job_stops |= await self._consume_stops()
        if inn in job_stops:
            return await self._stop(
                inn, company_name, "Анализ остановлен по запросу пользователя", summary
            )

        if result.ok:
            state.failed_sequence.clear()
        else:
            state.failed_sequence.add(inn)

        duration = int(round(self._clock() - started))

        if (
            not result.ok
            and self.max_failure_streak
            and len(state.failed_sequence) >= self.max_failure_streak
        ):
            await self._stores.states.mark_finished(
                inn,
                status="failed",
                duration_seconds=duration,
                progress=result.progress,
                info=self._info(payload, result, attempt_no),
            )
            await self._events.safe_log(
                type="error",
                company_id=inn,
                company_name=company_name,
                error_key="server_stop",
                message="Анализ остановлен: слишком много ошибок подряд",
                payload={
                    "streak": sorted(state.failed_sequence),
                    "limit": self.max_failure_streak,
                },
            )
            log.error(
                "analysis loop halted: %d companies failed in a row", len(state.failed_sequence)
            )
            summary.outcomes.append(self._outcome(inn, "failed", result))
            summary.halted_by_failures = True
            return False

        if not result.ok and defer_count < self.max_defers:
            next_payload = payload.model_copy(
                update={
                    "defer_count": defer_count + 1,
                    "completed_steps": list(result.completed_steps),
                }
            )
            await self._events.safe_log(
                type="notification",
                company_id=inn,
                company_name=company_name,
                message=(
                    f"Анализ отложен после ошибки "
                    f"(попытка {attempt_no + 1}/{self.max_defers + 1})"
                ),
                payload={"error": result.error, "status": result.status},
            )
            await self._stores.states.mark_deferred(inn)
            await self._stores.queue.enqueue(inn, next_payload, item.queued_by)
            summary.outcomes.append(self._outcome(inn, "deferred", result))
            return True

        info = self._info(payload, result, attempt_no)
        if result.ok:
            await self._stores.states.mark_finished(
                inn, status="completed", duration_seconds=duration, progress=1.0, info=info
            )
            await self._events.safe_log(
                type="notification",
                company_id=inn,
                company_name=company_name,
                notification_key="analysis_success",
                message="Анализ завершён",
            )
            log.info("analysis completed: inn=%s duration=%ss", inn, duration)
            summary.outcomes.append(self._outcome(inn, "completed", result))
        else:
            await self._stores.states.mark_finished(
                inn,
                status="failed",
                duration_seconds=duration,
                progress=result.progress,
                info=info,
            )
            await self._events.safe_log(
                type="error",
                company_id=inn,
                company_name=company_name,
                message=f"Анализ завершён с ошибкой: {result.error or 'неизвестная ошибка'}",
                payload={"status": result.status},
            )
            log.warning("analysis failed: inn=%s status=%s error=%s", inn, result.status, result.error)
            summary.outcomes.append(self._outcome(inn, "failed", result))
        return True

    async def _execute(
        self, inn: str, steps: Optional[list[str]], tracker: _JobProgress
    ) -> RunResult:
        if steps is None:
            res = await self._runner.run_full_pipeline(inn, self.step_timeout_s)
            tracker.results.append(res)
            if res.ok:
                tracker.progress = 1.0
            return RunResult(
                ok=res.ok, status=res.status, error=res.error, progress=tracker.progress
            )

        total = len(steps)
        for step in steps:
            if step in tracker.completed:
                continue
            res = await self._runner.run_step(inn, step, self.step_timeout_s)
            tracker.results.append(res)
            if not res.ok:
                break
            tracker.completed.append(step)
            tracker.progress = max(tracker.progress, len(tracker.completed) / total)
            await self._save_progress(inn, tracker.progress, self._next_stage(steps, tracker.completed))

        ok = len(tracker.completed) == total and all(r.ok for r in tracker.results)
        last = tracker.results[-1] if tracker.results else None
        first_error = next((r.error for r in tracker.results if not r.ok), None)
        return RunResult(
            ok=ok,
            status=last.status if last is not None else 200,
            error=first_error,
            progress=tracker.progress,
            completed_steps=list(tracker.completed),
        )

    async def _save_progress(self, inn: str, progress: float, stage: Optional[str]) -> None:
        try:
            await self._stores.states.update_progress(inn, progress, stage=stage)
        except Exception as exc:  # noqa: BLE001
            log.warning("progress update failed (inn=%s): %s", inn, exc)

    async def _remove_from_queue(self, inn: str) -> None:
        try:
            await self._stores.queue.remove([inn])
        except Exception as exc:  # noqa: BLE001
            log.warning("queue cleanup failed (inn=%s): %s", inn, exc)

    @staticmethod
    def _next_stage(steps: Optional[list[str]], completed: list[str]) -> Optional[str]:
        if steps is None:
            return "pipeline"
        pending = [s for s in steps if s not in completed]
        return pending[0] if pending else steps[-1]

    @staticmethod
    def _info(payload: QueuePayload, result: RunResult, attempt_no: int) -> dict[str, Any]:
        return {
            "mode": payload.mode,
            "steps": payload.steps,
            "completed_steps": list(result.completed_steps),
            "status": result.status,
            "error": result.error,
            "attempt": attempt_no,
            "source": payload.source,
        }

    @staticmethod
    def _outcome(inn: str, outcome: str, result: RunResult) -> JobOutcome:
        return JobOutcome(
            inn=inn,
            outcome=outcome,
            ok=result.ok,
            status=result.status,
            error=result.error,
            progress=result.progress,
        )
