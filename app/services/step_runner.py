from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from app.services.integration_client import IntegrationClient, IntegrationResponse
from app.services.steps import (
    FULL_PIPELINE_LABEL,
    FULL_PIPELINE_PATH,
    STEP_DEFINITIONS,
    StepAttempt,
)

log = logging.getLogger("services.step_runner")

# Только эти статусы означают «не тот метод/путь» и дают право на fallback
FALLBACK_STATUSES = frozenset({404, 405})

FULL_PIPELINE_ATTEMPT = StepAttempt(FULL_PIPELINE_PATH, FULL_PIPELINE_LABEL, "POST", True)


@dataclass
class StepResult:
    step: Optional[str]
    ok: bool
    status: int
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {"step": self.step, "ok": self.ok, "status": self.status, "error": self.error}


def new_request_id() -> str:
    return f"ai-{uuid.uuid4().hex[:16]}"


class StepRunner:
    """
    Выполнение шагов пайплайна во внешнем AI integration сервисе.

    Каждый раунд: /health -> основной вызов -> fallback'и (только после 404/405).
    Между раундами пауза retry_delay_s. Исключения наружу не выходят: любой
    сбой превращается в StepResult(ok=False).
    """

    def __init__(
        self,
        client: IntegrationClient,
        events,
        *,
        max_attempts: int = 5,
        retry_delay_s: float = 2.0,
        health_timeout_s: float = 3.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._events = events
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_s = max(0.0, float(retry_delay_s))
        self.health_timeout_s = health_timeout_s
        self._sleep = sleep

    async def ensure_healthy(
        self, inn: Optional[str], label: str, attempt: int
    ) -> IntegrationResponse:
        await self._events.safe_log(
            type="request",
            company_id=inn,
            message=f"Проверка /health перед шагом {label} ({attempt}/{self.max_attempts})",
            payload={"path": "/health", "method": "GET"},
        )
        health = await self._client.health(timeout=self.health_timeout_s)
        if not health.ok:
            await self._events.safe_log(
                type="error",
                company_id=inn,
                message=(
                    f"AI integration недоступна перед шагом {label}: {health.error} "
                    f"(попытка {attempt}/{self.max_attempts})"
                ),
                payload={"path": "/health", "status": health.status},
            )
            return health
        await self._events.safe_log(
            type="response",
            company_id=inn,
            message=f"Health ok перед шагом {label}",
            payload={"path": "/health", "status": health.status, "data": health.data},
        )
        return health

    async def _call_attempt(
        self,
        inn: str,
        label: str,
        attempt: StepAttempt,
        round_no: int,
        timeout: float,
    ) -> IntegrationResponse:
        request_id = new_request_id()
        path = attempt.path(inn)
        body = attempt.body(inn)
        await self._events.safe_log(
            type="request",
            request_id=request_id,
            company_id=inn,
            message=f"Старт шага: {label} ({attempt.label}), попытка {round_no}/{self.max_attempts}",
            payload={"path": path, "method": attempt.method, "body": body},
        )
        res = await self._client.call(path, method=attempt.method, json_body=body, timeout=timeout)
        if res.ok:
            await self._events.safe_log(
                type="response",
                request_id=request_id,
                company_id=inn,
                message=f"Шаг успешно принят: {label} ({attempt.label})",
                payload={"path": path, "method": attempt.method, "status": res.status, "data": res.data},
            )
        else:
            await self._events.safe_log(
                type="error",
                request_id=request_id,
                company_id=inn,
                message=f"Ошибка шага {label} ({attempt.label}): {res.error}",
                payload={"path": path, "method": attempt.method, "status": res.status},
            )
        return res

    async def _run_rounds(
        self,
        inn: str,
        step: Optional[str],
        label: str,
        attempts: tuple[StepAttempt, ...],
        timeout: float,
    ) -> StepResult:
        last_status = 0
        last_error: Optional[str] = None

        for round_no in range(1, self.max_attempts + 1):
            health = await self.ensure_healthy(inn, label, round_no)
            if not health.ok:
                last_status, last_error = health.status, health.error
            else:
                for attempt in attempts:
                    res = await self._call_attempt(inn, label, attempt, round_no, timeout)
                    last_status = res.status
                    if res.ok:
                        return StepResult(step=step, ok=True, status=res.status)
                    last_error = res.error
                    if res.status not in FALLBACK_STATUSES:
                        break

            if round_no < self.max_attempts:
                log.info(
                    "step %s for %s failed (round %d/%d, status=%s), retrying",
                    step or "pipeline",
                    inn,
                    round_no,
                    self.max_attempts,
                    last_status,
                )
                await self._events.safe_log(
                    type="notification",
                    company_id=inn,
                    message=(
                        f"Повтор шага {label} через {round(self.retry_delay_s)}с "
                        f"({round_no}/{self.max_attempts})"
                    ),
                    payload={"lastStatus": last_status, "lastError": last_error},
                )
                await self._sleep(self.retry_delay_s)

        log.warning(
            "step %s for %s exhausted %d rounds: status=%s error=%s",
            step or "pipeline",
            inn,
            self.max_attempts,
            last_status,
            last_error,
        )
        return StepResult(step=step, ok=False, status=last_status, error=last_error or "Unknown error")

    async def run_step(self, inn: str, step: str, timeout: float) -> StepResult:
        definition = STEP_DEFINITIONS[step]
        return await self._run_rounds(inn, step, definition.label, definition.attempts(), timeout)

    async def run_full_pipeline(self, inn: str, timeout: float) -> StepResult:
        return await self._run_rounds(
            inn, None, FULL_PIPELINE_LABEL, (FULL_PIPELINE_ATTEMPT,), timeout
        )
