from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

AnalysisMode = Literal["full", "steps"]
AnalysisStatus = Literal["idle", "queued", "running", "stopping", "stopped", "completed", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "stopped"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"queued", "running", "stopping"})


def normalize_inns(raw: Any) -> list[str]:
    """Уникальные непустые ИНН в порядке появления."""
    if not isinstance(raw, (list, tuple)):
        return []
    seen: dict[str, None] = {}
    for value in raw:
        inn = "" if value is None else str(value).strip()
        if inn:
            seen.setdefault(inn, None)
    return list(seen)


class QueuePayload(BaseModel):
    """Полезная нагрузка строки ai_analysis_queue.payload."""

    model_config = ConfigDict(extra="allow")

    source: str = "manual"
    mode: AnalysisMode = "steps"
    steps: Optional[list[str]] = None
    defer_count: int = Field(0, ge=0)
    completed_steps: list[str] = Field(default_factory=list)
    requested_at: Optional[str] = None
    count: Optional[int] = None

    @field_validator("mode", mode="before")
    @classmethod
    def _coerce_mode(cls, value: Any) -> str:
        return "full" if value == "full" else "steps"

    @field_validator("defer_count", mode="before")
    @classmethod
    def _coerce_defer(cls, value: Any) -> int:
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            return 0

    @field_validator("completed_steps", mode="before")
    @classmethod
    def _coerce_completed(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return [str(v) for v in value if v]

    @classmethod
    def from_raw(cls, raw: Any) -> "QueuePayload":
        """Мягкий разбор: битый payload из БД превращается в payload по умолчанию."""
        if not isinstance(raw, dict):
            return cls()
        try:
            return cls.model_validate(raw)
        except ValidationError:
            return cls()


class QueueItem(BaseModel):
    inn: str
    queued_at: Optional[datetime] = None
    queued_by: Optional[str] = None
    payload: QueuePayload = Field(default_factory=QueuePayload)


class CompanyAnalysisState(BaseModel):
    inn: str = Field(..., description="ИНН компании")
    status: AnalysisStatus = Field("idle", description="Статус жизненного цикла анализа")
    stage: Optional[str] = Field(None, description="Текущий шаг")
    progress: float = Field(0.0, ge=0.0, le=1.0, description="Прогресс в диапазоне [0..1]")
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    duration_seconds: Optional[int] = Field(None, ge=0)
    attempts: int = Field(0, ge=0, description="Сколько раз начиналась обработка")
    stop_requested: bool = False
    analysis_ok: bool = False
    server_error: bool = False
    no_valid_site: bool = False
    info: Optional[dict[str, Any]] = None


class RunRequest(BaseModel):
    inns: list[Any] = Field(default_factory=list)
    payload: Optional[dict[str, Any]] = None
    mode: Optional[str] = None
    steps: Optional[list[Any]] = None
    source: Optional[str] = None


class StopRequest(BaseModel):
    inns: list[Any] = Field(default_factory=list)
    payload: Optional[dict[str, Any]] = None


class QueueDeleteRequest(BaseModel):
    inns: list[Any] = Field(default_factory=list)


class QueueFilterRequest(BaseModel):
    """Параметры массовой постановки в очередь по фильтрам каталога."""

    query: Optional[str] = None
    starts_with: Optional[str] = None
    okved: Optional[str] = None
    industry_id: Optional[int] = None
    statuses: list[Literal["not_started", "failed", "partial", "completed"]] = Field(
        default_factory=list
    )
    include_queued: bool = False
    include_running: bool = False
    limit: int = Field(200, ge=1, le=1000)
    dry_run: bool = False
    mode: Optional[AnalysisMode] = None
    steps: Optional[list[Any]] = None

    @field_validator("query", "starts_with", "okved", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None


class StateUpdateRequest(BaseModel):
    """Ручное обновление состояния (для внешних воркеров)."""

    inn: str = Field(..., min_length=1)
    status: Optional[AnalysisStatus] = None
    stage: Optional[str] = None
    progress: Optional[float] = Field(None, ge=0.0, le=1.0)
    analysis_ok: Optional[bool] = None
    server_error: Optional[bool] = None
    no_valid_site: Optional[bool] = None
    info: Optional[dict[str, Any]] = None
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    duration_seconds: Optional[int] = Field(None, ge=0)
    stop_requested: Optional[bool] = None

    @field_validator("inn")
    @classmethod
    def _strip_inn(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("inn must not be empty")
        return value


class StateResponse(BaseModel):
    ok: bool = True
    items: list[CompanyAnalysisState] = Field(default_factory=list)
