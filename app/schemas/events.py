from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

EventType = Literal["request", "response", "error", "notification"]
EventDirection = Literal["request", "response"]
EventCategory = Literal["traffic", "error", "notification"]

NotificationKey = Literal[
    "analysis_start",
    "analysis_success",
    "few_products",
    "domain_unavailable",
    "domain_wrong_okved",
    "no_domains",
    "all_domains_wrong",
    "no_domains_at_all",
]
ErrorKey = Literal["server_retry", "server_stop"]


class EventCreate(BaseModel):
    """Событие журнала AI-интеграции (вход для записи, принимает и camelCase)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: EventType
    source: Optional[str] = Field(None, max_length=128)
    direction: Optional[EventDirection] = None
    request_id: Optional[str] = Field(None, max_length=128)
    company_id: Optional[str] = Field(None, max_length=128)
    company_name: Optional[str] = Field(None, max_length=512)
    message: Optional[str] = Field(None, max_length=4000)
    payload: Any = None
    notification_key: Optional[NotificationKey] = None
    error_key: Optional[ErrorKey] = None
    attempt: Optional[int] = Field(None, ge=1, le=10)

    @field_validator("source", "request_id", "company_id", "company_name", "message", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class EventRecord(BaseModel):
    id: int
    created_at: datetime
    event_type: EventType
    source: Optional[str] = None
    direction: Optional[EventDirection] = None
    request_id: Optional[str] = None
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    message: Optional[str] = None
    payload: Any = None


class EventFilter(BaseModel):
    categories: list[EventCategory] = Field(default_factory=list)
    q: Optional[str] = None
    company_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    page: int = 1
    page_size: int = 50


class EventListResponse(BaseModel):
    items: list[EventRecord]
    total: int
    page: int
    page_size: int
