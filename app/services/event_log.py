from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.schemas.events import EventCreate, EventFilter, EventListResponse

log = logging.getLogger("services.event_log")

_MESSAGE_LIMIT = 4000


@dataclass(frozen=True)
class FlagUpdate:
    """Денормализованные флаги компании, которые меняет событие."""

    server_error: Optional[int] = None
    analysis_ok: Optional[int] = None
    touch_started_at: bool = False


def format_notification_message(key: str, company_name: Optional[str]) -> str:
    name = (company_name or "").strip() or "—"
    templates = {
        "analysis_start": f"Начат анализ компании {name}",
        "analysis_success": f"Удачно завершен анализ компании {name}",
        "few_products": f"Сайт компании {name} содержит мало продукции, делаем повторный анализ.",
        "domain_unavailable": f"Сайт компании {name} не доступен, пропускаем домен.",
        "domain_wrong_okved": f"Сайт компании {name} не соответствует ОКВЭД, пропускаем домен.",
        "no_domains": (
            f"Компания {name} не имеет ДОСТУПНЫХ доменов для парсинга, "
            "пропускаем AI-анализ доменов, анализируем по ОКВЭД"
        ),
        "all_domains_wrong": (
            f"Все домены компании {name} не соответствуют ОКВЭД/названию, "
            "анализируем по прямому ОКВЭД"
        ),
        "no_domains_at_all": (
            f"Компания {name} не имеет доменов для парсинга, "
            "пропускаем AI-анализ доменов, анализируем по ОКВЭД"
        ),
    }
    return templates.get(key, "")


def resolve_template(entry: EventCreate) -> tuple[Optional[str], Optional[FlagUpdate]]:
    """Сообщение по шаблону и побочные изменения флагов для известных ключей."""
    if entry.type == "notification" and entry.notification_key:
        message = format_notification_message(entry.notification_key, entry.company_name)
        if entry.notification_key == "analysis_start":
            return message, FlagUpdate(server_error=0, analysis_ok=0, touch_started_at=True)
        if entry.notification_key == "analysis_success":
            return message, FlagUpdate(analysis_ok=1)
        return message, None

    if entry.type == "error" and entry.error_key:
        if entry.error_key == "server_retry":
            return (
                "RU сервер не доступен, делаем попытку",
                FlagUpdate(server_error=1, touch_started_at=True),
            )
        if entry.error_key == "server_stop":
            return "RU сервер не доступен, остановили анализ", FlagUpdate(server_error=1)

    return None, None


def _default_direction(event_type: str) -> Optional[str]:
    if event_type in {"request", "response"}:
        return event_type
    return None


class EventLog:
    """Журнал событий AI-интеграции поверх EventsRepo (+ флаги в CompanyRepo)."""

    def __init__(self, repo, companies=None) -> None:
        self._repo = repo
        self._companies = companies

    async def log(self, entry: EventCreate) -> int:
        template_message, flags = resolve_template(entry)
        row = {
            "event_type": entry.type,
            "source": entry.source,
            "direction": entry.direction or _default_direction(entry.type),
            "request_id": entry.request_id,
            "company_id": entry.company_id,
            "company_name": entry.company_name,
            "message": entry.message or template_message or None,
            "payload": entry.payload,
        }
        event_id = await self._repo.insert(row)

        if flags is not None and entry.company_id and self._companies is not None:
            try:
                await self._companies.update_flags(
                    entry.company_id,
                    server_error=flags.server_error,
                    analysis_ok=flags.analysis_ok,
                    touch_started_at=flags.touch_started_at,
                )
            except Exception as exc:  # noqa: BLE001
                log.warning(
                    "event-log: failed to update company flags (inn=%s): %s",
                    entry.company_id,
                    exc,
                )
        return event_id

    async def safe_log(self, **fields: Any) -> None:
        """Запись события, которая никогда не роняет вызывающий код."""
        message = fields.get("message")
        if isinstance(message, str) and len(message) > _MESSAGE_LIMIT:
            fields["message"] = message[: _MESSAGE_LIMIT - 1] + "…"
        fields.setdefault("source", "ai-integration")
        try:
            await self.log(EventCreate(**fields))
        except Exception as exc:  # noqa: BLE001
            log.warning("event-log: event skipped (%s): %s", fields.get("type"), exc)

    async def list(self, flt: EventFilter) -> EventListResponse:
        items, total, page, page_size = await self._repo.list(flt)
        return EventListResponse(items=items, total=total, page=page, page_size=page_size)

    async def purge(self) -> None:
        await self._repo.purge()
