from __future__ import annotations

import asyncio
import pathlib
import sys
from typing import Any

import pytest
from pydantic import ValidationError

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.schemas.events import EventCreate, EventFilter  # noqa: E402
from app.services.event_log import (  # noqa: E402
    EventLog,
    FlagUpdate,
    format_notification_message,
    resolve_template,
)


class _Repo:
    def __init__(self, fail: bool = False) -> None:
        self.rows: list[dict[str, Any]] = []
        self.fail = fail

    async def insert(self, row: dict[str, Any]) -> int:
        if self.fail:
            raise RuntimeError("insert failed")
        self.rows.append(row)
        return len(self.rows)

    async def list(self, flt: EventFilter):
        return [], 0, flt.page, flt.page_size


class _Companies:
    def __init__(self, fail: bool = False) -> None:
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.fail = fail

    async def update_flags(self, inn: str, **flags: Any) -> None:
        if self.fail:
            raise RuntimeError("dadata_result is locked")
        self.updates.append((inn, flags))


def test_notification_templates() -> None:
    assert format_notification_message("analysis_start", "ООО Ромашка") == (
        "Начат анализ компании ООО Ромашка"
    )
    assert format_notification_message("analysis_success", None) == (
        "Удачно завершен анализ компании —"
    )
    assert "не доступен" in format_notification_message("domain_unavailable", "X")
    assert format_notification_message("unknown", "X") == ""


def test_resolve_template_flags() -> None:
    start = EventCreate(type="notification", notification_key="analysis_start", company_name="A")
    message, flags = resolve_template(start)
    assert message == "Начат анализ компании A"
    assert flags == FlagUpdate(server_error=0, analysis_ok=0, touch_started_at=True)

    retry = EventCreate(type="error", error_key="server_retry")
    message, flags = resolve_template(retry)
    assert message == "RU сервер не доступен, делаем попытку"
    assert flags == FlagUpdate(server_error=1, touch_started_at=True)

    plain = EventCreate(type="response", message="ok")
    assert resolve_template(plain) == (None, None)


def test_log_fills_direction_and_template_message() -> None:
    repo, companies = _Repo(), _Companies()
    events = EventLog(repo, companies)

    asyncio.run(
        events.log(
            EventCreate(
                type="notification",
                company_id="7707083893",
                company_name="ПАО Сбербанк",
                notification_key="analysis_success",
            )
        )
    )
    asyncio.run(events.log(EventCreate(type="request", message="GET /health")))

    assert repo.rows[0]["message"] == "Удачно завершен анализ компании ПАО Сбербанк"
    assert repo.rows[0]["direction"] is None
    assert repo.rows[1]["direction"] == "request"
    assert companies.updates == [
        ("7707083893", {"server_error": None, "analysis_ok": 1, "touch_started_at": False})
    ]


def test_explicit_message_wins_over_template() -> None:
    repo = _Repo()
    asyncio.run(
        EventLog(repo).log(
            EventCreate(type="error", error_key="server_stop", message="custom text")
        )
    )
    assert repo.rows[0]["message"] == "custom text"


def test_flag_update_failure_does_not_block_write() -> None:
    repo = _Repo()
    events = EventLog(repo, _Companies(fail=True))

    event_id = asyncio.run(
        events.log(
            EventCreate(type="error", error_key="server_stop", company_id="1")
        )
    )

    assert event_id == 1
    assert repo.rows[0]["message"] == "RU сервер не доступен, остановили анализ"


def test_safe_log_swallows_errors_and_truncates() -> None:
    repo = _Repo()
    events = EventLog(repo)

    asyncio.run(events.safe_log(type="response", message="x" * 5000))
    asyncio.run(events.safe_log(type="bogus"))
    asyncio.run(EventLog(_Repo(fail=True)).safe_log(type="request"))

    assert len(repo.rows) == 1
    assert len(repo.rows[0]["message"]) == 4000
    assert repo.rows[0]["message"].endswith("…")
    assert repo.rows[0]["source"] == "ai-integration"


def test_event_create_accepts_camel_case() -> None:
    entry = EventCreate.model_validate(
        {"type": "notification", "companyId": " 123 ", "notificationKey": "no_domains"}
    )
    assert entry.company_id == "123"
    assert entry.notification_key == "no_domains"


def test_event_create_rejects_unknown_type() -> None:
    with pytest.raises(ValidationError):
        EventCreate.model_validate({"type": "debug"})


def test_list_wraps_response() -> None:
    events = EventLog(_Repo())
    res = asyncio.run(events.list(EventFilter(page=2, page_size=10)))
    assert res.total == 0
    assert res.page == 2
    assert res.page_size == 10
