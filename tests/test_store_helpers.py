from __future__ import annotations

import pathlib
import sys
from datetime import datetime, timezone

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.db.tx import dump_json, load_json  # noqa: E402
from app.repo.events_repo import build_event_where, normalize_paging  # noqa: E402
from app.repo.queue_repo import build_filter_sql  # noqa: E402
from app.repo.state_repo import parse_state_row  # noqa: E402
from app.schemas.analysis import QueueFilterRequest, QueuePayload, normalize_inns  # noqa: E402
from app.schemas.events import EventFilter  # noqa: E402


def test_normalize_inns() -> None:
    assert normalize_inns([" 1 ", 2, None, "", "1", "3"]) == ["1", "2", "3"]
    assert normalize_inns("1,2") == []
    assert normalize_inns(None) == []


def test_queue_payload_from_raw_is_lenient() -> None:
    payload = QueuePayload.from_raw(
        {"mode": "weird", "defer_count": "2", "completed_steps": "lookup", "extra": 1}
    )
    assert payload.mode == "steps"
    assert payload.defer_count == 2
    assert payload.completed_steps == []
    assert payload.model_dump()["extra"] == 1

    assert QueuePayload.from_raw(None) == QueuePayload()
    assert QueuePayload.from_raw({"defer_count": -4}).defer_count == 0


def test_filter_sql_defaults_exclude_queued_and_running() -> None:
    where, params = build_filter_sql(QueueFilterRequest())

    assert "q.inn IS NULL" in where
    assert "'running', 'stopping'" in where
    assert params == {}


def test_filter_sql_with_all_conditions() -> None:
    flt = QueueFilterRequest(
        query="  ромашка ",
        starts_with="77",
        okved="62.01",
        industry_id=5,
        statuses=["not_started", "failed"],
        include_queued=True,
        include_running=True,
    )

    where, params = build_filter_sql(flt)

    assert params == {"q": "%ромашка%", "sw": "77%", "okved": "62.01", "industry_id": 5}
    assert "q.inn IS NULL AND" not in where
    assert "s.status = 'failed'" in where
    assert "s.last_started_at IS NULL" in where


def test_event_where_categories_and_filters() -> None:
    where, params = build_event_where(EventFilter())
    assert where == ""
    assert params == {}

    since = datetime(2024, 1, 1, tzinfo=timezone.utc)
    where, params = build_event_where(
        EventFilter(categories=["error", "notification"], q="timeout", company_id="1", date_from=since)
    )
    assert where.startswith("WHERE (event_type = 'error' OR event_type = 'notification')")
    assert params == {"company_id": "1", "q": "%timeout%", "date_from": since}


def test_event_where_all_categories_means_no_type_filter() -> None:
    where, _ = build_event_where(EventFilter(categories=["traffic", "error", "notification"]))
    assert where == ""


def test_normalize_paging() -> None:
    assert normalize_paging(0, 0) == (1, 1)
    assert normalize_paging("3", "500") == (3, 100)
    assert normalize_paging(None, None) == (1, 50)


def test_parse_state_row() -> None:
    row = {
        "inn": 7707083893,
        "status": None,
        "progress": 1.7,
        "attempts": None,
        "info": '{"status": 504}',
        "analysis_ok": 1,
    }

    state = parse_state_row(row)

    assert state.inn == "7707083893"
    assert state.status == "idle"
    assert state.progress == 1.0
    assert state.attempts == 0
    assert state.info == {"status": 504}
    assert state.analysis_ok is True


def test_json_helpers() -> None:
    assert dump_json(None) is None
    assert dump_json({"name": "Ромашка"}) == '{"name": "Ромашка"}'
    assert load_json(b'{"a": 1}') == {"a": 1}
    assert load_json("not json") is None
    assert load_json([1]) == [1]
