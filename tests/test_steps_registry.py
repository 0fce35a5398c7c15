from __future__ import annotations

import pathlib
import sys

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.services.steps import (  # noqa: E402
    DEFAULT_STEPS,
    STEP_DEFINITIONS,
    build_plan,
    known_steps,
    normalize_steps,
)


def test_default_step_order() -> None:
    assert list(DEFAULT_STEPS) == [
        "lookup",
        "parse_site",
        "analyze_json",
        "ib_match",
        "equipment_selection",
    ]
    assert set(STEP_DEFINITIONS) == set(DEFAULT_STEPS)


def test_normalize_steps_cleans_and_dedupes() -> None:
    raw = ["Parse-Site", "lookup", "parse site", "unknown", "LOOKUP", "ib_match"]
    assert normalize_steps(raw) == ["parse_site", "lookup", "ib_match"]


def test_normalize_steps_falls_back_to_defaults() -> None:
    assert normalize_steps(None) == list(DEFAULT_STEPS)
    assert normalize_steps([]) == list(DEFAULT_STEPS)
    assert normalize_steps(["nope"]) == list(DEFAULT_STEPS)
    assert normalize_steps("lookup") == list(DEFAULT_STEPS)


def test_known_steps_keeps_empty_result() -> None:
    assert known_steps([]) == []
    assert known_steps(["analyze-json", "bogus"]) == ["analyze_json"]


def test_step_paths_and_bodies() -> None:
    lookup = STEP_DEFINITIONS["lookup"]
    assert lookup.primary.method == "GET"
    assert lookup.primary.path("7707083893") == "/v1/lookup/7707083893/card"
    assert lookup.primary.body("7707083893") is None
    assert lookup.fallbacks[0].method == "POST"
    assert lookup.fallbacks[0].body("7707083893") == {"inn": "7707083893"}

    ib_match = STEP_DEFINITIONS["ib_match"]
    assert ib_match.primary.path("7707083893") == "/v1/ib-match/by-inn?inn=7707083893"
    assert [fb.path("1") for fb in ib_match.fallbacks] == ["/v1/ib-match", "/v1/ib-match/by-inn"]

    assert STEP_DEFINITIONS["equipment_selection"].fallbacks == ()


def test_step_path_escapes_identifier() -> None:
    attempt = STEP_DEFINITIONS["analyze_json"].primary
    assert attempt.path("77/07 08") == "/v1/analyze-json/77%2F07%2008"


def test_build_plan_for_steps() -> None:
    plan = build_plan("steps", ["lookup", "parse_site"], "7707083893")

    assert [item["step"] for item in plan] == ["lookup", "parse_site"]
    assert plan[0]["request"] == {
        "method": "GET",
        "path": "/v1/lookup/7707083893/card",
        "body": None,
    }
    assert plan[1]["request"]["body"] == {"inn": "7707083893"}
    assert plan[1]["fallbacks"] == [
        {"method": "GET", "path": "/v1/parse-site/7707083893", "body": None}
    ]


def test_build_plan_for_full_mode() -> None:
    plan = build_plan("full", None, "123")

    assert len(plan) == 1
    assert plan[0]["request"] == {
        "method": "POST",
        "path": "/v1/pipeline/full",
        "body": {"inn": "123"},
    }
    assert plan[0]["fallbacks"] == []
