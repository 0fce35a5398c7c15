from __future__ import annotations

import asyncio
import json
import pathlib
import re
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.repo import queue_repo  # noqa: E402
from app.repo.commands_repo import CommandsRepo  # noqa: E402
from app.repo.queue_repo import QueueRepo  # noqa: E402


def _normalized(sql: Any) -> str:
    return re.sub(r"\s+", " ", str(sql)).strip()


class _Mappings:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows

    def first(self) -> Optional[dict[str, Any]]:
        return self._rows[0] if self._rows else None

    def __iter__(self):
        return iter(self._rows)


class _Result:
    def __init__(self, rows: Optional[list[dict[str, Any]]] = None) -> None:
        self._rows = rows or []

    def mappings(self) -> _Mappings:
        return _Mappings(self._rows)

    def all(self) -> list[tuple]:
        return [tuple(row.values()) for row in self._rows]


class _Database:
    """Очередь и команды в памяти; выборка по тексту SQL."""

    def __init__(self) -> None:
        self.queue: list[dict[str, Any]] = []
        self.commands: dict[int, dict[str, Any]] = {}
        self.statements: list[str] = []

    async def execute(self, statement: Any, params: Optional[dict[str, Any]] = None) -> _Result:
        sql = _normalized(statement)
        self.statements.append(sql)
        params = params or {}

        if "FOR UPDATE SKIP LOCKED" in sql and "ai_analysis_queue" in sql:
            # уступаем цикл событий между SELECT и DELETE, как настоящий драйвер
            await asyncio.sleep(0)
            if not self.queue:
                return _Result()
            return _Result([self.queue.pop(0)])
        if sql.startswith("SELECT id, payload FROM ai_analysis_commands"):
            return _Result(
                [{"id": cid, "payload": json.dumps(cmd)} for cid, cmd in sorted(self.commands.items())]
            )
        if sql.startswith("UPDATE ai_analysis_commands SET payload"):
            self.commands[params["id"]] = json.loads(params["payload"])
            return _Result()
        if sql.startswith("DELETE FROM ai_analysis_commands WHERE id"):
            self.commands.pop(params["id"], None)
            return _Result()
        if sql.startswith("DELETE FROM ai_analysis_commands WHERE action = 'stop' RETURNING"):
            rows = [{"payload": json.dumps(cmd)} for _, cmd in sorted(self.commands.items())]
            self.commands.clear()
            return _Result(rows)
        raise AssertionError(f"unexpected SQL: {sql}")


class _Engine:
    def __init__(self, db: _Database) -> None:
        self.db = db

    @asynccontextmanager
    async def begin(self):
        yield self.db


def _queue_row(inn: str) -> dict[str, Any]:
    return {
        "inn": inn,
        "payload": json.dumps({"mode": "steps", "steps": ["lookup"]}),
        "queued_at": None,
        "queued_by": "operator",
    }


def test_dequeue_statement_locks_and_deletes_in_one_step() -> None:
    sql = _normalized(queue_repo._DEQUEUE_SQL)

    assert "ORDER BY q.queued_at ASC" in sql
    assert "LIMIT 1 FOR UPDATE SKIP LOCKED" in sql
    assert sql.index("FOR UPDATE SKIP LOCKED") < sql.index("DELETE FROM ai_analysis_queue")
    assert "RETURNING q.inn, q.payload" in sql


def test_concurrent_consumers_never_receive_the_same_item() -> None:
    db = _Database()
    db.queue = [_queue_row(inn) for inn in ("1", "2", "3", "4", "5")]

    async def consume(repo: QueueRepo) -> list[str]:
        taken: list[str] = []
        while True:
            item = await repo.dequeue_next()
            if item is None:
                return taken
            taken.append(item.inn)

    async def scenario() -> list[list[str]]:
        return await asyncio.gather(consume(QueueRepo(_Engine(db))), consume(QueueRepo(_Engine(db))))

    first, second = asyncio.run(scenario())

    assert sorted(first + second) == ["1", "2", "3", "4", "5"]
    assert not set(first) & set(second)


def test_dequeue_parses_payload() -> None:
    db = _Database()
    db.queue = [_queue_row("7707083893")]

    item = asyncio.run(QueueRepo(_Engine(db)).dequeue_next())

    assert item is not None
    assert item.inn == "7707083893"
    assert item.payload.steps == ["lookup"]
    assert item.queued_by == "operator"
    assert asyncio.run(QueueRepo(_Engine(db)).dequeue_next()) is None


def test_discard_stops_drops_only_requested_inns() -> None:
    db = _Database()
    db.commands = {
        1: {"inns": ["X", "Y"], "source": "ui"},
        2: {"inns": ["X"]},
        3: {"inns": ["Z"]},
    }

    touched = asyncio.run(CommandsRepo(_Engine(db)).discard_stops(["X"]))

    assert touched == 2
    assert db.commands == {1: {"inns": ["Y"], "source": "ui"}, 3: {"inns": ["Z"]}}


def test_discarded_stop_is_not_consumed_later() -> None:
    db = _Database()
    db.commands = {1: {"inns": ["X"]}, 2: {"inns": ["Y"]}}
    repo = CommandsRepo(_Engine(db))

    asyncio.run(repo.discard_stops(["X", " "]))

    assert asyncio.run(repo.consume_stop()) == ["Y"]


def test_discard_stops_without_inns_does_not_touch_db() -> None:
    db = _Database()

    assert asyncio.run(CommandsRepo(_Engine(db)).discard_stops([])) == 0
    assert db.statements == []
