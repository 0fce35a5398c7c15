from __future__ import annotations

import asyncio
import pathlib
import sys

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.services.runner_lock import AdvisoryLock  # noqa: E402


class _Result:
    def __init__(self, value) -> None:
        self._value = value

    def scalar(self):
        return self._value


class _Conn:
    def __init__(self, server: "_Server") -> None:
        self.server = server
        self.closed = False
        self.invalidated = False

    async def execute(self, statement, params):
        sql = str(statement)
        if "pg_try_advisory_lock" in sql:
            if self.server.owner is None:
                self.server.owner = self
                return _Result(True)
            return _Result(self.server.owner is self)
        if self.server.fail_unlock:
            raise RuntimeError("connection reset")
        if self.server.owner is self:
            self.server.owner = None
        return _Result(True)

    async def commit(self) -> None:
        return None

    async def invalidate(self) -> None:
        self.invalidated = True
        if self.server.owner is self:
            self.server.owner = None

    async def close(self) -> None:
        self.closed = True


class _Server:
    def __init__(self) -> None:
        self.owner = None
        self.fail_unlock = False
        self.connections: list[_Conn] = []


class _Engine:
    def __init__(self, server: _Server) -> None:
        self.server = server

    async def connect(self) -> _Conn:
        conn = _Conn(self.server)
        self.server.connections.append(conn)
        return conn


def test_only_one_holder_at_a_time() -> None:
    server = _Server()
    engine = _Engine(server)

    async def scenario() -> list[bool]:
        first, second = AdvisoryLock(engine, 42111), AdvisoryLock(engine, 42111)
        got_first = await first.try_acquire()
        got_second = await second.try_acquire()
        await first.release()
        got_after_release = await second.try_acquire()
        await second.release()
        return [got_first, got_second, got_after_release]

    assert asyncio.run(scenario()) == [True, False, True]
    assert server.owner is None
    assert all(conn.closed for conn in server.connections)


def test_acquire_failure_is_reported_as_not_acquired() -> None:
    class _BrokenEngine:
        async def connect(self):
            raise OSError("db unreachable")

    lock = AdvisoryLock(_BrokenEngine(), 1)

    assert asyncio.run(lock.try_acquire()) is False
    assert lock.held is False


def test_failed_unlock_drops_connection() -> None:
    server = _Server()
    lock = AdvisoryLock(_Engine(server), 7)

    async def scenario() -> None:
        assert await lock.try_acquire() is True
        server.fail_unlock = True
        await lock.release()

    asyncio.run(scenario())

    conn = server.connections[0]
    assert conn.invalidated is True
    assert conn.closed is True
    assert server.owner is None
    assert lock.held is False
