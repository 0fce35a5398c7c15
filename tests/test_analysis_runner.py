from __future__ import annotations

import asyncio
import pathlib
import sys

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.jobs.analysis_runner import AnalysisRunner  # noqa: E402
from app.services.orchestrator import RunSummary  # noqa: E402


def test_schedule_during_run_triggers_one_more_pass() -> None:
    calls = 0

    async def scenario() -> int:
        nonlocal calls
        release = asyncio.Event()

        async def run_once():
            nonlocal calls
            calls += 1
            if calls == 1:
                await release.wait()
            return RunSummary()

        runner = AnalysisRunner(run_once)
        assert runner.schedule() is True
        await asyncio.sleep(0)
        assert runner.schedule() is False
        assert runner.schedule() is False
        release.set()
        await runner.wait()
        return calls

    assert asyncio.run(scenario()) == 2


def test_no_rerun_when_lock_is_held_elsewhere() -> None:
    calls = 0

    async def scenario() -> None:
        nonlocal calls
        release = asyncio.Event()

        async def run_once():
            nonlocal calls
            calls += 1
            await release.wait()
            return None

        runner = AnalysisRunner(run_once)
        runner.schedule()
        await asyncio.sleep(0)
        runner.schedule()
        release.set()
        await runner.wait()

    asyncio.run(scenario())
    assert calls == 1


def test_errors_stay_inside_background_task() -> None:
    async def scenario() -> bool:
        async def run_once():
            raise RuntimeError("boom")

        runner = AnalysisRunner(run_once)
        runner.schedule()
        await runner.wait()
        return runner.active

    assert asyncio.run(scenario()) is False


def test_shutdown_cancels_active_task() -> None:
    cancelled = False

    async def scenario() -> None:
        nonlocal cancelled
        started = asyncio.Event()

        async def run_once():
            nonlocal cancelled
            started.set()
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled = True
                raise

        runner = AnalysisRunner(run_once)
        runner.schedule()
        await started.wait()
        await runner.shutdown()
        assert runner.active is False

    asyncio.run(scenario())
    assert cancelled is True


def test_new_task_after_previous_finished() -> None:
    async def scenario() -> list[bool]:
        async def run_once():
            return RunSummary()

        runner = AnalysisRunner(run_once)
        first = runner.schedule()
        await runner.wait()
        second = runner.schedule()
        await runner.wait()
        return [first, second]

    assert asyncio.run(scenario()) == [True, True]
