"""Tests for the in-process and durable delayed task schedulers."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

from quest.scheduler import COLLECT_VOTES, START_QUEST, InProcessScheduler, SqliteTaskQueue

PAYLOAD = {"quest_id": "q1", "chapter_number": 1}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TestInProcessScheduler:
    def test_fires_after_delay(self):
        async def _run() -> None:
            scheduler = InProcessScheduler()
            seen: list[dict] = []

            async def handler(payload: dict) -> None:
                seen.append(payload)

            scheduler.on_due(COLLECT_VOTES, handler)
            await scheduler.schedule(COLLECT_VOTES, PAYLOAD, delay=0.01)
            assert await scheduler.has_pending(COLLECT_VOTES, quest_id="q1", chapter_number=1)
            assert not await scheduler.has_pending(COLLECT_VOTES, quest_id="q1", chapter_number=2)
            assert seen == []

            await asyncio.sleep(0.05)
            await scheduler.drain()
            assert seen == [PAYLOAD]
            assert not await scheduler.has_pending(COLLECT_VOTES, quest_id="q1")

        asyncio.run(_run())

    def test_handler_failure_is_contained(self):
        async def _run() -> None:
            scheduler = InProcessScheduler()
            calls = 0

            async def handler(payload: dict) -> None:
                nonlocal calls
                calls += 1
                raise RuntimeError("boom")

            scheduler.on_due(COLLECT_VOTES, handler)
            await scheduler.schedule(COLLECT_VOTES, PAYLOAD, delay=0)
            await asyncio.sleep(0.01)
            await scheduler.drain()
            assert calls == 1

        asyncio.run(_run())

    def test_cancel_all_drops_timers(self):
        async def _run() -> None:
            scheduler = InProcessScheduler()
            seen: list[dict] = []

            async def handler(payload: dict) -> None:
                seen.append(payload)

            scheduler.on_due(COLLECT_VOTES, handler)
            await scheduler.schedule(COLLECT_VOTES, PAYLOAD, delay=0.01)
            scheduler.cancel_all()
            await asyncio.sleep(0.03)
            assert seen == []
            assert not await scheduler.has_pending(COLLECT_VOTES)

        asyncio.run(_run())


class TestSqliteTaskQueue:
    def test_never_fires_early(self, tmp_path: Path):
        async def _run() -> None:
            seen: list[dict] = []

            async def handler(payload: dict) -> None:
                seen.append(payload)

            async with SqliteTaskQueue(tmp_path / "tasks.db") as queue:
                queue.on_due(COLLECT_VOTES, handler)
                start = _now()
                await queue.schedule(COLLECT_VOTES, PAYLOAD, delay=60)

                assert await queue.run_due(now=start) == 0
                assert await queue.run_due(now=start + timedelta(seconds=30)) == 0
                assert seen == []

                assert await queue.run_due(now=start + timedelta(seconds=61)) == 1
                assert seen == [PAYLOAD]
                counts = await queue.get_counts()
                assert counts["done"] == 1
                assert counts["pending"] == 0

        asyncio.run(_run())

    def test_has_pending_matches_payload(self, tmp_path: Path):
        async def _run() -> None:
            async with SqliteTaskQueue(tmp_path / "tasks.db") as queue:
                await queue.schedule(COLLECT_VOTES, PAYLOAD, delay=60)
                assert await queue.has_pending(COLLECT_VOTES, quest_id="q1", chapter_number=1)
                assert not await queue.has_pending(COLLECT_VOTES, quest_id="q1", chapter_number=2)
                assert not await queue.has_pending(START_QUEST)

        asyncio.run(_run())

    def test_failed_handler_is_retried_later(self, tmp_path: Path):
        async def _run() -> None:
            attempts = 0

            async def flaky(payload: dict) -> None:
                nonlocal attempts
                attempts += 1
                if attempts == 1:
                    raise RuntimeError("x api down")

            async with SqliteTaskQueue(tmp_path / "tasks.db", retry_backoff=30) as queue:
                queue.on_due(COLLECT_VOTES, flaky)
                await queue.schedule(COLLECT_VOTES, PAYLOAD, delay=0)

                assert await queue.run_due() == 1
                assert attempts == 1
                assert (await queue.get_counts())["pending"] == 1
                assert await queue.has_pending(COLLECT_VOTES, quest_id="q1")

                # Not before the backoff has elapsed
                assert await queue.run_due() == 0

                assert await queue.run_due(now=_now() + timedelta(seconds=31)) == 1
                assert attempts == 2
                counts = await queue.get_counts()
                assert counts["done"] == 1
                assert counts["pending"] == 0

        asyncio.run(_run())

    def test_gives_up_after_max_attempts(self, tmp_path: Path):
        async def _run() -> None:
            async def broken(payload: dict) -> None:
                raise RuntimeError("always")

            async with SqliteTaskQueue(tmp_path / "tasks.db", max_attempts=1) as queue:
                queue.on_due(COLLECT_VOTES, broken)
                await queue.schedule(COLLECT_VOTES, PAYLOAD, delay=0)
                assert await queue.run_due() == 1
                counts = await queue.get_counts()
                assert counts["failed"] == 1
                assert counts["pending"] == 0
                assert not await queue.has_pending(COLLECT_VOTES)

        asyncio.run(_run())

    def test_task_without_handler_is_marked_failed(self, tmp_path: Path):
        async def _run() -> None:
            async with SqliteTaskQueue(tmp_path / "tasks.db") as queue:
                await queue.schedule("unknown-kind", {}, delay=0)
                assert await queue.run_due() == 1
                assert (await queue.get_counts())["failed"] == 1

        asyncio.run(_run())

    def test_running_task_from_crashed_worker_is_requeued(self, tmp_path: Path):
        async def _run() -> None:
            seen: list[dict] = []

            async def handler(payload: dict) -> None:
                seen.append(payload)

            db = tmp_path / "tasks.db"
            async with SqliteTaskQueue(db) as crashed:
                await crashed.schedule(COLLECT_VOTES, PAYLOAD, delay=0)
                claimed = await crashed._claim_due(_now() + timedelta(seconds=1))
                assert claimed["payload"] == PAYLOAD
                assert (await crashed.get_counts())["running"] == 1

            async with SqliteTaskQueue(db) as queue:
                queue.on_due(COLLECT_VOTES, handler)
                assert await queue.has_pending(COLLECT_VOTES, quest_id="q1")
                assert await queue.requeue_stale() == 1
                assert await queue.run_due() == 1
                assert seen == [PAYLOAD]

        asyncio.run(_run())

    def test_run_forever_stops_on_event(self, tmp_path: Path):
        async def _run() -> None:
            seen: list[dict] = []

            async def handler(payload: dict) -> None:
                seen.append(payload)
                stop.set()

            stop = asyncio.Event()
            async with SqliteTaskQueue(tmp_path / "tasks.db", poll_interval=0.01) as queue:
                queue.on_due(COLLECT_VOTES, handler)
                await queue.schedule(COLLECT_VOTES, PAYLOAD, delay=0)
                await asyncio.wait_for(queue.run_forever(stop), timeout=5)
            assert seen == [PAYLOAD]

        asyncio.run(_run())
