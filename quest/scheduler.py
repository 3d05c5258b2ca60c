"""Delayed task scheduling.

A scheduled task is a (kind, payload, execute-after) triple delivered
at least once, never before its delay has elapsed. Handlers must be
idempotent: a task can fire late, or more than once after a crash.

Two implementations:

    InProcessScheduler  - asyncio timers; lost on restart. Tests and
                          single-process runs.
    SqliteTaskQueue     - durable queue in SQLite polled by a worker loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from .models import format_ts

logger = logging.getLogger(__name__)

COLLECT_VOTES = "collect-votes"
START_QUEST = "start-quest"

TaskHandler = Callable[[dict[str, Any]], Awaitable[None]]


class Scheduler(Protocol):
    async def schedule(self, kind: str, payload: dict[str, Any], delay: float) -> str: ...

    def on_due(self, kind: str, handler: TaskHandler) -> None: ...

    async def has_pending(self, kind: str, **match: Any) -> bool: ...


def _matches(payload: dict[str, Any], match: dict[str, Any]) -> bool:
    return all(payload.get(key) == value for key, value in match.items())


# ── In-process ──────────────────────────────────────────────────


@dataclass
class _Timer:
    kind: str
    payload: dict[str, Any]
    handle: asyncio.TimerHandle


class InProcessScheduler:
    """Timer-based scheduler living on the running event loop."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        self._timers: dict[str, _Timer] = {}
        self._running: set[asyncio.Task] = set()

    def on_due(self, kind: str, handler: TaskHandler) -> None:
        self._handlers[kind] = handler

    async def schedule(self, kind: str, payload: dict[str, Any], delay: float) -> str:
        task_id = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(0.0, delay), self._fire, task_id)
        self._timers[task_id] = _Timer(kind=kind, payload=dict(payload), handle=handle)
        logger.debug("Scheduled %s %s in %.1fs", kind, payload, delay)
        return task_id

    async def has_pending(self, kind: str, **match: Any) -> bool:
        return any(
            timer.kind == kind and _matches(timer.payload, match)
            for timer in self._timers.values()
        )

    def _fire(self, task_id: str) -> None:
        timer = self._timers.pop(task_id, None)
        if timer is None:
            return
        task = asyncio.ensure_future(self._dispatch(timer.kind, timer.payload))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _dispatch(self, kind: str, payload: dict[str, Any]) -> None:
        handler = self._handlers.get(kind)
        if handler is None:
            logger.warning("No handler registered for %s; dropping %s", kind, payload)
            return
        try:
            await handler(payload)
        except Exception as exc:
            logger.error("Task %s %s failed: %s", kind, payload, exc, exc_info=True)

    async def drain(self) -> None:
        """Wait for handlers that have already fired."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.handle.cancel()
        self._timers.clear()


# ── Durable (SQLite) ────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,      -- JSON
    execute_after TEXT NOT NULL,
    status TEXT NOT NULL,       -- "pending" | "running" | "done" | "failed"
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS scheduled_tasks_due
    ON scheduled_tasks(status, execute_after);
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SqliteTaskQueue:
    """Durable delayed-task queue.

    Tasks are claimed one at a time (pending -> running) so several
    workers can share a database file. A task still ``running`` when the
    process dies is put back to ``pending`` by :meth:`requeue_stale`, so
    delivery is at-least-once.
    """

    def __init__(
        self,
        db_path: str | Path,
        poll_interval: float = 5.0,
        max_attempts: int = 5,
        retry_backoff: float = 30.0,
    ):
        self._path = Path(db_path)
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._retry_backoff = retry_backoff
        self._handlers: dict[str, TaskHandler] = {}
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.debug("Task queue ready at %s", self._path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteTaskQueue:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def on_due(self, kind: str, handler: TaskHandler) -> None:
        self._handlers[kind] = handler

    async def schedule(self, kind: str, payload: dict[str, Any], delay: float) -> str:
        task_id = str(uuid.uuid4())
        now = _now()
        execute_after = now + timedelta(seconds=max(0.0, delay))
        await self._db.execute(
            "INSERT INTO scheduled_tasks (id, kind, payload, execute_after, status, attempts, "
            "last_error, created_at, updated_at) VALUES (?, ?, ?, ?, 'pending', 0, '', ?, ?)",
            (
                task_id,
                kind,
                json.dumps(payload, sort_keys=True),
                format_ts(execute_after),
                format_ts(now),
                format_ts(now),
            ),
        )
        await self._db.commit()
        logger.info("Scheduled %s %s for %s", kind, payload, format_ts(execute_after))
        return task_id

    async def has_pending(self, kind: str, **match: Any) -> bool:
        cursor = await self._db.execute(
            "SELECT payload FROM scheduled_tasks WHERE kind = ? AND status IN ('pending', 'running')",
            (kind,),
        )
        rows = await cursor.fetchall()
        return any(_matches(json.loads(row[0]), match) for row in rows)

    async def requeue_stale(self) -> int:
        """Return tasks orphaned in ``running`` by a crash to the queue."""
        cursor = await self._db.execute(
            "UPDATE scheduled_tasks SET status = 'pending', updated_at = ? WHERE status = 'running'",
            (format_ts(_now()),),
        )
        await self._db.commit()
        if cursor.rowcount:
            logger.warning("Requeued %d task(s) interrupted by a previous shutdown", cursor.rowcount)
        return cursor.rowcount

    async def _claim_due(self, now: datetime) -> dict[str, Any] | None:
        cursor = await self._db.execute(
            "SELECT id, kind, payload, attempts FROM scheduled_tasks "
            "WHERE status = 'pending' AND execute_after <= ? ORDER BY execute_after ASC LIMIT 1",
            (format_ts(now),),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        cursor = await self._db.execute(
            "UPDATE scheduled_tasks SET status = 'running', attempts = attempts + 1, updated_at = ? "
            "WHERE id = ? AND status = 'pending'",
            (format_ts(_now()), row[0]),
        )
        await self._db.commit()
        if cursor.rowcount != 1:
            # another worker claimed it
            return {}
        return {
            "id": row[0],
            "kind": row[1],
            "payload": json.loads(row[2]),
            "attempts": int(row[3]) + 1,
        }

    async def _finish(self, task_id: str, status: str, error: str = "", retry_at: datetime | None = None) -> None:
        if retry_at is not None:
            await self._db.execute(
                "UPDATE scheduled_tasks SET status = 'pending', execute_after = ?, last_error = ?, "
                "updated_at = ? WHERE id = ?",
                (format_ts(retry_at), error[:1000], format_ts(_now()), task_id),
            )
        else:
            await self._db.execute(
                "UPDATE scheduled_tasks SET status = ?, last_error = ?, updated_at = ? WHERE id = ?",
                (status, error[:1000], format_ts(_now()), task_id),
            )
        await self._db.commit()

    async def run_due(self, now: datetime | None = None) -> int:
        """Run every task due at ``now``. Returns how many were dispatched."""
        now = now or _now()
        dispatched = 0
        while True:
            task = await self._claim_due(now)
            if task is None:
                return dispatched
            if not task:
                continue

            dispatched += 1
            handler = self._handlers.get(task["kind"])
            if handler is None:
                logger.error("No handler registered for %s; marking task %s failed", task["kind"], task["id"])
                await self._finish(task["id"], "failed", error="no handler")
                continue

            try:
                await handler(task["payload"])
            except Exception as exc:
                if task["attempts"] >= self._max_attempts:
                    logger.error(
                        "Task %s %s failed permanently after %d attempts: %s",
                        task["kind"], task["payload"], task["attempts"], exc,
                    )
                    await self._finish(task["id"], "failed", error=str(exc))
                else:
                    retry_at = _now() + timedelta(seconds=self._retry_backoff * task["attempts"])
                    logger.warning(
                        "Task %s %s failed (attempt %d), retrying at %s: %s",
                        task["kind"], task["payload"], task["attempts"], format_ts(retry_at), exc,
                    )
                    await self._finish(task["id"], "pending", error=str(exc), retry_at=retry_at)
                continue

            await self._finish(task["id"], "done")

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Poll for due tasks until ``stop`` is set."""
        stop = stop or asyncio.Event()
        logger.info("Task worker started (poll every %.1fs)", self._poll_interval)
        while not stop.is_set():
            try:
                await self.run_due()
            except sqlite3.Error as exc:
                logger.error("Task queue poll failed: %s", exc, exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Task worker stopped")

    async def get_counts(self) -> dict[str, int]:
        result = {"pending": 0, "running": 0, "done": 0, "failed": 0}
        for status in result:
            cursor = await self._db.execute(
                "SELECT COUNT(*) FROM scheduled_tasks WHERE status = ?",
                (status,),
            )
            row = await cursor.fetchone()
            result[status] = int(row[0]) if row else 0
        return result
