"""Wires the quest components together from configuration."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from xsocial import XClient

from .config import QuestSettings, load_config, require_secrets
from .engine import QuestEngine
from .queries import QuestQueries
from .narrator import ClaudeNarrator
from .recovery import RecoveryScanner
from .scheduler import SqliteTaskQueue
from .store import QuestStore

logger = logging.getLogger(__name__)

CREDENTIALS = ("x_bearer_token", "x_user_access_token", "anthropic_api_key")


class QuestRuntime:
    """Store, task queue, X client, narrator and engine for one process.

    Usage::

        async with QuestRuntime(cfg) as rt:
            await rt.recovery.run()
            await rt.queue.run_forever()

    With ``credentials=False`` only the store and queue are opened, which
    is enough for read-only commands.
    """

    def __init__(self, config: dict | None = None, credentials: bool = True):
        self._cfg = config or load_config()
        self._credentials = credentials

        root = Path(__file__).resolve().parent.parent
        storage = self._cfg.get("storage", {}) or {}
        db_path = Path(storage.get("db_file", "data/quests.db"))
        self.db_path = db_path if db_path.is_absolute() else root / db_path

        self.settings = QuestSettings.from_config(self._cfg)
        sched_cfg = self._cfg.get("scheduler", {}) or {}
        self.store = QuestStore(self.db_path)
        self.queries = QuestQueries(self.store)
        self.queue = SqliteTaskQueue(
            self.db_path,
            poll_interval=float(sched_cfg.get("poll_interval_seconds", 5)),
            max_attempts=int(sched_cfg.get("max_attempts", 5)),
            retry_backoff=float(sched_cfg.get("retry_backoff_seconds", 30)),
        )
        self.social: XClient | None = None
        self.engine: QuestEngine | None = None
        self.recovery: RecoveryScanner | None = None

    async def open(self) -> None:
        if self._credentials:
            require_secrets(self._cfg, *CREDENTIALS)
        await self.store.open()
        await self.queue.open()
        if not self._credentials:
            return

        secrets = self._cfg["_secrets"]
        x_cfg = self._cfg.get("x", {}) or {}
        llm_cfg = self._cfg.get("llm", {}) or {}
        self.social = XClient(
            bearer_token=secrets["x_bearer_token"],
            user_token=secrets["x_user_access_token"],
            timeout=float(x_cfg.get("timeout", 30)),
            base_url=x_cfg.get("base_url"),
        )
        narrator = ClaudeNarrator(
            api_key=secrets["anthropic_api_key"],
            model=llm_cfg.get("model", "claude-sonnet-4-20250514"),
            temperature=float(llm_cfg.get("temperature", 0.8)),
            max_tokens=int(llm_cfg.get("max_tokens", 1200)),
        )
        self.engine = QuestEngine(
            self.store,
            self.social,
            narrator,
            self.queue,
            settings=self.settings,
            ignore_handles=x_cfg.get("ignore_handles") or (),
        )
        self.engine.register()
        self.recovery = RecoveryScanner(self.store, self.engine, scheduler=self.queue, settings=self.settings)
        logger.debug("Quest runtime ready (db=%s)", self.db_path)

    async def close(self) -> None:
        if self.social is not None:
            await self.social.close()
            self.social = None
        await self.queue.close()
        await self.store.close()

    async def __aenter__(self) -> QuestRuntime:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
