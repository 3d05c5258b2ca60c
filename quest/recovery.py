"""Startup sweep for quests whose voting deadline passed unattended."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .config import QuestSettings
from .engine import QuestEngine
from .models import Quest
from .scheduler import COLLECT_VOTES, Scheduler
from .store import QuestStore

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    scanned: int = 0
    advanced: list[str] = field(default_factory=list)
    repaired: list[str] = field(default_factory=list)
    rescheduled: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def summary(self) -> str:
        return (
            f"Recovery: {self.scanned} overdue, {len(self.advanced)} advanced, "
            f"{len(self.repaired)} repaired, {len(self.rescheduled)} rescheduled, "
            f"{len(self.failed)} failed"
        )


class RecoveryScanner:
    """Unblock ACTIVE quests after a restart.

    Overdue quests are advanced directly rather than through the
    scheduler. A quest whose latest chapter is already posted beyond its
    recorded ``current_chapter`` is only repaired. When a scheduler is
    given, quests still inside their voting window get their
    ``collect-votes`` task back if it was lost.
    """

    def __init__(
        self,
        store: QuestStore,
        engine: QuestEngine,
        scheduler: Scheduler | None = None,
        settings: QuestSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._engine = engine
        self._scheduler = scheduler
        self._settings = settings or engine.settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self, now: datetime | None = None) -> RecoveryReport:
        now = now or self._clock()
        report = RecoveryReport()

        for quest in await self._store.list_overdue_quests(now):
            report.scanned += 1
            try:
                await self._recover(quest, report)
            except Exception as exc:
                logger.error("Recovery of quest %s failed: %s", quest.short_id, exc, exc_info=True)
                report.failed[quest.id] = str(exc)

        if self._scheduler is not None:
            await self._reconcile_future(now, report)

        logger.info(report.summary())
        return report

    async def _recover(self, quest: Quest, report: RecoveryReport) -> None:
        latest = await self._store.latest_chapter(quest.id)
        if latest is not None and latest.chapter_number > quest.current_chapter and latest.is_posted:
            logger.info(
                "Quest %s: chapter %d already posted, moving current_chapter from %d",
                quest.short_id, latest.chapter_number, quest.current_chapter,
            )
            await self._store.repair_current_chapter(quest.id, latest)
            report.repaired.append(quest.id)
            return

        # An unposted latest chapter is resumed by advance()
        logger.info("Quest %s: deadline passed on chapter %d, advancing", quest.short_id, quest.current_chapter)
        await self._engine.advance(quest.id, quest.current_chapter)
        report.advanced.append(quest.id)

    async def _reconcile_future(self, now: datetime, report: RecoveryReport) -> None:
        for quest in await self._store.list_active_quests():
            deadline = quest.chapter_deadline
            if deadline is None or deadline < now:
                continue
            pending = await self._scheduler.has_pending(
                COLLECT_VOTES, quest_id=quest.id, chapter_number=quest.current_chapter
            )
            if pending:
                continue
            delay = (deadline - now).total_seconds() + self._settings.recovery_grace_seconds
            try:
                await self._scheduler.schedule(
                    COLLECT_VOTES,
                    {"quest_id": quest.id, "chapter_number": quest.current_chapter},
                    delay=delay,
                )
            except Exception as exc:
                logger.error("Could not reschedule quest %s: %s", quest.short_id, exc, exc_info=True)
                report.failed[quest.id] = str(exc)
                continue
            logger.warning(
                "Quest %s had no collect-votes task for chapter %d; rescheduled in %.0fs",
                quest.short_id, quest.current_chapter, delay,
            )
            report.rescheduled.append(quest.id)
