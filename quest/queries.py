"""Read-only views over stored quests, for status output and browsing."""

from __future__ import annotations

from typing import Any

from narrative import quest_phase

from .errors import QuestNotFoundError
from .models import ACTIVE, COMPLETED
from .store import QuestStore


class QuestQueries:
    """Paged quest listings and single-quest detail. Needs only the store."""

    def __init__(self, store: QuestStore):
        self._store = store

    async def list_active(self, limit: int = 5, offset: int = 0) -> dict[str, Any]:
        return await self._list(ACTIVE, limit, offset)

    async def list_completed(self, limit: int = 5, offset: int = 0) -> dict[str, Any]:
        return await self._list(COMPLETED, limit, offset)

    async def _list(self, status: str, limit: int, offset: int) -> dict[str, Any]:
        quests = await self._store.list_quests(status, limit=limit, offset=offset)
        total = await self._store.count_quests(status)
        phases = {}
        for quest in quests:
            phases[quest.id] = quest_phase(quest, await self._store.latest_chapter(quest.id))
        return {
            "quests": quests,
            "phases": phases,
            "total": total,
            "has_more": offset + len(quests) < total,
        }

    async def get_by_short_id(self, short_id: str) -> dict[str, Any]:
        """A quest with its chapters and the votes cast on each."""
        quest = await self._store.get_quest_by_short_id(short_id)
        if quest is None:
            raise QuestNotFoundError(short_id)
        chapters = await self._store.list_chapters(quest.id)
        votes = {ch.chapter_number: await self._store.list_votes(ch.id) for ch in chapters}
        return {
            "quest": quest,
            "phase": quest_phase(quest, chapters[-1] if chapters else None),
            "chapters": chapters,
            "votes": votes,
        }
