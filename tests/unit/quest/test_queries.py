"""Tests for quest listings and quest detail."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fakes import NOW, FakeNarrator, FakeSocial, RecordingScheduler, reply
from quest.config import QuestSettings
from quest.engine import QuestEngine
from quest.errors import QuestNotFoundError
from quest.queries import QuestQueries
from quest.store import QuestStore


def test_listings_page_and_label_quests(tmp_path: Path):
    async def _run() -> None:
        async with QuestStore(tmp_path / "quests.db") as store:
            engine = QuestEngine(
                store, FakeSocial(), FakeNarrator(), RecordingScheduler(),
                settings=QuestSettings(evaluate_seeds=False), clock=lambda: NOW,
            )
            queries = QuestQueries(store)
            started = []
            for n in range(3):
                started.append(await engine.start_quest(f"t{n}", f"t{n}", "What if?", "seeker", f"c{n}"))
            await store.complete_quest(started[1].quest_id)

            active = await queries.list_active(limit=1)
            assert active["total"] == 2
            assert len(active["quests"]) == 1
            assert active["has_more"] is True
            assert list(active["phases"].values()) == ["AWAITING_VOTES(1)"]

            completed = await queries.list_completed()
            assert [q.id for q in completed["quests"]] == [started[1].quest_id]
            assert completed["phases"] == {started[1].quest_id: "COMPLETED"}
            assert completed["has_more"] is False

    asyncio.run(_run())


def test_quest_detail_includes_chapters_and_votes(tmp_path: Path):
    async def _run() -> None:
        async with QuestStore(tmp_path / "quests.db") as store:
            social = FakeSocial()
            engine = QuestEngine(
                store, social, FakeNarrator(), RecordingScheduler(),
                settings=QuestSettings(evaluate_seeds=False), clock=lambda: NOW,
            )
            queries = QuestQueries(store)
            started = await engine.start_quest("t1", "t1", "What if?", "seeker", "c1")
            ch1_post = (await store.get_quest(started.quest_id)).last_posted_message_id
            social.replies[ch1_post] = [reply("r1", "alice", "2")]
            await engine.advance(started.quest_id, 1)

            detail = await queries.get_by_short_id(started.short_id)
            assert detail["quest"].id == started.quest_id
            assert detail["phase"] == "AWAITING_VOTES(2)"
            assert [c.chapter_number for c in detail["chapters"]] == [1, 2]
            assert [v.voter_handle for v in detail["votes"][1]] == ["alice"]
            assert detail["votes"][2] == []

            with pytest.raises(QuestNotFoundError):
                await queries.get_by_short_id("unknown")

    asyncio.run(_run())
