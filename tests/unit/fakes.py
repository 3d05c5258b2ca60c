"""In-memory collaborators shared by the quest tests."""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Any

from quest.models import (
    ChapterDraft,
    ChapterHistory,
    ChoiceOption,
    Choices,
    SeedEvaluation,
    Terminal,
    VoteRecord,
)
from quest.narrator import NarrativeError
from xsocial import Reply, XApiError

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def reply(reply_id: str, handle: str, text: str, minutes: int = 0) -> Reply:
    return Reply(
        id=reply_id,
        text=text,
        author_handle=handle,
        created_at=NOW.replace(minute=minutes),
    )


class FakeSocial:
    """Records posts and serves canned replies per message id."""

    def __init__(self) -> None:
        self.posts: list[dict[str, Any]] = []
        self.replies: dict[str, list[Reply]] = {}
        self.fail_posts = 0
        self.fail_reply_to: set[str] = set()
        self.post_delay = 0.0
        self._ids = itertools.count(1000)

    async def post(self, text: str, reply_to: str | None = None, media_ids: list[str] | None = None) -> str:
        if self.post_delay:
            await asyncio.sleep(self.post_delay)
        if self.fail_posts:
            self.fail_posts -= 1
            raise XApiError("post failed", status_code=503)
        if reply_to in self.fail_reply_to:
            raise XApiError("reply blocked", status_code=403)
        message_id = f"m{next(self._ids)}"
        self.posts.append({"id": message_id, "text": text, "reply_to": reply_to})
        return message_id

    async def fetch_replies(self, message_id: str, before: datetime | None = None) -> list[Reply]:
        return list(self.replies.get(message_id, []))

    def posts_replying_to(self, message_id: str) -> list[dict[str, Any]]:
        return [p for p in self.posts if p["reply_to"] == message_id]


def _choices(prefix: str) -> Choices:
    return Choices(
        ChoiceOption(text=f"{prefix} A", label="1"),
        ChoiceOption(text=f"{prefix} B", label="2"),
    )


class FakeNarrator:
    """Deterministic narrative generator.

    Votes are interpreted by the leading digit of the reply text:
    "1"/"2" weigh 1.0, anything else is an unclear vote for option 2.
    """

    def __init__(self, has_potential: bool = True) -> None:
        self.has_potential = has_potential
        self.fail_next_chapter = 0
        self.next_chapter_calls: list[dict[str, Any]] = []
        self.interpret_calls = 0
        self.already_running_calls = 0
        self.notifications = 0

    async def evaluate_seed(self, seed_text: str) -> SeedEvaluation:
        if not self.has_potential:
            return SeedEvaluation(
                has_potential=False,
                reason="too vague",
                rejection_message="Not enough to build a story on.",
            )
        return SeedEvaluation(has_potential=True, topic="trade", historical_parallels=["Hanseatic League"])

    async def generate_opening_chapter(self, seed_text: str, context: SeedEvaluation | None = None) -> ChapterDraft:
        return ChapterDraft(title="The Salt Road", content=f"Opening: {seed_text}", options=_choices("ch1"))

    async def generate_next_chapter(
        self,
        history: list[ChapterHistory],
        winning_option: int,
        chapter_number: int,
        final: bool = False,
    ) -> ChapterDraft:
        self.next_chapter_calls.append(
            {"history": history, "winner": winning_option, "chapter": chapter_number, "final": final}
        )
        if self.fail_next_chapter:
            self.fail_next_chapter -= 1
            raise NarrativeError("model unavailable")
        options = Terminal() if final else _choices(f"ch{chapter_number}")
        return ChapterDraft(
            title=f"Chapter {chapter_number}",
            content=f"Chapter {chapter_number} after option {winning_option}",
            options=options,
        )

    async def interpret_votes(self, replies: list[Reply], options: Choices) -> list[VoteRecord]:
        self.interpret_calls += 1
        records = []
        for r in replies:
            head = r.text.strip()[:1]
            if head in ("1", "2"):
                option, weight = int(head), 1.0
            elif r.text.startswith("w:"):
                # "w:<option>:<weight>" lets tests pick exact weights
                _, opt, w = r.text.split(":")
                option, weight = int(opt), float(w)
            else:
                option, weight = 2, 0.1
            records.append(
                VoteRecord(
                    voter_handle=r.author_handle,
                    reply_text=r.text,
                    reply_message_id=r.id,
                    selected_option=option,
                    weight=weight,
                )
            )
        return records

    async def quest_already_running_reply(self, short_id: str, chapter_message_id: str, request_text: str) -> str:
        self.already_running_calls += 1
        return f"Quest {short_id} is already running"

    async def vote_win_notification(self, chapter_number: int, chapter_message_id: str, winning_option_text: str) -> str:
        self.notifications += 1
        return f"Your pick won! Chapter {chapter_number} is up."


class RecordingScheduler:
    """Scheduler that only remembers what was asked of it."""

    def __init__(self) -> None:
        self.scheduled: list[dict[str, Any]] = []
        self.handlers: dict[str, Any] = {}

    async def schedule(self, kind: str, payload: dict[str, Any], delay: float) -> str:
        task_id = f"t{len(self.scheduled) + 1}"
        self.scheduled.append({"id": task_id, "kind": kind, "payload": dict(payload), "delay": delay})
        return task_id

    def on_due(self, kind: str, handler) -> None:
        self.handlers[kind] = handler

    async def has_pending(self, kind: str, **match: Any) -> bool:
        return any(
            t["kind"] == kind and all(t["payload"].get(k) == v for k, v in match.items())
            for t in self.scheduled
        )

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [t for t in self.scheduled if t["kind"] == kind]
