"""Quest progression engine - the state machine behind every quest.

A quest moves through:

    CREATING -> AWAITING_VOTES(1) -> GENERATING(2) -> AWAITING_VOTES(2) ...
             -> GENERATING(N) -> COMPLETED

Transitions are driven by delayed ``collect-votes`` tasks. Delivery is
at-least-once, so :meth:`QuestEngine.advance` must be safe to call late,
twice, or concurrently for the same chapter.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from narrative import format_chapter_message, is_final_chapter, voting_deadline

from .config import QuestSettings
from .errors import (
    AlreadyVotedError,
    ChapterNotFoundError,
    InvalidOptionError,
    QuestError,
    QuestNotActiveError,
    QuestNotFoundError,
)
from .models import (
    Chapter,
    ChapterHistory,
    Choices,
    Quest,
    QuestState,
    StartResult,
    Terminal,
    Vote,
    VoteRecord,
)
from .narrator import NarrativeError, NarrativeGenerator
from .scheduler import COLLECT_VOTES, START_QUEST, Scheduler
from .social import SocialClient
from .store import QuestStore, new_short_id
from .votes import VoteCollector

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuestEngine:
    """Owns quest and chapter creation and every transition between them."""

    def __init__(
        self,
        store: QuestStore,
        social: SocialClient,
        narrator: NarrativeGenerator,
        scheduler: Scheduler,
        settings: QuestSettings | None = None,
        collector: VoteCollector | None = None,
        clock: Callable[[], datetime] | None = None,
        ignore_handles: Iterable[str] = (),
    ):
        self._store = store
        self._social = social
        self._narrator = narrator
        self._scheduler = scheduler
        self._settings = settings or QuestSettings()
        self._collector = collector or VoteCollector(social, narrator, ignore_handles)
        self._clock = clock or _utcnow
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def settings(self) -> QuestSettings:
        return self._settings

    def register(self) -> None:
        """Attach the engine's task handlers to the scheduler."""
        self._scheduler.on_due(COLLECT_VOTES, self._on_collect_votes)
        self._scheduler.on_due(START_QUEST, self._on_start_quest)

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key``; the entry is dropped once nobody needs it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    # ── Task handlers ───────────────────────────────────────────

    async def _on_collect_votes(self, payload: dict[str, Any]) -> None:
        try:
            await self.advance(payload["quest_id"], int(payload["chapter_number"]))
        except QuestError as exc:
            # Retrying cannot fix a missing quest or chapter
            logger.warning("Dropping %s task %s: %s", COLLECT_VOTES, payload, exc)

    async def _on_start_quest(self, payload: dict[str, Any]) -> None:
        try:
            result = await self.start_quest(
                origin_message_id=payload["origin_message_id"],
                reply_target=payload.get("reply_target") or payload["origin_message_id"],
                seed_text=payload.get("seed_text", ""),
                author_handle=payload.get("author_handle", ""),
                conversation_id=payload.get("conversation_id"),
                in_reply_to=payload.get("in_reply_to", ""),
            )
        except QuestError as exc:
            logger.warning("Dropping %s task %s: %s", START_QUEST, payload, exc)
            return
        logger.info("Start request %s: %s", payload["origin_message_id"], result.reason)

    # ── Starting ────────────────────────────────────────────────

    async def start_quest(
        self,
        origin_message_id: str,
        reply_target: str,
        seed_text: str,
        author_handle: str,
        conversation_id: str | None = None,
        in_reply_to: str = "",
    ) -> StartResult:
        """Create a quest from a seed message and post its first chapter.

        Generation and posting happen before anything is persisted, so a
        failure leaves no quest behind and the error reaches the caller.
        ``in_reply_to`` is the message the request itself replies to; a
        request replying to one of the running quest's chapters is a vote
        and is ignored here.
        """
        conversation_id = conversation_id or origin_message_id
        async with self._locked(f"conversation:{conversation_id}"):
            active = await self._store.find_active_quest(conversation_id)
            if active is not None:
                return await self._reject_while_active(active, reply_target, seed_text, in_reply_to)

            state = QuestState()
            context = None
            if self._settings.evaluate_seeds:
                context = await self._narrator.evaluate_seed(seed_text)
                if not context.has_potential:
                    logger.info("Seed %s rejected: %s", origin_message_id, context.reason)
                    if context.rejection_message:
                        await self._social.post(context.rejection_message, reply_to=reply_target)
                    return StartResult(started=False, reason="rejected")
                state.topic = context.topic
                state.historical_parallels = list(context.historical_parallels)
                state.conflict_points = list(context.conflict_points)

            opening = await self._narrator.generate_opening_chapter(seed_text, context)
            if not isinstance(opening.options, Choices):
                raise NarrativeError("Opening chapter must offer two options")
            state.canon_title = opening.title
            state.opening_scenario = opening.content

            short_id = new_short_id()
            text = format_chapter_message(
                1,
                opening.content,
                opening.options,
                short_id,
                canon_title=state.canon_title,
                public_url=self._settings.public_url,
                voting_window_seconds=self._settings.voting_window_seconds,
            )
            message_id = await self._social.post(text, reply_to=reply_target)

            quest, _ = await self._store.create_quest(
                short_id=short_id,
                conversation_id=conversation_id,
                origin_message_id=origin_message_id,
                seed_text=seed_text,
                author_handle=author_handle,
                state=state,
                opening=opening,
                posted_message_id=message_id,
                chapter_deadline=voting_deadline(self._settings.voting_window_seconds, self._clock()),
            )
            logger.info(
                "Quest %s (%s) started by @%s: %s",
                quest.short_id, quest.id, author_handle, state.canon_title or "untitled",
            )
            await self._schedule_collection(quest.id, 1)
            return StartResult(started=True, quest_id=quest.id, short_id=quest.short_id)

    async def _reject_while_active(
        self,
        active: Quest,
        reply_target: str,
        request_text: str,
        in_reply_to: str,
    ) -> StartResult:
        chapters = await self._store.list_chapters(active.id)
        posted = {c.posted_message_id for c in chapters if c.is_posted}
        if in_reply_to and in_reply_to in posted:
            logger.debug("Reply to a chapter of quest %s is a vote, not a request", active.short_id)
            return StartResult(started=False, quest_id=active.id, short_id=active.short_id, reason="voting")

        text = await self._narrator.quest_already_running_reply(
            active.short_id, active.last_posted_message_id, request_text
        )
        await self._social.post(text, reply_to=reply_target)
        logger.info("Quest %s already running; told %s", active.short_id, reply_target)
        return StartResult(
            started=False, quest_id=active.id, short_id=active.short_id, reason="already_active"
        )

    # ── Advancing ───────────────────────────────────────────────

    async def advance(self, quest_id: str, chapter_number: int) -> None:
        """Close voting on ``chapter_number`` and move the quest on.

        Idempotent: a call for a chapter the quest has already moved past,
        or for a quest that is no longer active, does nothing.
        """
        async with self._locked(quest_id):
            await self._advance(quest_id, chapter_number)

    async def _advance(self, quest_id: str, number: int) -> None:
        quest = await self._store.get_quest(quest_id)
        if quest is None:
            raise QuestNotFoundError(quest_id)
        chapter = await self._store.get_chapter(quest_id, number)
        if chapter is None:
            raise ChapterNotFoundError(quest_id, number)
        if quest.current_chapter > number:
            logger.info(
                "Quest %s is already on chapter %d; ignoring trigger for %d",
                quest.short_id, quest.current_chapter, number,
            )
            return
        if not quest.is_active:
            logger.info("Quest %s is %s; ignoring trigger for chapter %d", quest.short_id, quest.status, number)
            return
        if quest.current_chapter < number:
            logger.warning(
                "Quest %s has not reached chapter %d (current %d); ignoring trigger",
                quest.short_id, number, quest.current_chapter,
            )
            return

        if is_final_chapter(number, self._settings.chapter_count) or chapter.is_terminal:
            await self._store.complete_quest(quest_id)
            logger.info("Quest %s completed at chapter %d", quest.short_id, number)
            return

        following = await self._store.get_chapter(quest_id, number + 1)
        if following is not None and following.is_posted:
            logger.info("Chapter %d of quest %s already posted", number + 1, quest.short_id)
            return

        winner = chapter.chosen_option
        if following is None:
            records, winner = await self._collector.collect_and_tally(chapter, quest.chapter_deadline)
            await self._record_tally(chapter, records, winner)

            final = is_final_chapter(number + 1, self._settings.chapter_count)
            history = await self._history(quest_id, number, winner)
            draft = await self._narrator.generate_next_chapter(history, winner, number + 1, final=final)
            if not final and isinstance(draft.options, Terminal):
                raise NarrativeError(f"Chapter {number + 1} was generated without options")
            if final and not isinstance(draft.options, Terminal):
                draft.options = Terminal()

            following = await self._store.insert_chapter_if_absent(quest_id, number + 1, draft)
            if following is None:
                logger.info(
                    "Chapter %d of quest %s was created concurrently; discarding draft",
                    number + 1, quest.short_id,
                )
                return
        else:
            logger.warning(
                "Chapter %d of quest %s exists but is not posted yet; resuming",
                number + 1, quest.short_id,
            )

        message_id = await self._post_chapter(quest, following, expected_chapter=number)
        if message_id and winner:
            await self._notify_winners(chapter, winner, following.chapter_number, message_id)

    async def _history(self, quest_id: str, upto: int, winner: int) -> list[ChapterHistory]:
        history = []
        for ch in await self._store.list_chapters(quest_id):
            if ch.chapter_number > upto:
                break
            selected = winner if ch.chapter_number == upto else ch.chosen_option
            history.append(
                ChapterHistory(
                    chapter_number=ch.chapter_number,
                    content=ch.content,
                    selected_option=selected,
                    sources=list(ch.sources),
                )
            )
        return history

    async def _record_tally(self, chapter: Chapter, records: list[VoteRecord], winner: int) -> None:
        """Persist each interpreted reply as a vote, then the chapter's outcome."""
        recorded = 0
        for record in records:
            try:
                await self.record_vote(
                    chapter.id,
                    record.voter_handle,
                    record.selected_option,
                    reply_text=record.reply_text,
                    reply_message_id=record.reply_message_id,
                    interpretation=record.note,
                    weight=record.weight,
                )
                recorded += 1
            except AlreadyVotedError:
                logger.debug("Skipping repeat vote by %s on chapter %d", record.voter_handle, chapter.chapter_number)
        await self._store.set_chosen_option(chapter.id, winner)
        logger.info(
            "Chapter %d: %d vote(s) recorded from %d replies, option %d wins",
            chapter.chapter_number, recorded, len(records), winner,
        )

    async def _post_chapter(self, quest: Quest, chapter: Chapter, expected_chapter: int) -> str:
        """Post ``chapter`` and move the quest onto it. Returns the message id."""
        final = chapter.is_terminal
        text = format_chapter_message(
            chapter.chapter_number,
            chapter.content,
            chapter.options,
            quest.short_id,
            canon_title=quest.state.canon_title if final else "",
            public_url=self._settings.public_url,
            voting_window_seconds=self._settings.voting_window_seconds,
        )
        now = self._clock()
        stale_before = now - timedelta(seconds=self._settings.posting_claim_seconds)
        if not await self._store.claim_chapter_posting(chapter.id, now, stale_before):
            logger.info(
                "Chapter %d of quest %s is already being posted; leaving it",
                chapter.chapter_number, quest.short_id,
            )
            return ""

        reply_to = quest.last_posted_message_id or quest.origin_message_id
        try:
            message_id = await self._social.post(text, reply_to=reply_to)
        except Exception:
            await self._store.release_chapter_posting(chapter.id)
            raise

        deadline = None if final else voting_deadline(self._settings.voting_window_seconds, self._clock())
        moved = await self._store.record_chapter_posted(
            chapter_id=chapter.id,
            posted_message_id=message_id,
            quest_id=quest.id,
            expected_chapter=expected_chapter,
            chapter_deadline=deadline,
            complete=final,
        )
        if not moved:
            logger.warning(
                "Quest %s moved past chapter %d while chapter %d was posting",
                quest.short_id, expected_chapter, chapter.chapter_number,
            )
            return ""

        if final:
            logger.info("Quest %s completed with chapter %d", quest.short_id, chapter.chapter_number)
        else:
            logger.info("Quest %s now awaiting votes on chapter %d", quest.short_id, chapter.chapter_number)
            await self._schedule_collection(quest.id, chapter.chapter_number)
        return message_id

    async def _notify_winners(
        self,
        chapter: Chapter,
        winner: int,
        next_number: int,
        next_message_id: str,
    ) -> None:
        """Reply to everyone who backed the winning option. Best effort."""
        if not isinstance(chapter.options, Choices):
            return
        votes = await self._store.list_votes(chapter.id, selected_option=winner)
        targets = [v for v in votes if v.reply_message_id]
        if not targets:
            return
        try:
            text = await self._narrator.vote_win_notification(
                next_number, next_message_id, chapter.options.get(winner).text
            )
        except Exception as exc:
            logger.warning("Could not write winner notification for chapter %d: %s", chapter.chapter_number, exc)
            return

        sent = 0
        for vote in targets:
            try:
                await self._social.post(text, reply_to=vote.reply_message_id)
                sent += 1
            except Exception as exc:
                logger.warning("Failed to notify @%s: %s", vote.voter_handle, exc)
        logger.info("Notified %d of %d winning voter(s)", sent, len(targets))

    async def _schedule_collection(self, quest_id: str, chapter_number: int, delay: float | None = None) -> str:
        if delay is None:
            delay = self._settings.collection_delay_seconds
        return await self._scheduler.schedule(
            COLLECT_VOTES,
            {"quest_id": quest_id, "chapter_number": chapter_number},
            delay=delay,
        )

    # ── Voting ──────────────────────────────────────────────────

    async def record_vote(
        self,
        chapter_id: str,
        voter_handle: str,
        option: int,
        reply_text: str = "",
        reply_message_id: str = "",
        interpretation: str = "",
        weight: float = 1.0,
    ) -> Vote:
        """Record one voter's choice on a chapter.

        Raises a QuestError subclass when the chapter or quest is missing,
        the quest is no longer active, the option is out of range, or the
        voter already voted on this chapter.
        """
        chapter = await self._store.get_chapter_by_id(chapter_id)
        if chapter is None:
            raise ChapterNotFoundError("?", chapter_id)
        quest = await self._store.get_quest(chapter.quest_id)
        if quest is None:
            raise QuestNotFoundError(chapter.quest_id)
        if not quest.is_active:
            raise QuestNotActiveError(quest.id, quest.status)
        option_count = len(chapter.options)
        if not 1 <= option <= option_count:
            raise InvalidOptionError(option, option_count)

        voter = await self._store.get_or_create_voter(voter_handle.lstrip("@"))
        return await self._store.insert_vote(
            chapter_id=chapter.id,
            voter=voter,
            selected_option=option,
            reply_text=reply_text,
            reply_message_id=reply_message_id,
            interpretation=interpretation,
            weight=weight,
        )
