"""SQLite persistence for quests, chapters, voters and votes.

The store enforces the uniqueness rules the engine relies on:
one ACTIVE quest per conversation, one chapter per (quest, number),
one vote per (chapter, voter).
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from .errors import AlreadyVotedError, QuestAlreadyActiveError
from .models import (
    ACTIVE,
    COMPLETED,
    Chapter,
    ChapterDraft,
    Quest,
    QuestState,
    Vote,
    Voter,
    format_ts,
    options_to_list,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return format_ts(_now())


def new_short_id() -> str:
    return secrets.token_urlsafe(6)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS quests (
    id TEXT PRIMARY KEY,
    short_id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    origin_message_id TEXT,
    seed_text TEXT,
    author_handle TEXT,
    status TEXT NOT NULL,           -- "ACTIVE" | "COMPLETED" | "ARCHIVED"
    current_chapter INTEGER NOT NULL DEFAULT 1,
    chapter_deadline TEXT,          -- NULL unless awaiting votes
    last_posted_message_id TEXT,
    state TEXT,                     -- JSON, versioned QuestState
    created_at TEXT,
    updated_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS quests_active_conversation
    ON quests(conversation_id) WHERE status = 'ACTIVE';

CREATE INDEX IF NOT EXISTS quests_status_deadline
    ON quests(status, chapter_deadline);

CREATE TABLE IF NOT EXISTS chapters (
    id TEXT PRIMARY KEY,
    quest_id TEXT NOT NULL REFERENCES quests(id),
    chapter_number INTEGER NOT NULL,
    title TEXT,
    content TEXT NOT NULL,
    options TEXT NOT NULL,          -- JSON list, [] for the final chapter
    sources TEXT NOT NULL,          -- JSON list
    posted_message_id TEXT NOT NULL DEFAULT '',
    chosen_option INTEGER,          -- winning option once votes are tallied
    posting_claimed_at TEXT,        -- set while one process is posting the chapter
    created_at TEXT,
    UNIQUE (quest_id, chapter_number)
);

CREATE TABLE IF NOT EXISTS voters (
    id TEXT PRIMARY KEY,
    handle TEXT NOT NULL UNIQUE,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS votes (
    id TEXT PRIMARY KEY,
    chapter_id TEXT NOT NULL REFERENCES chapters(id),
    voter_id TEXT NOT NULL REFERENCES voters(id),
    selected_option INTEGER NOT NULL,
    reply_text TEXT,
    reply_message_id TEXT,
    interpretation TEXT,
    weight REAL,
    voted_at TEXT,
    UNIQUE (chapter_id, voter_id)
);
"""


async def _fetchall(cursor: aiosqlite.Cursor) -> list[dict[str, Any]]:
    cols = [d[0] for d in cursor.description]
    rows = await cursor.fetchall()
    return [dict(zip(cols, row)) for row in rows]


async def _fetchone(cursor: aiosqlite.Cursor) -> dict[str, Any] | None:
    row = await cursor.fetchone()
    if row is None:
        return None
    cols = [d[0] for d in cursor.description]
    return dict(zip(cols, row))


class QuestStore:
    """Quest persistence backed by a single SQLite file."""

    def __init__(self, db_path: str | Path):
        self._path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.debug("Quest store ready at %s", self._path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> QuestStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── Quests ──────────────────────────────────────────────────

    async def create_quest(
        self,
        *,
        short_id: str,
        conversation_id: str,
        origin_message_id: str,
        seed_text: str,
        author_handle: str,
        state: QuestState,
        opening: ChapterDraft,
        posted_message_id: str,
        chapter_deadline: datetime,
    ) -> tuple[Quest, Chapter]:
        """Persist a new ACTIVE quest and its already-posted first chapter atomically."""
        quest_id = str(uuid.uuid4())
        chapter_id = str(uuid.uuid4())
        now = _now_iso()
        try:
            await self._db.execute(
                "INSERT INTO quests (id, short_id, conversation_id, origin_message_id, seed_text, "
                "author_handle, status, current_chapter, chapter_deadline, last_posted_message_id, "
                "state, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)",
                (
                    quest_id,
                    short_id,
                    conversation_id,
                    origin_message_id,
                    seed_text,
                    author_handle,
                    ACTIVE,
                    format_ts(chapter_deadline),
                    posted_message_id,
                    state.to_json(),
                    now,
                    now,
                ),
            )
            await self._db.execute(
                "INSERT INTO chapters (id, quest_id, chapter_number, title, content, options, sources, "
                "posted_message_id, created_at) VALUES (?, ?, 1, ?, ?, ?, ?, ?, ?)",
                (
                    chapter_id,
                    quest_id,
                    opening.title,
                    opening.content,
                    json.dumps(options_to_list(opening.options)),
                    json.dumps([asdict(s) for s in opening.sources]),
                    posted_message_id,
                    now,
                ),
            )
            await self._db.commit()
        except sqlite3.IntegrityError as exc:
            await self._db.rollback()
            if "conversation_id" in str(exc) or "quests_active_conversation" in str(exc):
                raise QuestAlreadyActiveError(conversation_id) from exc
            raise
        quest = await self.get_quest(quest_id)
        chapter = await self.get_chapter(quest_id, 1)
        return quest, chapter

    async def get_quest(self, quest_id: str) -> Quest | None:
        cursor = await self._db.execute("SELECT * FROM quests WHERE id = ?", (quest_id,))
        row = await _fetchone(cursor)
        return Quest.from_row(row) if row else None

    async def get_quest_by_short_id(self, short_id: str) -> Quest | None:
        cursor = await self._db.execute("SELECT * FROM quests WHERE short_id = ?", (short_id,))
        row = await _fetchone(cursor)
        return Quest.from_row(row) if row else None

    async def find_active_quest(self, conversation_id: str) -> Quest | None:
        cursor = await self._db.execute(
            "SELECT * FROM quests WHERE conversation_id = ? AND status = ? LIMIT 1",
            (conversation_id, ACTIVE),
        )
        row = await _fetchone(cursor)
        return Quest.from_row(row) if row else None

    async def list_quests(self, status: str, limit: int = 5, offset: int = 0) -> list[Quest]:
        order = "updated_at" if status == COMPLETED else "created_at"
        cursor = await self._db.execute(
            f"SELECT * FROM quests WHERE status = ? ORDER BY {order} DESC LIMIT ? OFFSET ?",
            (status, limit, offset),
        )
        return [Quest.from_row(row) for row in await _fetchall(cursor)]

    async def count_quests(self, status: str) -> int:
        cursor = await self._db.execute("SELECT COUNT(*) FROM quests WHERE status = ?", (status,))
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def list_active_quests(self) -> list[Quest]:
        cursor = await self._db.execute(
            "SELECT * FROM quests WHERE status = ? ORDER BY created_at ASC", (ACTIVE,)
        )
        return [Quest.from_row(row) for row in await _fetchall(cursor)]

    async def list_overdue_quests(self, now: datetime) -> list[Quest]:
        """ACTIVE quests whose voting deadline is before ``now``."""
        cursor = await self._db.execute(
            "SELECT * FROM quests WHERE status = ? AND chapter_deadline IS NOT NULL "
            "AND chapter_deadline < ? ORDER BY chapter_deadline ASC",
            (ACTIVE, format_ts(now)),
        )
        return [Quest.from_row(row) for row in await _fetchall(cursor)]

    async def set_current_chapter(self, quest_id: str, chapter_number: int) -> None:
        await self._db.execute(
            "UPDATE quests SET current_chapter = ?, updated_at = ? WHERE id = ?",
            (chapter_number, _now_iso(), quest_id),
        )
        await self._db.commit()

    async def repair_current_chapter(self, quest_id: str, chapter: Chapter) -> None:
        """Point a quest at a chapter that was created after its last recorded move."""
        await self._db.execute(
            "UPDATE quests SET current_chapter = ?, last_posted_message_id = ?, updated_at = ? "
            "WHERE id = ?",
            (chapter.chapter_number, chapter.posted_message_id, _now_iso(), quest_id),
        )
        await self._db.commit()

    async def complete_quest(self, quest_id: str) -> None:
        await self._db.execute(
            "UPDATE quests SET status = ?, chapter_deadline = NULL, updated_at = ? WHERE id = ?",
            (COMPLETED, _now_iso(), quest_id),
        )
        await self._db.commit()

    # ── Chapters ────────────────────────────────────────────────

    async def get_chapter(self, quest_id: str, chapter_number: int) -> Chapter | None:
        cursor = await self._db.execute(
            "SELECT * FROM chapters WHERE quest_id = ? AND chapter_number = ?",
            (quest_id, chapter_number),
        )
        row = await _fetchone(cursor)
        return Chapter.from_row(row) if row else None

    async def get_chapter_by_id(self, chapter_id: str) -> Chapter | None:
        cursor = await self._db.execute("SELECT * FROM chapters WHERE id = ?", (chapter_id,))
        row = await _fetchone(cursor)
        return Chapter.from_row(row) if row else None

    async def list_chapters(self, quest_id: str) -> list[Chapter]:
        cursor = await self._db.execute(
            "SELECT * FROM chapters WHERE quest_id = ? ORDER BY chapter_number ASC",
            (quest_id,),
        )
        return [Chapter.from_row(row) for row in await _fetchall(cursor)]

    async def latest_chapter(self, quest_id: str) -> Chapter | None:
        cursor = await self._db.execute(
            "SELECT * FROM chapters WHERE quest_id = ? ORDER BY chapter_number DESC LIMIT 1",
            (quest_id,),
        )
        row = await _fetchone(cursor)
        return Chapter.from_row(row) if row else None

    async def set_chosen_option(self, chapter_id: str, option: int) -> None:
        await self._db.execute(
            "UPDATE chapters SET chosen_option = ? WHERE id = ?", (option, chapter_id)
        )
        await self._db.commit()

    async def insert_chapter_if_absent(
        self,
        quest_id: str,
        chapter_number: int,
        draft: ChapterDraft,
    ) -> Chapter | None:
        """Create an unposted chapter. Returns None when it already exists."""
        chapter_id = str(uuid.uuid4())
        cursor = await self._db.execute(
            "INSERT INTO chapters (id, quest_id, chapter_number, title, content, options, sources, "
            "posted_message_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, '', ?) "
            "ON CONFLICT(quest_id, chapter_number) DO NOTHING",
            (
                chapter_id,
                quest_id,
                chapter_number,
                draft.title,
                draft.content,
                json.dumps(options_to_list(draft.options)),
                json.dumps([asdict(s) for s in draft.sources]),
                _now_iso(),
            ),
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_chapter_by_id(chapter_id)

    async def claim_chapter_posting(self, chapter_id: str, now: datetime, stale_before: datetime) -> bool:
        """Reserve an unposted chapter for posting by this caller.

        A claim older than ``stale_before`` is treated as abandoned, so a
        poster that crashed mid-post does not block the chapter forever.
        """
        cursor = await self._db.execute(
            "UPDATE chapters SET posting_claimed_at = ? "
            "WHERE id = ? AND posted_message_id = '' "
            "AND (posting_claimed_at IS NULL OR posting_claimed_at < ?)",
            (format_ts(now), chapter_id, format_ts(stale_before)),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def release_chapter_posting(self, chapter_id: str) -> None:
        await self._db.execute(
            "UPDATE chapters SET posting_claimed_at = NULL "
            "WHERE id = ? AND posted_message_id = ''",
            (chapter_id,),
        )
        await self._db.commit()

    async def record_chapter_posted(
        self,
        *,
        chapter_id: str,
        posted_message_id: str,
        quest_id: str,
        expected_chapter: int,
        chapter_deadline: datetime | None,
        complete: bool = False,
    ) -> bool:
        """Mark a chapter posted and move the quest onto it in one transaction.

        The quest row only moves if it is still on ``expected_chapter``;
        returns False when another transition got there first.
        """
        cursor = await self._db.execute(
            "SELECT chapter_number FROM chapters WHERE id = ?", (chapter_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return False
        new_chapter = int(row[0])
        now = _now_iso()
        try:
            cursor = await self._db.execute(
                "UPDATE chapters SET posted_message_id = ? WHERE id = ? AND posted_message_id = ''",
                (posted_message_id, chapter_id),
            )
            if cursor.rowcount != 1:
                await self._db.rollback()
                return False
            cursor = await self._db.execute(
                "UPDATE quests SET current_chapter = ?, last_posted_message_id = ?, "
                "chapter_deadline = ?, status = ?, updated_at = ? "
                "WHERE id = ? AND current_chapter = ? AND status = ?",
                (
                    new_chapter,
                    posted_message_id,
                    None if complete else format_ts(chapter_deadline),
                    COMPLETED if complete else ACTIVE,
                    now,
                    quest_id,
                    expected_chapter,
                    ACTIVE,
                ),
            )
            moved = cursor.rowcount == 1
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        return moved

    # ── Voters & votes ──────────────────────────────────────────

    async def get_or_create_voter(self, handle: str) -> Voter:
        await self._db.execute(
            "INSERT INTO voters (id, handle, created_at) VALUES (?, ?, ?) "
            "ON CONFLICT(handle) DO NOTHING",
            (str(uuid.uuid4()), handle, _now_iso()),
        )
        await self._db.commit()
        cursor = await self._db.execute(
            "SELECT id, handle, created_at FROM voters WHERE handle = ?", (handle,)
        )
        row = await cursor.fetchone()
        return Voter(id=row[0], handle=row[1])

    async def insert_vote(
        self,
        *,
        chapter_id: str,
        voter: Voter,
        selected_option: int,
        reply_text: str = "",
        reply_message_id: str = "",
        interpretation: str = "",
        weight: float = 1.0,
    ) -> Vote:
        """Record a vote; a second vote by the same voter raises AlreadyVotedError."""
        vote_id = str(uuid.uuid4())
        try:
            await self._db.execute(
                "INSERT INTO votes (id, chapter_id, voter_id, selected_option, reply_text, "
                "reply_message_id, interpretation, weight, voted_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    vote_id,
                    chapter_id,
                    voter.id,
                    selected_option,
                    reply_text,
                    reply_message_id,
                    interpretation,
                    weight,
                    _now_iso(),
                ),
            )
            await self._db.commit()
        except sqlite3.IntegrityError as exc:
            await self._db.rollback()
            if "UNIQUE" in str(exc):
                raise AlreadyVotedError(voter.handle, chapter_id) from exc
            raise
        return Vote(
            id=vote_id,
            chapter_id=chapter_id,
            voter_id=voter.id,
            selected_option=selected_option,
            reply_text=reply_text,
            reply_message_id=reply_message_id,
            interpretation=interpretation,
            weight=weight,
            voter_handle=voter.handle,
        )

    async def has_voted(self, chapter_id: str, handle: str) -> bool:
        cursor = await self._db.execute(
            "SELECT 1 FROM votes JOIN voters ON voters.id = votes.voter_id "
            "WHERE votes.chapter_id = ? AND voters.handle = ? LIMIT 1",
            (chapter_id, handle),
        )
        return await cursor.fetchone() is not None

    async def list_votes(
        self,
        chapter_id: str,
        selected_option: int | None = None,
    ) -> list[Vote]:
        query = (
            "SELECT votes.*, voters.handle FROM votes "
            "JOIN voters ON voters.id = votes.voter_id WHERE votes.chapter_id = ?"
        )
        params: list[Any] = [chapter_id]
        if selected_option is not None:
            query += " AND votes.selected_option = ?"
            params.append(selected_option)
        query += " ORDER BY votes.voted_at ASC"
        cursor = await self._db.execute(query, tuple(params))
        return [Vote.from_row(row) for row in await _fetchall(cursor)]
