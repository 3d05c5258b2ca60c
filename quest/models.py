"""Domain models for quests, chapters and votes."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

# Quest lifecycle
ACTIVE = "ACTIVE"
COMPLETED = "COMPLETED"
ARCHIVED = "ARCHIVED"  # administrative only, never set by the engine

QUEST_STATUSES = (ACTIVE, COMPLETED, ARCHIVED)

STATE_VERSION = 1


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def parse_ts(ts: str | None) -> datetime | None:
    if not ts:
        return None
    raw = ts.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_ts(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ── Chapter options (tagged variant) ────────────────────────────


@dataclass(frozen=True)
class ChoiceOption:
    text: str
    label: str = ""
    description: str = ""

    @classmethod
    def from_api(cls, data: Any, index: int = 0) -> ChoiceOption:
        if isinstance(data, str):
            return cls(text=data, label=str(index + 1))
        data = data or {}
        return cls(
            text=_as_text(data.get("text", "")),
            label=_as_text(data.get("label", "")) or str(index + 1),
            description=_as_text(data.get("description", "")),
        )


@dataclass(frozen=True)
class Terminal:
    """Options of the final chapter: nothing left to vote on."""

    def __len__(self) -> int:
        return 0

    def as_list(self) -> list[ChoiceOption]:
        return []


@dataclass(frozen=True)
class Choices:
    """The two choices offered by a non-terminal chapter."""

    first: ChoiceOption
    second: ChoiceOption

    def __len__(self) -> int:
        return 2

    def as_list(self) -> list[ChoiceOption]:
        return [self.first, self.second]

    def get(self, option: int) -> ChoiceOption:
        """Return the 1-based option."""
        if option == 1:
            return self.first
        if option == 2:
            return self.second
        raise IndexError(f"option {option} out of range")


Options = Union[Terminal, Choices]


def options_from_list(raw: list[Any] | None) -> Options:
    """Build Options from a stored or generated list (empty/None = Terminal)."""
    if not raw:
        return Terminal()
    if len(raw) != 2:
        raise ValueError(f"a chapter offers 0 or 2 options, got {len(raw)}")
    return Choices(ChoiceOption.from_api(raw[0], 0), ChoiceOption.from_api(raw[1], 1))


def options_to_list(options: Options) -> list[dict[str, str]]:
    return [asdict(opt) for opt in options.as_list()]


# ── Quest state ─────────────────────────────────────────────────


@dataclass
class QuestState:
    """Narrative context carried across chapters of a quest."""

    version: int = STATE_VERSION
    canon_title: str = ""
    topic: str = ""
    historical_parallels: list[str] = field(default_factory=list)
    conflict_points: list[str] = field(default_factory=list)
    opening_scenario: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | None) -> QuestState:
        if not raw:
            return cls()
        data = json.loads(raw)
        version = data.get("version", STATE_VERSION)
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported quest state version: {version}")
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class Source:
    title: str
    url: str = ""
    relevant_fact: str = ""

    @classmethod
    def from_api(cls, data: dict) -> Source:
        return cls(
            title=_as_text(data.get("title", "")),
            url=_as_text(data.get("url", "")),
            relevant_fact=_as_text(data.get("relevant_fact", data.get("relevantFact", ""))),
        )


# ── Entities ────────────────────────────────────────────────────


@dataclass
class Quest:
    id: str
    short_id: str
    conversation_id: str
    origin_message_id: str = ""
    seed_text: str = ""
    author_handle: str = ""
    status: str = ACTIVE
    current_chapter: int = 1
    chapter_deadline: datetime | None = None
    last_posted_message_id: str = ""
    state: QuestState = field(default_factory=QuestState)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    @classmethod
    def from_row(cls, row: dict) -> Quest:
        return cls(
            id=row["id"],
            short_id=row["short_id"],
            conversation_id=row["conversation_id"],
            origin_message_id=row.get("origin_message_id") or "",
            seed_text=row.get("seed_text") or "",
            author_handle=row.get("author_handle") or "",
            status=row["status"],
            current_chapter=int(row["current_chapter"]),
            chapter_deadline=parse_ts(row.get("chapter_deadline")),
            last_posted_message_id=row.get("last_posted_message_id") or "",
            state=QuestState.from_json(row.get("state")),
            created_at=parse_ts(row.get("created_at")),
            updated_at=parse_ts(row.get("updated_at")),
        )


@dataclass
class Chapter:
    id: str
    quest_id: str
    chapter_number: int
    content: str
    options: Options = field(default_factory=Terminal)
    title: str = ""
    sources: list[Source] = field(default_factory=list)
    posted_message_id: str = ""  # "" until the chapter has been posted
    chosen_option: int | None = None
    created_at: datetime | None = None

    @property
    def is_posted(self) -> bool:
        return bool(self.posted_message_id)

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.options, Terminal)

    @classmethod
    def from_row(cls, row: dict) -> Chapter:
        return cls(
            id=row["id"],
            quest_id=row["quest_id"],
            chapter_number=int(row["chapter_number"]),
            content=row.get("content") or "",
            options=options_from_list(json.loads(row.get("options") or "[]")),
            title=row.get("title") or "",
            sources=[Source.from_api(s) for s in json.loads(row.get("sources") or "[]")],
            posted_message_id=row.get("posted_message_id") or "",
            chosen_option=row.get("chosen_option"),
            created_at=parse_ts(row.get("created_at")),
        )


@dataclass
class Voter:
    id: str
    handle: str
    created_at: datetime | None = None


@dataclass
class Vote:
    id: str
    chapter_id: str
    voter_id: str
    selected_option: int
    reply_text: str = ""
    reply_message_id: str = ""
    interpretation: str = ""
    weight: float = 1.0
    voted_at: datetime | None = None
    voter_handle: str = ""

    @classmethod
    def from_row(cls, row: dict) -> Vote:
        return cls(
            id=row["id"],
            chapter_id=row["chapter_id"],
            voter_id=row["voter_id"],
            selected_option=int(row["selected_option"]),
            reply_text=row.get("reply_text") or "",
            reply_message_id=row.get("reply_message_id") or "",
            interpretation=row.get("interpretation") or "",
            weight=float(row.get("weight") or 0.0),
            voted_at=parse_ts(row.get("voted_at")),
            voter_handle=row.get("handle") or "",
        )


# ── Generator payloads ──────────────────────────────────────────


@dataclass
class ChapterDraft:
    """A generated chapter, not yet persisted."""

    title: str
    content: str
    options: Options = field(default_factory=Terminal)
    sources: list[Source] = field(default_factory=list)


@dataclass
class ChapterHistory:
    chapter_number: int
    content: str
    selected_option: int | None = None
    sources: list[Source] = field(default_factory=list)


@dataclass
class SeedEvaluation:
    has_potential: bool
    reason: str = ""
    rejection_message: str = ""
    topic: str = ""
    historical_parallels: list[str] = field(default_factory=list)
    conflict_points: list[str] = field(default_factory=list)


@dataclass
class VoteRecord:
    """One interpreted reply; every reply counts towards the tally."""

    voter_handle: str
    reply_text: str
    reply_message_id: str
    selected_option: int
    weight: float
    note: str = ""


@dataclass
class StartResult:
    started: bool
    quest_id: str = ""
    short_id: str = ""
    reason: str = ""
