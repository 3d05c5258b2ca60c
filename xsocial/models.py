"""Data models for X API responses."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _parse_created_at(value: Any) -> datetime | None:
    raw = _as_text(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Reply:
    """A reply addressed to one of our posted messages."""

    id: str
    text: str
    author_handle: str = ""
    author_id: str = ""
    created_at: datetime | None = None
    in_reply_to: str = ""

    @classmethod
    def from_api(cls, data: dict, users: dict[str, str] | None = None) -> Reply:
        """Build from a v2 tweet object; ``users`` maps author ids to usernames."""
        author_id = _as_text(data.get("author_id", ""))
        handle = (users or {}).get(author_id, "") or _as_text(data.get("author_username", ""))
        in_reply_to = ""
        for ref in data.get("referenced_tweets") or []:
            if isinstance(ref, dict) and ref.get("type") == "replied_to":
                in_reply_to = _as_text(ref.get("id", ""))
                break
        return cls(
            id=_as_text(data.get("id", "")),
            text=_as_text(data.get("text", "")),
            author_handle=handle or author_id,
            author_id=author_id,
            created_at=_parse_created_at(data.get("created_at")),
            in_reply_to=in_reply_to,
        )


@dataclass
class PostedMessage:
    id: str
    text: str = ""

    @classmethod
    def from_api(cls, data: dict) -> PostedMessage:
        return cls(
            id=_as_text(data.get("id", "")),
            text=_as_text(data.get("text", "")),
        )


def users_by_id(includes: dict | None) -> dict[str, str]:
    users = (includes or {}).get("users") or []
    return {
        _as_text(u.get("id", "")): _as_text(u.get("username", ""))
        for u in users
        if isinstance(u, dict)
    }
