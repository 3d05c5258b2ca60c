"""Chapter presentation and quest timing helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from quest.models import ACTIVE, Chapter, Choices, Options, Quest


def voting_deadline(window_seconds: float, now: datetime | None = None) -> datetime:
    """Deadline advertised on a freshly posted chapter."""
    now_dt = now or datetime.now(timezone.utc)
    if now_dt.tzinfo is None:
        now_dt = now_dt.replace(tzinfo=timezone.utc)
    return now_dt.astimezone(timezone.utc) + timedelta(seconds=window_seconds)


def is_final_chapter(chapter_number: int, chapter_count: int) -> bool:
    return chapter_number >= chapter_count


def voting_window_label(window_seconds: float) -> str:
    """Human-facing duration, e.g. "2 min" or "45 sec"."""
    if window_seconds < 60:
        return f"{int(window_seconds)} sec"
    minutes = round(window_seconds / 60)
    if minutes < 60:
        return f"{minutes} min"
    hours = window_seconds / 3600
    return f"{hours:g}h"


def story_link(public_url: str, short_id: str) -> str:
    if not public_url:
        return ""
    return f"{public_url.rstrip('/')}/{short_id}"


def format_chapter_message(
    chapter_number: int,
    content: str,
    options: Options,
    short_id: str,
    canon_title: str = "",
    public_url: str = "",
    voting_window_seconds: float = 120,
) -> str:
    """Text posted for a chapter.

    The canon title heads chapter 1 and the final chapter. Chapters with
    choices list them numbered and invite replies; the final chapter closes
    the story.
    """
    link = story_link(public_url, short_id)
    heading = f"📜 {canon_title.upper()}\n\n" if canon_title else ""

    if not isinstance(options, Choices):
        text = f"{heading}{content}\n\n—\n\nThe timeline has spoken."
        if link:
            text += f"\n📖 Full story: {link}"
        return text

    choices = "\n\n".join(
        f"{idx}. {opt.text}" + (f" — {opt.description}" if opt.description else "")
        for idx, opt in enumerate(options.as_list(), start=1)
    )
    text = (
        f"{heading if chapter_number == 1 else ''}{content}\n\n{choices}\n\n"
        "Reply with 1 or 2 to vote.\n\n"
        f"Voting ends in {voting_window_label(voting_window_seconds)}."
    )
    if link:
        text += f"\n📖 {link}"
    return text


def quest_phase(quest: Quest, latest: Chapter | None = None) -> str:
    """Lifecycle label: AWAITING_VOTES(n), GENERATING(n), COMPLETED, ..."""
    if quest.status != ACTIVE:
        return quest.status
    if latest is not None and latest.chapter_number > quest.current_chapter:
        return f"GENERATING({latest.chapter_number})"
    if quest.chapter_deadline is None:
        return f"GENERATING({quest.current_chapter + 1})"
    return f"AWAITING_VOTES({quest.current_chapter})"
