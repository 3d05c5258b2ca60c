"""Narrative presentation — chapter messages, deadlines, lifecycle labels."""

from .progression import (
    format_chapter_message,
    is_final_chapter,
    quest_phase,
    story_link,
    voting_deadline,
    voting_window_label,
)

__all__ = [
    "format_chapter_message",
    "is_final_chapter",
    "quest_phase",
    "story_link",
    "voting_deadline",
    "voting_window_label",
]
