"""Exceptions raised by the quest core."""

from __future__ import annotations


class ConfigError(Exception):
    """Raised at startup when required configuration is missing."""


class QuestError(Exception):
    """Base class for domain validation errors."""


class QuestNotFoundError(QuestError):
    def __init__(self, quest_id: str):
        self.quest_id = quest_id
        super().__init__(f"Quest {quest_id} not found")


class ChapterNotFoundError(QuestError):
    def __init__(self, quest_id: str, chapter: int | str):
        self.quest_id = quest_id
        self.chapter = chapter
        super().__init__(f"Chapter {chapter} not found for quest {quest_id}")


class QuestNotActiveError(QuestError):
    def __init__(self, quest_id: str, status: str):
        self.status = status
        super().__init__(f"Quest {quest_id} is not active (status={status})")


class InvalidOptionError(QuestError):
    def __init__(self, option: int, option_count: int):
        self.option = option
        self.option_count = option_count
        super().__init__(f"Invalid option {option}; chapter offers {option_count}")


class AlreadyVotedError(QuestError):
    """A voter already has a vote on this chapter. Recoverable."""

    def __init__(self, voter_handle: str, chapter_id: str):
        self.voter_handle = voter_handle
        self.chapter_id = chapter_id
        super().__init__(f"{voter_handle} has already voted on chapter {chapter_id}")


class QuestAlreadyActiveError(QuestError):
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"A quest is already active for conversation {conversation_id}")
