"""Vote collection and tallying for a posted chapter."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from .models import Chapter, Choices, VoteRecord
from .narrator import NarrativeGenerator
from .social import SocialClient

logger = logging.getLogger(__name__)

# Winner when nobody voted.
DEFAULT_OPTION = 1


def option_totals(records: Iterable[VoteRecord], option_count: int = 2) -> dict[int, float]:
    totals = {option: 0.0 for option in range(1, option_count + 1)}
    for record in records:
        if record.selected_option in totals:
            totals[record.selected_option] += record.weight
    return totals


def tally_votes(records: Iterable[VoteRecord], option_count: int = 2) -> int:
    """Return the option with the greatest summed weight.

    Ties go to the lower option number; no usable votes means option 1.
    """
    totals = option_totals(records, option_count)
    if not any(totals.values()):
        return DEFAULT_OPTION
    rounded = {option: round(total, 6) for option, total in totals.items()}
    return max(rounded, key=lambda option: (rounded[option], -option))


class VoteCollector:
    """Fetch replies to a chapter, interpret them, and pick a winner."""

    def __init__(
        self,
        social: SocialClient,
        narrator: NarrativeGenerator,
        ignore_handles: Iterable[str] = (),
    ):
        self._social = social
        self._narrator = narrator
        self._ignore = {h.lower().lstrip("@") for h in ignore_handles if h}

    async def collect_and_tally(
        self,
        chapter: Chapter,
        deadline: datetime | None,
    ) -> tuple[list[VoteRecord], int]:
        if not isinstance(chapter.options, Choices):
            logger.debug("Chapter %d has no options; nothing to tally", chapter.chapter_number)
            return [], DEFAULT_OPTION
        if not chapter.is_posted:
            logger.warning("Chapter %s was never posted; no votes to collect", chapter.id)
            return [], DEFAULT_OPTION

        replies = await self._social.fetch_replies(chapter.posted_message_id, before=deadline)
        seen: set[str] = set()
        usable = []
        for reply in replies:
            if reply.id in seen or reply.author_handle.lower() in self._ignore:
                continue
            seen.add(reply.id)
            usable.append(reply)
        logger.info("Collected %d replies for chapter %d", len(usable), chapter.chapter_number)

        if not usable:
            logger.info("No votes cast; defaulting to option %d", DEFAULT_OPTION)
            return [], DEFAULT_OPTION

        interpreted = await self._narrator.interpret_votes(usable, chapter.options)
        records = []
        for record in interpreted:
            if record.selected_option not in (1, 2):
                logger.warning(
                    "Dropping vote from %s for unknown option %s",
                    record.voter_handle,
                    record.selected_option,
                )
                continue
            records.append(record)

        winner = tally_votes(records, option_count=len(chapter.options))
        totals = option_totals(records, option_count=len(chapter.options))
        logger.info(
            "Chapter %d tally: %s -> option %d",
            chapter.chapter_number,
            ", ".join(f"{opt}={total:.2f}" for opt, total in totals.items()),
            winner,
        )
        return records, winner
