"""Narrative generator - scenario, chapter and vote-interpretation text.

Uses the Anthropic Claude API. Every call asks for JSON only and the
response is validated into the quest models before it reaches the engine.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Protocol

import anthropic

from xsocial.models import Reply

from .models import (
    ChapterDraft,
    ChapterHistory,
    Choices,
    SeedEvaluation,
    Source,
    Terminal,
    VoteRecord,
    options_from_list,
)

logger = logging.getLogger(__name__)

MIN_WEIGHT = 0.1
MAX_WEIGHT = 1.0


class NarrativeError(Exception):
    """Generation failed or produced an unusable response."""


class NarrativeGenerator(Protocol):
    async def evaluate_seed(self, seed_text: str) -> SeedEvaluation: ...

    async def generate_opening_chapter(
        self, seed_text: str, context: SeedEvaluation | None = None
    ) -> ChapterDraft: ...

    async def generate_next_chapter(
        self,
        history: list[ChapterHistory],
        winning_option: int,
        chapter_number: int,
        final: bool = False,
    ) -> ChapterDraft: ...

    async def interpret_votes(
        self, replies: list[Reply], options: Choices
    ) -> list[VoteRecord]: ...

    async def quest_already_running_reply(
        self, short_id: str, chapter_message_id: str, request_text: str
    ) -> str: ...

    async def vote_win_notification(
        self, chapter_number: int, chapter_message_id: str, winning_option_text: str
    ) -> str: ...


SYSTEM_JSON = "You are a JSON-only assistant. Always respond with a single valid JSON object."

SYSTEM_STORY = """\
You write short, punchy chapters of a crowd-voted decision game played in
replies on X. Second person, present tense. Plain text, no markdown.
Consequences are realistic and balanced: both options can succeed or fail.
Ground outcomes in real historical precedents and cite real sources.
Always respond with a single valid JSON object.
"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a model response that should be one JSON object."""
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end < start:
        raise NarrativeError(f"No JSON object in response: {text[:120]!r}")
    try:
        data = json.loads(cleaned[start : end + 1])
    except ValueError as exc:
        raise NarrativeError(f"Invalid JSON in response: {exc}") from exc
    if not isinstance(data, dict):
        raise NarrativeError("Response JSON is not an object")
    return data


def clamp_weight(value: Any) -> float:
    try:
        weight = float(value)
    except (TypeError, ValueError):
        return MIN_WEIGHT
    return min(MAX_WEIGHT, max(MIN_WEIGHT, weight))


def _draft_from(data: dict[str, Any], final: bool) -> ChapterDraft:
    content = str(data.get("content") or data.get("scenario") or "").strip()
    if not content:
        raise NarrativeError("Generated chapter has no content")
    if final:
        options = Terminal()
    else:
        try:
            options = options_from_list(data.get("options"))
        except ValueError as exc:
            raise NarrativeError(str(exc)) from exc
        if isinstance(options, Terminal):
            raise NarrativeError("Non-final chapter was generated without options")
    return ChapterDraft(
        title=str(data.get("chapterTitle") or data.get("canonTitle") or data.get("title") or ""),
        content=content,
        options=options,
        sources=[Source.from_api(s) for s in data.get("sources") or [] if isinstance(s, dict)],
    )


def _clean_reply(text: str, limit: int = 280) -> str:
    reply = text.strip()
    if len(reply) >= 2 and reply[0] == reply[-1] and reply[0] in {'"', "'"}:
        reply = reply[1:-1]
    if len(reply) > limit:
        reply = reply[: limit - 3] + "..."
    return reply


class ClaudeNarrator:
    """Generate quest text using Claude."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        temperature: float = 0.8,
        max_tokens: int = 1200,
        client: Any | None = None,
    ):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def _generate(
        self,
        user_prompt: str,
        system: str = SYSTEM_JSON,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Call Claude and return the generated text."""
        try:
            msg = await self._client.messages.create(
                model=self._model,
                max_tokens=max_tokens or self._max_tokens,
                temperature=self._temperature if temperature is None else temperature,
                system=system,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APIError as exc:
            raise NarrativeError(f"Generation request failed: {exc}") from exc
        if not msg.content:
            raise NarrativeError("Generation returned no content")
        text = msg.content[0].text.strip()
        logger.debug("Generated (%d chars): %s", len(text), text[:80])
        return text

    async def evaluate_seed(self, seed_text: str) -> SeedEvaluation:
        prompt = (
            "Decide whether this post has enough substance for a what-if decision game:\n"
            f'Post: "{seed_text[:1000]}"\n\n'
            "Good seeds are divisive, historical or political, and can spawn alternative\n"
            "scenarios with real parallels. Greetings and trivia are not.\n\n"
            "Respond in JSON:\n"
            '{"hasGamePotential": bool, "reason": "...", '
            '"rejectionMessage": "friendly reply if rejected", '
            '"initialContext": {"topic": "...", "historicalParallels": ["..."], '
            '"conflictPoints": ["..."]}}'
        )
        data = parse_json_object(await self._generate(prompt, temperature=0.3))
        ctx = data.get("initialContext") or {}
        evaluation = SeedEvaluation(
            has_potential=bool(data.get("hasGamePotential")),
            reason=str(data.get("reason") or ""),
            rejection_message=str(data.get("rejectionMessage") or ""),
            topic=str(ctx.get("topic") or ""),
            historical_parallels=[str(p) for p in ctx.get("historicalParallels") or []],
            conflict_points=[str(p) for p in ctx.get("conflictPoints") or []],
        )
        logger.info(
            "Seed evaluation: %s (%s)",
            "APPROVED" if evaluation.has_potential else "REJECTED",
            evaluation.reason[:80],
        )
        return evaluation

    async def generate_opening_chapter(
        self, seed_text: str, context: SeedEvaluation | None = None
    ) -> ChapterDraft:
        today = _today()
        context_info = ""
        if context and context.topic:
            context_info = (
                f'\nContext: topic is "{context.topic}". '
                f"Historical parallels: {', '.join(context.historical_parallels)}."
            )
        prompt = (
            f"Today's date is {today}. The scenario is set today or later, never in the past.\n\n"
            f'Create Chapter 1 of a high-stakes decision game based on: "{seed_text[:1000]}"'
            f"{context_info}\n\n"
            "- Title: 2-4 words.\n"
            f'- Setup: 60-80 words, opening with year and place ("{today[:4]} - Seattle."),\n'
            '  "You\'re a [role].", a simple dilemma, no statistics.\n'
            "- Exactly TWO options: the action only (3-8 words), no consequences.\n\n"
            "Respond in JSON:\n"
            '{"canonTitle": "...", "scenario": "...", '
            '"options": [{"text": "...", "label": "1"}, {"text": "...", "label": "2"}], '
            '"sources": [{"title": "...", "url": "...", "relevantFact": "..."}]}'
        )
        data = parse_json_object(await self._generate(prompt, system=SYSTEM_STORY))
        draft = _draft_from(data, final=False)
        logger.info("Generated opening chapter %r with %d sources", draft.title, len(draft.sources))
        return draft

    async def generate_next_chapter(
        self,
        history: list[ChapterHistory],
        winning_option: int,
        chapter_number: int,
        final: bool = False,
    ) -> ChapterDraft:
        history_text = "\n\n".join(
            f"Chapter {ch.chapter_number}:\n{ch.content}"
            + (f"\nSelected: Option {ch.selected_option}" if ch.selected_option else "")
            for ch in history
        )
        if final:
            shape = (
                "FINAL CHAPTER: show the realistic outcome in 60-80 words. No options -\n"
                "the story ends here. Reference real outcomes of similar decisions."
            )
            options_json = "[]"
        else:
            shape = (
                "NEXT CHAPTER: realistic fallout in 50-70 words, building to the next\n"
                "tough choice. Exactly TWO new options, action only, no consequences."
            )
            options_json = '[{"text": "...", "label": "1"}, {"text": "...", "label": "2"}]'
        prompt = (
            f"Today's date is {_today()}. Events happen today or later.\n\n"
            f"Continue with Chapter {chapter_number}{' (FINAL)' if final else ''}.\n\n"
            f"STORY SO FAR:\n{history_text}\n\n"
            f"THEIR CHOICE: Option {winning_option}\n\n"
            f"{shape}\n\n"
            "Respond in JSON:\n"
            f'{{"chapterNumber": {chapter_number}, "chapterTitle": "...", "content": "...", '
            f'"options": {options_json}, '
            '"sources": [{"title": "...", "url": "...", "relevantFact": "..."}]}'
        )
        data = parse_json_object(await self._generate(prompt, system=SYSTEM_STORY))
        draft = _draft_from(data, final=final)
        logger.info("Generated chapter %d (%s)", chapter_number, "final" if final else "choices")
        return draft

    async def interpret_votes(self, replies: list[Reply], options: Choices) -> list[VoteRecord]:
        if not replies:
            return []
        options_text = "\n".join(
            f"Option {i}: {opt.text}" for i, opt in enumerate(options.as_list(), start=1)
        )
        replies_text = "\n\n".join(
            f"Reply {i} (id: {r.id}, user: {r.author_handle}):\n{r.text[:500]}"
            for i, r in enumerate(replies, start=1)
        )
        prompt = (
            "Players vote by replying with a number, the option text, or a clear reference.\n\n"
            f"Available options:\n{options_text}\n\n"
            f"Player replies:\n{replies_text}\n\n"
            "For EVERY reply (including several from the same user) decide which option\n"
            "it votes for, explain briefly, and give a weight: 1.0 = explicit number,\n"
            "0.8 = clear text match, 0.5 = ambiguous, 0.1 = unclear.\n\n"
            "Respond in JSON:\n"
            '{"votes": [{"replyId": "...", "selectedOption": 1, '
            '"interpretation": "...", "weight": 1.0}]}'
        )
        data = parse_json_object(await self._generate(prompt, temperature=0.3))

        by_id = {r.id: r for r in replies}
        records: list[VoteRecord] = []
        for item in data.get("votes") or []:
            if not isinstance(item, dict):
                continue
            reply = by_id.get(str(item.get("replyId", "")))
            if reply is None:
                logger.warning("Interpretation references unknown reply %r", item.get("replyId"))
                continue
            try:
                selected = int(item.get("selectedOption"))
            except (TypeError, ValueError):
                continue
            records.append(
                VoteRecord(
                    voter_handle=reply.author_handle,
                    reply_text=reply.text,
                    reply_message_id=reply.id,
                    selected_option=selected,
                    weight=clamp_weight(item.get("weight")),
                    note=str(item.get("interpretation") or ""),
                )
            )
        logger.info("Interpreted %d of %d replies", len(records), len(replies))
        return records

    async def quest_already_running_reply(
        self, short_id: str, chapter_message_id: str, request_text: str
    ) -> str:
        prompt = (
            "Someone asked to start a quest in a conversation that already has one running.\n"
            f'Their message: "{request_text[:300]}"\n'
            f"Point them to the running quest (id {short_id}, chapter post "
            f"https://x.com/i/status/{chapter_message_id}) and invite them to vote there.\n"
            "Under 200 characters, casual, no hashtags. Just the reply text."
        )
        text = await self._generate(prompt, system="Generate only the reply text.", temperature=0.9, max_tokens=120)
        return _clean_reply(text)

    async def vote_win_notification(
        self, chapter_number: int, chapter_message_id: str, winning_option_text: str
    ) -> str:
        prompt = (
            f'A reader voted for "{winning_option_text}" and that option won.\n'
            f"Chapter {chapter_number} is live: https://x.com/i/status/{chapter_message_id}\n"
            "Write a short congratulation that sends them to the new chapter.\n"
            "Under 200 characters, no hashtags, no @mentions. Just the reply text."
        )
        text = await self._generate(prompt, system="Generate only the reply text.", temperature=0.9, max_tokens=120)
        return _clean_reply(text)
