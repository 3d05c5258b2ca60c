"""Tests for response parsing in the Claude narrative generator."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from fakes import reply
from quest.models import ChapterHistory, ChoiceOption, Choices, Terminal
from quest.narrator import ClaudeNarrator, NarrativeError, clamp_weight, parse_json_object


class _Messages:
    def __init__(self, responses: list[str]):
        self._responses = list(responses)
        self.requests: list[dict] = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        text = self._responses.pop(0)
        return SimpleNamespace(content=[SimpleNamespace(text=text)])


class _FakeAnthropic:
    def __init__(self, *responses: str):
        self.messages = _Messages(list(responses))


def _narrator(*responses: str) -> tuple[ClaudeNarrator, _FakeAnthropic]:
    client = _FakeAnthropic(*responses)
    return ClaudeNarrator(api_key="test", client=client), client


OPTIONS = Choices(ChoiceOption("Raise prices"), ChoiceOption("Find a new route"))


class TestParsing:
    def test_plain_object(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}

    def test_fenced_object_with_chatter(self):
        text = 'Here you go:\n```json\n{"votes": []}\n```'
        assert parse_json_object(text) == {"votes": []}

    def test_no_object(self):
        with pytest.raises(NarrativeError):
            parse_json_object("I cannot help with that.")

    def test_broken_json(self):
        with pytest.raises(NarrativeError):
            parse_json_object('{"a": }')

    def test_clamp_weight(self):
        assert clamp_weight(1.7) == 1.0
        assert clamp_weight(0) == 0.1
        assert clamp_weight("0.8") == 0.8
        assert clamp_weight(None) == 0.1


def test_opening_chapter_has_two_options_and_sources():
    async def _run() -> None:
        narrator, client = _narrator(json.dumps({
            "canonTitle": "Salt Road",
            "scenario": "2026 - Genoa. You're a merchant.",
            "options": [{"text": "Raise prices", "label": "1"}, {"text": "Find a new route", "label": "2"}],
            "sources": [{"title": "Salt", "url": "https://example.org", "relevantFact": "scarcity"}],
        }))
        draft = await narrator.generate_opening_chapter("What if salt ran out?")
        assert draft.title == "Salt Road"
        assert isinstance(draft.options, Choices)
        assert draft.options.get(2).text == "Find a new route"
        assert draft.sources[0].relevant_fact == "scarcity"
        assert client.messages.requests[0]["model"] == "claude-sonnet-4-20250514"

    asyncio.run(_run())


def test_final_chapter_is_terminal_even_if_model_adds_options():
    async def _run() -> None:
        narrator, client = _narrator(json.dumps({
            "chapterTitle": "Aftermath",
            "content": "The route held.",
            "options": [{"text": "x"}, {"text": "y"}],
        }))
        history = [ChapterHistory(chapter_number=4, content="...", selected_option=2)]
        draft = await narrator.generate_next_chapter(history, 2, 5, final=True)
        assert isinstance(draft.options, Terminal)
        prompt = client.messages.requests[0]["messages"][0]["content"]
        assert "Selected: Option 2" in prompt

    asyncio.run(_run())


def test_middle_chapter_without_options_is_an_error():
    async def _run() -> None:
        narrator, _ = _narrator(json.dumps({"chapterTitle": "Oops", "content": "text", "options": []}))
        with pytest.raises(NarrativeError):
            await narrator.generate_next_chapter([], 1, 3)

    asyncio.run(_run())


def test_interpret_votes_maps_reply_ids_and_clamps_weights():
    async def _run() -> None:
        narrator, _ = _narrator(json.dumps({
            "votes": [
                {"replyId": "r1", "selectedOption": 1, "interpretation": "explicit", "weight": 1.0},
                {"replyId": "r2", "selectedOption": "2", "interpretation": "keyword", "weight": 3},
                {"replyId": "ghost", "selectedOption": 1, "weight": 1.0},
                {"replyId": "r3", "selectedOption": None},
            ]
        }))
        replies = [reply("r1", "alice", "1"), reply("r2", "bob", "new route"), reply("r3", "carol", "hmm")]
        records = await narrator.interpret_votes(replies, OPTIONS)
        assert [(r.voter_handle, r.selected_option, r.weight) for r in records] == [
            ("alice", 1, 1.0),
            ("bob", 2, 1.0),
        ]
        assert records[1].note == "keyword"

    asyncio.run(_run())


def test_seed_evaluation_carries_rejection_message():
    async def _run() -> None:
        narrator, _ = _narrator(json.dumps({
            "hasGamePotential": False,
            "reason": "greeting",
            "rejectionMessage": "Give me something with stakes!",
        }))
        evaluation = await narrator.evaluate_seed("gm")
        assert evaluation.has_potential is False
        assert evaluation.rejection_message == "Give me something with stakes!"

    asyncio.run(_run())


def test_reply_text_is_unquoted_and_trimmed():
    async def _run() -> None:
        narrator, _ = _narrator('"' + "a" * 300 + '"')
        text = await narrator.quest_already_running_reply("abc", "m1", "start one")
        assert not text.startswith('"')
        assert len(text) == 280

    asyncio.run(_run())
