"""Tests for quest data models."""

import json

import pytest

from quest.models import (
    Chapter,
    ChoiceOption,
    Choices,
    Quest,
    QuestState,
    Terminal,
    Vote,
    options_from_list,
    options_to_list,
)


class TestOptions:
    def test_empty_list_is_terminal(self):
        assert isinstance(options_from_list([]), Terminal)
        assert isinstance(options_from_list(None), Terminal)
        assert len(Terminal()) == 0

    def test_two_entries_are_choices(self):
        options = options_from_list([{"text": "Fight", "label": "1"}, "Flee"])
        assert isinstance(options, Choices)
        assert len(options) == 2
        assert options.get(1).text == "Fight"
        assert options.get(2) == ChoiceOption(text="Flee", label="2")

    def test_other_lengths_are_rejected(self):
        with pytest.raises(ValueError):
            options_from_list(["only one"])
        with pytest.raises(ValueError):
            options_from_list(["a", "b", "c"])

    def test_out_of_range_choice(self):
        options = Choices(ChoiceOption("a"), ChoiceOption("b"))
        with pytest.raises(IndexError):
            options.get(3)

    def test_serialised_shape(self):
        options = Choices(ChoiceOption("a", "1"), ChoiceOption("b", "2", "risky"))
        assert options_to_list(options) == [
            {"text": "a", "label": "1", "description": ""},
            {"text": "b", "label": "2", "description": "risky"},
        ]
        assert options_to_list(Terminal()) == []


class TestQuestState:
    def test_json_roundtrip(self):
        state = QuestState(canon_title="Salt Road", topic="trade", historical_parallels=["Hansa"])
        assert QuestState.from_json(state.to_json()) == state

    def test_unknown_version_is_rejected(self):
        with pytest.raises(ValueError):
            QuestState.from_json(json.dumps({"version": 99, "topic": "x"}))

    def test_missing_state_is_empty(self):
        assert QuestState.from_json(None) == QuestState()

    def test_unknown_keys_are_ignored(self):
        state = QuestState.from_json(json.dumps({"version": 1, "topic": "x", "legacy": True}))
        assert state.topic == "x"


class TestRows:
    def test_quest_from_row(self):
        quest = Quest.from_row({
            "id": "q1",
            "short_id": "abc",
            "conversation_id": "c1",
            "status": "ACTIVE",
            "current_chapter": 2,
            "chapter_deadline": "2026-03-01T12:02:00.000000+00:00",
            "last_posted_message_id": "m2",
            "state": None,
        })
        assert quest.is_active
        assert quest.current_chapter == 2
        assert quest.chapter_deadline.minute == 2
        assert quest.origin_message_id == ""

    def test_chapter_from_row(self):
        chapter = Chapter.from_row({
            "id": "ch5",
            "quest_id": "q1",
            "chapter_number": 5,
            "content": "The end.",
            "options": "[]",
            "sources": '[{"title": "Annals", "relevantFact": "it happened"}]',
            "posted_message_id": "",
            "chosen_option": None,
        })
        assert chapter.is_terminal
        assert not chapter.is_posted
        assert chapter.sources[0].relevant_fact == "it happened"

    def test_vote_from_row_reads_joined_handle(self):
        vote = Vote.from_row({
            "id": "v1",
            "chapter_id": "ch1",
            "voter_id": "u1",
            "selected_option": "2",
            "weight": 0.5,
            "handle": "alice",
        })
        assert vote.selected_option == 2
        assert vote.voter_handle == "alice"
