"""Tests for model response parsing and the OpenAI extraction adapter."""

import base64
import json
from unittest.mock import MagicMock

import openai
import pytest

from conftest import candidate
from lotg.core.errors import ExtractionError
from lotg.core.extraction import (
    DiscardedCandidate,
    OpenAIExtractionAdapter,
    parse_candidate,
    parse_extraction_response,
)


class TestParseExtractionResponse:

    def test_bare_array(self):
        outcome = parse_extraction_response(json.dumps([candidate()]))
        assert len(outcome.candidates) == 1
        assert outcome.discarded_count == 0

    def test_fenced_block(self):
        text = "Here you go:\n```json\n" + json.dumps([candidate(), candidate("Second?")]) + "\n```"
        outcome = parse_extraction_response(text)
        assert [c.text for c in outcome.candidates] == ["What is the minimum number of players?", "Second?"]

    def test_fence_without_language(self):
        text = "```\n" + json.dumps([candidate()]) + "\n```"
        assert len(parse_extraction_response(text).candidates) == 1

    def test_array_surrounded_by_prose(self):
        text = "I found these questions: " + json.dumps([candidate()]) + " Let me know."
        assert len(parse_extraction_response(text).candidates) == 1

    @pytest.mark.parametrize("text", ["", "No questions here.", "{\"text\": \"not a list\"}", "[broken"])
    def test_no_parseable_array_is_zero_candidates(self, text):
        outcome = parse_extraction_response(text)
        assert outcome.candidates == []
        assert outcome.discarded == []

    def test_empty_array(self):
        assert parse_extraction_response("[]").candidates == []

    def test_malformed_items_are_discarded_individually(self):
        items = [
            candidate("Good one?"),
            candidate("Three options?", options=["A", "B", "C"]),
            candidate(""),
            "not an object",
            candidate("Out of range?", correctAnswer=4),
        ]
        outcome = parse_extraction_response(json.dumps(items))
        assert [c.text for c in outcome.candidates] == ["Good one?"]
        assert [(d.index, d.reason) for d in outcome.discarded] == [
            (1, "invalid_options"),
            (2, "missing_text"),
            (3, "not_an_object"),
            (4, "invalid_correct_answer"),
        ]


class TestParseCandidate:

    def test_strips_text_and_options(self):
        parsed = parse_candidate(0, candidate("  Padded?  ", options=[" A", "B ", " C ", "D"]))
        assert parsed.text == "Padded?"
        assert parsed.options == ["A", "B", "C", "D"]

    def test_blank_option_is_discarded(self):
        parsed = parse_candidate(0, candidate(options=["A", " ", "C", "D"]))
        assert isinstance(parsed, DiscardedCandidate)
        assert parsed.reason == "invalid_options"

    @pytest.mark.parametrize("value", [None, "2", 1.5, True, -1])
    def test_invalid_correct_answer(self, value):
        parsed = parse_candidate(0, candidate(correctAnswer=value))
        assert isinstance(parsed, DiscardedCandidate)
        assert parsed.reason == "invalid_correct_answer"

    @pytest.mark.parametrize("raw, expected", [
        ("Law 12", "Law 12"),
        ("law12", "Law 12"),
        ("LAW 11.2", "Law 11"),
        ("Law 17", "Law 17"),
    ])
    def test_law_normalisation(self, raw, expected):
        assert parse_candidate(0, candidate(law=raw)).law == expected

    def test_unknown_law_falls_back_and_keeps_raw_value(self):
        parsed = parse_candidate(0, candidate(law="Offside", lawReference=""))
        assert parsed.law == "Law 1"
        assert parsed.law_reference == "Offside"

    def test_out_of_range_law_falls_back(self):
        parsed = parse_candidate(0, candidate(law="Law 18"))
        assert parsed.law == "Law 1"
        assert parsed.law_reference == "Law 18"

    def test_missing_law_reference_defaults_to_law(self):
        item = candidate(law="Law 5")
        del item["lawReference"]
        assert parse_candidate(0, item).law_reference == "Law 5"

    @pytest.mark.parametrize("raw, expected", [
        (1.7, 1.0),
        (-0.2, 0.0),
        (0.42, 0.42),
        (1, 1.0),
        ("0.9", 0.5),
        (None, 0.5),
    ])
    def test_confidence_clamped_with_default(self, raw, expected):
        assert parse_candidate(0, candidate(confidence=raw)).confidence == expected

    def test_missing_explanation_is_empty(self):
        item = candidate()
        del item["explanation"]
        assert parse_candidate(0, item).explanation == ""


def _completion(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


class TestOpenAIExtractionAdapter:

    def test_sends_pdf_and_parses_answer(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _completion(
            "```json\n" + json.dumps([candidate(confidence=0.97)]) + "\n```"
        )
        adapter = OpenAIExtractionAdapter(api_key="test", model="gpt-4o", client=client)

        outcome = adapter.extract(b"%PDF-1.4 data")

        assert len(outcome.candidates) == 1
        assert outcome.candidates[0].confidence == 0.97
        assert outcome.model == "gpt-4o"

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        parts = kwargs["messages"][0]["content"]
        file_part = next(p for p in parts if p["type"] == "file")
        encoded = base64.b64encode(b"%PDF-1.4 data").decode("ascii")
        assert file_part["file"]["file_data"] == f"data:application/pdf;base64,{encoded}"
        assert any(p["type"] == "text" for p in parts)

    def test_empty_choices_is_zero_candidates(self):
        client = MagicMock()
        response = MagicMock()
        response.choices = []
        client.chat.completions.create.return_value = response
        adapter = OpenAIExtractionAdapter(api_key="test", client=client)

        assert adapter.extract(b"%PDF").candidates == []

    def test_model_failure_raises_extraction_error(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.OpenAIError("model unavailable")
        adapter = OpenAIExtractionAdapter(api_key="test", client=client)

        with pytest.raises(ExtractionError, match="model unavailable"):
            adapter.extract(b"%PDF")
        assert client.chat.completions.create.call_count == 1

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        adapter = OpenAIExtractionAdapter(api_key=None)
        with pytest.raises(ExtractionError, match="API key"):
            adapter.extract(b"%PDF")
