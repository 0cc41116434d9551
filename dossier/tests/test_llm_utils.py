"""Tests for shared LLM response parsing utilities."""

from dossier.common.llm_utils import parse_llm_json, truncate_text


class TestParseLlmJson:
    def test_valid_json(self):
        assert parse_llm_json('{"key": "value"}') == {"key": "value"}

    def test_json_with_markdown_fences(self):
        raw = '```json\n{"answers": [], "note": "none"}\n```'
        assert parse_llm_json(raw) == {"answers": [], "note": "none"}

    def test_json_embedded_in_text(self):
        raw = 'Here is the result: {"key": "value"} and some trailing text.'
        assert parse_llm_json(raw) == {"key": "value"}

    def test_no_json_returns_empty_dict(self):
        assert parse_llm_json("This is not JSON at all") == {}

    def test_empty_string_returns_empty_dict(self):
        assert parse_llm_json("") == {}

    def test_non_object_returns_empty_dict(self):
        assert parse_llm_json("[1, 2, 3]") == {}

    def test_invalid_json_with_braces_returns_empty(self):
        assert parse_llm_json('{"broken: json') == {}


class TestTruncateText:
    def test_short_text_unchanged(self):
        assert truncate_text("short", 100) == "short"

    def test_prefers_sentence_boundary(self):
        text = "First sentence here. Second sentence is longer than the cap."
        assert truncate_text(text, 30) == "First sentence here."

    def test_cuts_at_word_boundary(self):
        assert truncate_text("alpha beta gamma delta", 12) == "alpha beta…"
