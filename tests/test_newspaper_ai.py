from __future__ import annotations

import json
from types import SimpleNamespace

from conftest import ai_article, ai_bundle

from roblox_newspaper_ai import (
    OpenAIArticleGenerator,
    build_generator_from_env,
    extract_text_from_response,
    normalize_headlines,
    parse_ai_json,
    validate_ai_payload,
)

IDS = [1, 2, 3, 4, 5]


def test_full_coverage_is_accepted():
    validated = validate_ai_payload(ai_bundle(IDS, headlines=["  A ", "", None, "B", "C", "D"]), IDS)
    assert validated is not None
    assert validated.headlines == ["A", "B", "C"]
    assert sorted(validated.articles) == IDS
    assert validated.articles[1]["whyNow"] == "Concurrent players are up."


def test_invalid_articles_are_dropped_then_coverage_rejects():
    bundle = ai_bundle(IDS)
    bundle["articles"][2] = ai_article(3, sections=[{"heading": "Only", "text": "one"}])
    assert validate_ai_payload(bundle, IDS) is None


def test_each_field_check_drops_the_article():
    broken = [
        ai_article(1, title=None),
        ai_article(1, deck=7),
        ai_article(1, sections=[{"heading": "h", "text": "t"}] * 5),
        ai_article(1, sections=[{"heading": "h"}, {"heading": "h", "text": "t"}, {"heading": "h", "text": "t"}]),
        ai_article(1, numbers="10 players"),
        {k: v for k, v in ai_article(1).items() if k != "whatToDo"},
    ]
    for article in broken:
        assert validate_ai_payload({"articles": [article]}, [1]) is None


def test_four_sections_are_allowed():
    sections = [{"heading": f"h{i}", "text": f"t{i}"} for i in range(4)]
    validated = validate_ai_payload({"articles": [ai_article(9, sections=sections)]}, [9])
    assert validated is not None
    assert len(validated.articles[9]["sections"]) == 4
    assert validated.headlines == []


def test_extra_articles_do_not_matter():
    validated = validate_ai_payload(ai_bundle([1, 2, 99]), [1, 2])
    assert validated is not None
    assert set(validated.articles) == {1, 2, 99}


def test_missing_articles_array_is_rejected():
    assert validate_ai_payload({"headlines": ["x"]}, IDS) is None
    assert validate_ai_payload("nope", IDS) is None
    assert parse_ai_json('{"headlines": []}') is None
    assert parse_ai_json("not json at all") is None
    assert parse_ai_json('{"articles": []}') == {"articles": []}


def test_normalize_headlines_ignores_non_lists():
    assert normalize_headlines("headline") == []
    assert normalize_headlines([1, " two "]) == ["1", "two"]


def test_extract_text_prefers_output_text():
    assert extract_text_from_response(SimpleNamespace(output_text='  {"a": 1} ')) == '{"a": 1}'
    nested = {"output": [{"content": [{"type": "reasoning"}, {"type": "output_text", "text": "hello"}]}]}
    assert extract_text_from_response(nested) == "hello"
    assert extract_text_from_response({"output": None}) == ""


class _FakeResponses:
    def __init__(self, response):
        self.response = response
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        return self.response


def test_openai_generator_sends_facts_and_parses_reply():
    bundle = ai_bundle([1])
    responses = _FakeResponses(SimpleNamespace(output_text=json.dumps(bundle), status="completed"))
    generator = OpenAIArticleGenerator(model="test-model", client=SimpleNamespace(responses=responses))

    result = generator.generate({"sortName": "인기", "games": []})
    assert result == bundle
    assert responses.kwargs["model"] == "test-model"
    assert responses.kwargs["reasoning"] == {"effort": "low"}
    assert "인기" in responses.kwargs["input"][0]["content"]


def test_openai_generator_empty_text_returns_none(caplog):
    response = SimpleNamespace(output_text="", status="incomplete", incomplete_details={"reason": "max_output_tokens"}, usage=None)
    generator = OpenAIArticleGenerator(client=SimpleNamespace(responses=_FakeResponses(response)))
    assert generator.generate({}) is None
    assert "incomplete" in caplog.text


def test_generator_from_env_requires_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert build_generator_from_env() is None
