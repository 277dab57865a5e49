from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-5")
OPENAI_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "120"))
MAX_HEADLINES = 3
LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)

EDITOR_INSTRUCTIONS = """
너는 Roblox 주간 게임 신문의 편집장이다.

절대 규칙:
- 제공된 description 텍스트와 수치(metrics)만 근거로 작성한다
- description에 없는 특징을 만들어내지 않는다 (추측, 과장, 미래 예측 금지)
- 한국어로 작성한다
- 출력은 JSON 객체 하나만 반환한다 (설명 문장, 코드블록 금지)

형식 규칙:
- games에 있는 모든 universeId마다 기사를 정확히 1개씩 작성한다
- 기사 1개당 900~1400자(공백 포함)
- deck은 1문장, lede는 2~3문장
- sections는 3~4개, 각 section은 2~4문장
- numbers에는 제공된 수치만 문장형으로 정리한다 (값이 없으면 '—')
- updated/genre/maxPlayers 값이 있으면 본문에 자연스럽게 포함한다
- headlines는 최대 3개

반환 JSON 스키마 (키 이름을 그대로 사용):
{
  "headlines": ["...", "...", "..."],
  "articles": [
    {
      "universeId": 0,
      "gameName": "...",
      "title": "...",
      "deck": "...",
      "lede": "...",
      "sections": [
        {"heading": "...", "text": "..."},
        {"heading": "...", "text": "..."},
        {"heading": "...", "text": "..."}
      ],
      "whyNow": "...",
      "numbers": ["...", "...", "..."],
      "whatToDo": "..."
    }
  ]
}

작성 팁:
- title은 신문 헤드라인처럼 짧고 강하게 (비유 가능, 과장 금지)
- whyNow는 설명에서 드러나는 특징과 수치로만 서술한다
- whatToDo는 설명에 있는 플레이 방식/목표/콘텐츠를 바탕으로 추천 대상과 플레이 포인트를 정리한다
""".strip()


class ArticleGenerator(Protocol):
    def generate(self, facts: dict[str, Any]) -> dict[str, Any] | None: ...


class ArticleSection(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    heading: StrictStr
    text: StrictStr


class AiArticle(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    universe_id: int = Field(alias="universeId")
    game_name: StrictStr = Field(alias="gameName")
    title: StrictStr
    deck: StrictStr
    lede: StrictStr
    sections: list[ArticleSection] = Field(min_length=3, max_length=4)
    why_now: StrictStr = Field(alias="whyNow")
    numbers: list[Any]
    what_to_do: StrictStr = Field(alias="whatToDo")

    @field_validator("numbers")
    @classmethod
    def _stringify_numbers(cls, value: list[Any]) -> list[str]:
        return [str(x).strip() for x in value if str(x).strip()]

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass
class ValidatedArticles:
    headlines: list[str] = field(default_factory=list)
    articles: dict[int, dict[str, Any]] = field(default_factory=dict)


def normalize_headlines(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    cleaned = [str(x).strip() for x in raw if x is not None]
    return [x for x in cleaned if x][:MAX_HEADLINES]


def validate_ai_payload(ai: Any, universe_ids: Iterable[int]) -> ValidatedArticles | None:
    """
    Validate a parsed AI bundle against the edition's universe ids.

    Articles failing any field check are dropped; if the survivors do not cover every
    requested universe id the whole bundle is rejected (None).
    """
    if not isinstance(ai, dict):
        return None

    raw_articles = ai.get("articles")
    if not isinstance(raw_articles, list) or not raw_articles:
        return None

    by_id: dict[int, dict[str, Any]] = {}
    for raw in raw_articles:
        try:
            article = AiArticle.model_validate(raw)
        except ValidationError as exc:
            LOGGER.debug("AI article dropped: %s", exc.errors(include_url=False))
            continue
        by_id[article.universe_id] = article.to_payload()

    missing = [uid for uid in universe_ids if uid not in by_id]
    if missing:
        LOGGER.warning(
            "AI bundle rejected: %s valid article(s), missing universeIds=%s",
            len(by_id),
            missing,
        )
        return None

    return ValidatedArticles(headlines=normalize_headlines(ai.get("headlines")), articles=by_id)


def _attr(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_text_from_response(res: Any) -> str:
    output_text = _attr(res, "output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()

    output = _attr(res, "output")
    if not isinstance(output, list):
        return ""
    for item in output:
        content = _attr(item, "content")
        if not isinstance(content, list):
            continue
        for part in content:
            text = _attr(part, "text")
            if _attr(part, "type") in {"output_text", "text"} and isinstance(text, str):
                return text.strip()
    return ""


def parse_ai_json(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except ValueError:
        LOGGER.error("AI JSON parse failed. raw=%s", raw[:800])
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("articles"), list):
        LOGGER.error("AI JSON has no 'articles' array")
        return None
    return parsed


class OpenAIArticleGenerator:
    def __init__(
        self,
        api_key: str | None = None,
        model: str = OPENAI_MODEL,
        timeout: float = OPENAI_TIMEOUT_SECONDS,
        client: Any | None = None,
    ) -> None:
        self.model = model
        # single attempt; a failed call falls back to template articles
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def generate(self, facts: dict[str, Any]) -> dict[str, Any] | None:
        res = self.client.responses.create(
            model=self.model,
            reasoning={"effort": "low"},
            instructions=EDITOR_INSTRUCTIONS,
            input=[{"role": "user", "content": json.dumps(facts, ensure_ascii=False)}],
        )
        raw = extract_text_from_response(res)
        if not raw:
            LOGGER.warning(
                "AI JSON empty (status=%s, incomplete=%s, usage=%s)",
                _attr(res, "status"),
                _attr(res, "incomplete_details"),
                _attr(res, "usage"),
            )
            return None
        return parse_ai_json(raw)


def build_generator_from_env() -> OpenAIArticleGenerator | None:
    api_key = os.getenv("OPENAI_API_KEY", "").strip()
    if not api_key:
        LOGGER.warning("OPENAI_API_KEY is not set; editions will use template articles only")
        return None
    return OpenAIArticleGenerator(api_key=api_key)
