from __future__ import annotations

import json
import threading
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit

import pytest

from roblox_platform_client import RobloxPlatformClient, UpstreamError
from roblox_settings import NewspaperSettings

UNIVERSE_IDS = [101, 102, 103, 104, 105, 106, 107]


class FakeGetter:
    """Stands in for urlopen_text: first route whose fragment occurs in the URL wins."""

    def __init__(self) -> None:
        self.routes: list[tuple[str, Any]] = []
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def add(self, fragment: str, payload: Any) -> FakeGetter:
        self.routes.append((fragment, payload))
        return self

    def calls_matching(self, fragment: str) -> list[str]:
        return [u for u in self.calls if fragment in u]

    def __call__(self, url: str, timeout: int) -> str:
        with self._lock:
            self.calls.append(url)
        for fragment, payload in self.routes:
            if fragment not in url:
                continue
            if callable(payload):
                payload = payload(url)
            if isinstance(payload, Exception):
                raise payload
            return payload if isinstance(payload, str) else json.dumps(payload)
        raise UpstreamError(f"HTTP 404 Not Found url={url}", status=404, url=url)


def query_ids(url: str) -> list[int]:
    raw = parse_qs(urlsplit(url).query).get("universeIds", [""])[0]
    return [int(x) for x in raw.split(",") if x]


def detail_row(universe_id: int) -> dict[str, Any]:
    return {
        "id": universe_id,
        "rootPlaceId": universe_id * 10,
        "name": f"Game {universe_id}",
        "description": f"Build and defend base number {universe_id}.",
        "creator": {"id": 9, "name": "Studio", "type": "Group"},
        "playing": universe_id * 100,
        "visits": universe_id * 10_000,
        "maxPlayers": 12,
        "genre": "Adventure",
        "created": "2023-01-01T00:00:00Z",
        "updated": "2024-01-01T00:00:00Z",
    }


def install_platform(getter: FakeGetter, universe_ids: list[int] | None = None) -> FakeGetter:
    ids = list(universe_ids or UNIVERSE_IDS)
    getter.add(
        "get-sorts",
        {
            "sorts": [
                {"sortId": "filters", "name": "Filters"},
                {"sortId": "top-earning", "name": "Top Earning"},
                {"sortId": "most-popular", "name": "Most Popular"},
            ]
        },
    )
    getter.add(
        "sortId=most-popular",
        {"games": [{"universeId": uid, "name": f"Explore {uid}", "playerCount": 1} for uid in ids]},
    )
    getter.add("sortId=top-earning", {"games": [{"universeId": 999}]})
    getter.add("/games/votes", lambda url: {"data": [{"id": uid, "upVotes": 90, "downVotes": 10} for uid in query_ids(url)]})
    getter.add("/favorites/count", lambda url: {"favoritesCount": 5000})
    getter.add("/v1/games?", lambda url: {"data": [detail_row(uid) for uid in query_ids(url)]})
    getter.add("thumbnails.roblox.com", lambda url: {"data": [{"targetId": uid, "imageUrl": f"https://img/{uid}.png"} for uid in query_ids(url)]})
    return getter


def ai_article(universe_id: int, **overrides: Any) -> dict[str, Any]:
    article = {
        "universeId": universe_id,
        "gameName": f"Game {universe_id}",
        "title": f"Game {universe_id} climbs the chart",
        "deck": "A base-building hit.",
        "lede": "Players keep coming back.",
        "sections": [
            {"heading": "What it is", "text": "Build a base."},
            {"heading": "How it plays", "text": "Defend it."},
            {"heading": "Numbers", "text": "Many players."},
        ],
        "whyNow": "Concurrent players are up.",
        "numbers": ["playing: 10100", 42],
        "whatToDo": "Start with the tutorial.",
    }
    article.update(overrides)
    return article


def ai_bundle(universe_ids: list[int], headlines: list[Any] | None = None) -> dict[str, Any]:
    return {
        "headlines": headlines if headlines is not None else ["One", "Two", "Three", "Four"],
        "articles": [ai_article(uid) for uid in universe_ids],
    }


class FakeGenerator:
    def __init__(self, result: Any = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.facts: list[dict[str, Any]] = []

    def generate(self, facts: dict[str, Any]) -> dict[str, Any] | None:
        self.facts.append(facts)
        if self.error is not None:
            raise self.error
        if callable(self.result):
            return self.result(facts)
        return self.result


@pytest.fixture
def fake_getter() -> FakeGetter:
    return FakeGetter()


@pytest.fixture
def platform_getter(fake_getter: FakeGetter) -> FakeGetter:
    return install_platform(fake_getter)


@pytest.fixture
def make_client() -> Callable[..., RobloxPlatformClient]:
    def _make(getter: FakeGetter, **kwargs: Any) -> RobloxPlatformClient:
        return RobloxPlatformClient(getter=getter, **kwargs)

    return _make


@pytest.fixture
def settings(tmp_path) -> NewspaperSettings:
    return NewspaperSettings(
        snapshots_dir=str(tmp_path / "snapshots"),
        scheduler_enabled=False,
        fav_concurrency_top=2,
        fav_concurrency_ranking=2,
    )
