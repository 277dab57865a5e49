from __future__ import annotations

import json
from pathlib import Path

import pytest
import requests

import roblox_frontend_flask as ui
from roblox_snapshot_pipeline import fallback_article


def make_response(status: int, payload=None, headers=None, text: str | None = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = (text if text is not None else json.dumps(payload)).encode("utf-8")
    resp.encoding = "utf-8"
    resp.headers.update(headers or {})
    return resp


def sample_snapshot() -> dict:
    games = [
        {
            "universeId": 11,
            "placeId": 110,
            "name": "Tower Rush",
            "description": "Climb the tower.",
            "playing": 12_000,
            "visits": 3_400_000,
            "favorites": 90_000,
            "likeRatio": 0.95,
            "genre": "Adventure",
            "delta": {"playing": 2_000, "playingPct": 0.2, "favorites": None, "favoritesPct": None},
        },
        {
            "universeId": 12,
            "placeId": 120,
            "name": "Quiet Farm",
            "description": None,
            "playing": None,
            "visits": 10,
            "favorites": 1,
            "likeRatio": 0.5,
            "genre": None,
            "delta": {"playing": None},
        },
    ]
    return {
        "generatedAt": "2024-01-07T15:05:00.000Z",
        "meta": {"sortName": "Most Popular", "sortId": "most-popular"},
        "headlines": [],
        "articles": [{**fallback_article(g), "placeId": g["placeId"]} for g in games],
        "top5": games,
        "top100": games,
        "prevMeta": None,
    }


@pytest.fixture
def client():
    ui.app.config.update(TESTING=True)
    return ui.app.test_client()


def test_page_helpers():
    assert ui.pct(0.954) == "95%"
    assert ui.pct(None) == "—"
    assert ui.compact(1_234_567) == "1.23M"
    assert ui.compact(None) == "—"
    assert ui.tone_from_ratio(0.92) == "good"
    assert ui.tone_from_ratio(0.85) == "info"
    assert ui.tone_from_ratio(0.5) == "bad"
    assert ui.tone_from_ratio(None) == "muted"
    assert ui.delta_badge(2_000) == {"tone": "good", "text": "▲ 2.00K"}
    assert ui.delta_badge(-5) == {"tone": "bad", "text": "▼ 5"}
    assert ui.delta_badge(0) == {"tone": "muted", "text": "• 0"}
    assert ui.delta_badge(None) is None
    assert ui.delta_pct_badge(0.2) == "(+20.0%)"
    assert ui.delta_pct_badge(-0.051) == "(-5.1%)"
    assert ui.delta_pct_badge(None) == ""
    assert ui.display_date("2024-01-07T15:05:00.000Z") == "2024.01.08 (월) 00:05"
    assert ui.clamp_text("a  b", 10) == "a b"
    assert ui.clamp_text("abcdef", 4) == "abc…"


def test_page_context_spotlight_bars():
    ctx = ui.build_page_context(sample_snapshot())
    assert ctx["spotlight"]["name"] == "Tower Rush"
    assert [bar["width"] for bar in ctx["spotlight_bars"]] == [100, 100, 100]
    assert ctx["universe_ids"] == "11,12"
    assert set(ctx["articles_by_id"]) == {11, 12}


def test_index_renders_newspaper(client, monkeypatch):
    monkeypatch.setattr(ui.requests, "get", lambda url, **kw: make_response(200, sample_snapshot()))
    resp = client.get("/")
    assert resp.status_code == 200
    html = resp.get_data(as_text=True)
    assert "Tower Rush" in html
    assert "Most Popular" in html
    assert "이번 주 헤드라인이 아직 없습니다." in html
    assert "▲ 2.00K" in html
    assert "(+20.0%)" in html
    assert 'id="article-12"' in html
    assert "설명이 없습니다." in html


def test_index_shows_load_failed_state(client, monkeypatch):
    monkeypatch.setattr(ui.requests, "get", lambda url, **kw: make_response(404, {"detail": "No snapshot found"}))
    resp = client.get("/")
    assert resp.status_code == 502
    html = resp.get_data(as_text=True)
    assert ui.LOAD_FAILED_TITLE in html
    assert "Tower Rush" not in html


def test_index_backend_unreachable(client, monkeypatch):
    def boom(url, **kw):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(ui.requests, "get", boom)
    resp = client.get("/")
    assert resp.status_code == 502
    assert ui.LOAD_FAILED_TITLE in resp.get_data(as_text=True)


def test_snapshot_relay(client, monkeypatch):
    seen = {}

    def fake_get(url, **kw):
        seen["url"] = url
        return make_response(404, {"detail": "No snapshot found"})

    monkeypatch.setattr(ui.requests, "get", fake_get)
    resp = client.get("/api/snapshot/latest")
    assert resp.status_code == 404
    assert resp.get_json() == {"detail": "No snapshot found"}
    assert seen["url"].endswith("/api/snapshot/latest")


def test_thumbnail_relay_keeps_cache_header(client, monkeypatch):
    seen = {}

    def fake_get(url, params=None, **kw):
        seen["params"] = params
        return make_response(200, {"data": []}, headers={"Cache-Control": "public, max-age=300"})

    monkeypatch.setattr(ui.requests, "get", fake_get)
    resp = client.get("/api/thumbnails?universeIds=11,12")
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "public, max-age=300"
    assert seen["params"] == {"universeIds": "11,12"}


def test_thumbnail_relay_validation_and_unreachable(client, monkeypatch):
    assert client.get("/api/thumbnails").status_code == 400

    def boom(url, **kw):
        raise requests.Timeout("slow")

    monkeypatch.setattr(ui.requests, "get", boom)
    resp = client.get("/api/thumbnails?universeIds=1")
    assert resp.status_code == 502
    assert "Cannot reach backend API" in resp.get_json()["detail"]


def test_page_template_ships_beside_the_module():
    template = Path(ui.app.root_path) / ui.app.template_folder / "newspaper.html"
    assert template.is_file()
    assert ui.app.jinja_env.get_template("newspaper.html") is not None
