from __future__ import annotations

import json
import os
from typing import Any
from zoneinfo import ZoneInfo

import requests
from flask import Flask, jsonify, render_template, request

from roblox_snapshot_pipeline import compact_number
from roblox_snapshot_store import parse_generated_at


API_BASE_URL = os.getenv("ROBLOX_API_BASE_URL", "http://127.0.0.1:3001").rstrip("/")
HTTP_TIMEOUT = float(os.getenv("ROBLOX_UI_TIMEOUT_SECONDS", "30"))
DISPLAY_TZ = ZoneInfo("Asia/Seoul")
WEEKDAYS_KO = ("월", "화", "수", "목", "금", "토", "일")
LOAD_FAILED_TITLE = "데이터 로드 실패"


app = Flask(__name__)


def backend_url(path: str) -> str:
    return f"{API_BASE_URL}{path}"


def json_error(message: str, status: int = 500) -> tuple[Any, int]:
    return jsonify({"detail": message}), status


def relay_response(resp: requests.Response) -> tuple[Any, int]:
    try:
        payload = resp.json()
    except ValueError:
        payload = {"detail": resp.text}
    return jsonify(payload), resp.status_code


# -------- page helpers


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@app.template_filter("pct")
def pct(value: Any) -> str:
    if not _is_number(value):
        return "—"
    return f"{round(value * 100)}%"


@app.template_filter("compact")
def compact(value: Any) -> str:
    text = compact_number(value)
    return text if text is not None else "—"


@app.template_filter("clamp_text")
def clamp_text(value: Any, max_len: int = 220) -> str:
    text = " ".join(str(value or "").split())
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"


@app.template_filter("display_date")
def display_date(value: Any) -> str:
    if not value:
        return "—"
    try:
        local = parse_generated_at(str(value)).astimezone(DISPLAY_TZ)
    except ValueError:
        return str(value)
    return f"{local:%Y.%m.%d} ({WEEKDAYS_KO[local.weekday()]}) {local:%H:%M}"


@app.template_filter("tone")
def tone_from_ratio(ratio: Any) -> str:
    if not _is_number(ratio):
        return "muted"
    if ratio >= 0.92:
        return "good"
    if ratio >= 0.85:
        return "info"
    return "bad"


@app.template_filter("delta_badge")
def delta_badge(delta: Any) -> dict[str, str] | None:
    if not _is_number(delta):
        return None
    if delta > 0:
        return {"tone": "good", "text": f"▲ {compact(delta)}"}
    if delta < 0:
        return {"tone": "bad", "text": f"▼ {compact(abs(delta))}"}
    return {"tone": "muted", "text": "• 0"}


@app.template_filter("delta_pct")
def delta_pct_badge(value: Any) -> str:
    if not _is_number(value):
        return ""
    sign = "+" if value > 0 else ""
    return f"({sign}{value * 100:.1f}%)"


def relative_width(value: Any, max_value: Any) -> int:
    if not _is_number(value) or not _is_number(max_value) or max_value <= 0:
        return 0
    return max(0, min(100, round(value / max_value * 100)))


def build_page_context(snapshot: dict[str, Any]) -> dict[str, Any]:
    top5 = [g for g in (snapshot.get("top5") or []) if isinstance(g, dict)]
    top100 = [g for g in (snapshot.get("top100") or []) if isinstance(g, dict)]
    articles = [a for a in (snapshot.get("articles") or []) if isinstance(a, dict)]
    headlines = [str(h) for h in (snapshot.get("headlines") or []) if str(h).strip()][:3]
    meta = snapshot.get("meta") or {}

    def metric_max(key: str) -> float:
        values = [g.get(key) for g in top5 if _is_number(g.get(key))]
        return max(values) if values else 0

    maxima = {key: metric_max(key) for key in ("playing", "visits", "favorites")}
    spotlight = top5[0] if top5 else None
    spotlight_bars = []
    if spotlight is not None:
        spotlight_bars = [
            {"label": label, "value": spotlight.get(key), "width": relative_width(spotlight.get(key), maxima[key])}
            for key, label in (("playing", "동접"), ("visits", "방문"), ("favorites", "즐겨찾기"))
        ]

    return {
        "snap": snapshot,
        "meta": meta,
        "headlines": headlines,
        "spotlight": spotlight,
        "spotlight_bars": spotlight_bars,
        "top5": top5,
        "top100": top100,
        "articles_by_id": {a.get("universeId"): a for a in articles},
        "universe_ids": ",".join(str(g.get("universeId")) for g in top5 if g.get("universeId") is not None),
        "raw_json": json.dumps(snapshot, ensure_ascii=False, indent=2),
        "error": None,
    }


def fetch_latest_snapshot() -> tuple[dict[str, Any] | None, str | None]:
    try:
        resp = requests.get(backend_url("/api/snapshot/latest"), timeout=HTTP_TIMEOUT)
    except requests.RequestException as exc:
        return None, f"Cannot reach backend API at {API_BASE_URL}: {exc}"
    if not resp.ok:
        return None, f"snapshot fetch failed: {resp.status_code}"
    try:
        payload = resp.json()
    except ValueError:
        return None, "snapshot payload is not JSON"
    if not isinstance(payload, dict):
        return None, "snapshot payload is not an object"
    return payload, None


@app.get("/")
def index() -> tuple[str, int]:
    snapshot, error = fetch_latest_snapshot()
    if snapshot is None:
        return render_template("newspaper.html", snap=None, error=error, failed_title=LOAD_FAILED_TITLE), 502
    return render_template("newspaper.html", **build_page_context(snapshot)), 200


@app.get("/api/snapshot/latest")
def api_latest_snapshot() -> tuple[Any, int]:
    try:
        resp = requests.get(backend_url("/api/snapshot/latest"), timeout=HTTP_TIMEOUT)
    except requests.RequestException as exc:
        return json_error(f"Cannot reach backend API: {exc}", status=502)
    return relay_response(resp)


@app.get("/api/thumbnails")
def api_thumbnails() -> Any:
    universe_ids = (request.args.get("universeIds") or "").strip()
    if not universe_ids:
        return json_error("universeIds required", status=400)
    try:
        resp = requests.get(
            backend_url("/api/thumbnails"),
            params={"universeIds": universe_ids},
            timeout=HTTP_TIMEOUT,
        )
    except requests.RequestException as exc:
        return json_error(f"Cannot reach backend API: {exc}", status=502)
    body, status = relay_response(resp)
    cache_control = resp.headers.get("Cache-Control")
    if cache_control:
        body.headers["Cache-Control"] = cache_control
    return body, status


if __name__ == "__main__":
    host = os.getenv("ROBLOX_UI_HOST", "127.0.0.1")
    port = int(os.getenv("ROBLOX_UI_PORT", "5050"))
    debug = os.getenv("ROBLOX_UI_DEBUG", "1") not in {"0", "false", "False"}
    app.run(host=host, port=port, debug=debug)
