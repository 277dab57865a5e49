from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode, urlsplit
from urllib.request import Request, urlopen

USER_AGENT = "Mozilla/5.0 (compatible; RobloxWeeklyNewspaper/1.0)"
EXPLORE_API = "https://apis.roblox.com/explore-api/v1"
GAMES_API = "https://games.roblox.com/v1"
THUMBNAILS_URL = "https://thumbnails.roblox.com/v1/games/multiget/thumbnails"
THUMBNAIL_SIZE = "768x432"
THUMBNAIL_FORMAT = "Png"
ROBLOX_BATCH_LIMIT = 25
DEFAULT_HTTP_TIMEOUT = 30
LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)

TextGetter = Callable[[str, int], str]
ShapeProbe = Callable[[Any], list]


class UpstreamError(RuntimeError):
    def __init__(
        self,
        message: str,
        status: int | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class RequestRateLimiter:
    def __init__(self, max_rpm: int):
        self.max_rpm = max_rpm
        self.interval = 60.0 / max_rpm if max_rpm > 0 else 0.0
        self._lock = threading.Lock()
        self._next_ts = 0.0

    def acquire(self) -> None:
        if self.max_rpm <= 0:
            return

        while True:
            with self._lock:
                now = time.monotonic()
                wait = self._next_ts - now
                if wait <= 0:
                    self._next_ts = max(self._next_ts, now) + self.interval
                    return
            time.sleep(min(wait, 0.5))


@dataclass
class RequestStats:
    started_at: float = field(default_factory=time.time)
    requests_total: int = 0
    requests_ok: int = 0
    requests_failed: int = 0
    failures_by_code: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_request(self) -> None:
        with self._lock:
            self.requests_total += 1

    def record_success(self) -> None:
        with self._lock:
            self.requests_ok += 1

    def record_failure(self, key: str) -> None:
        with self._lock:
            self.requests_failed += 1
            self.failures_by_code[key] = self.failures_by_code.get(key, 0) + 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            elapsed = max(0.001, time.time() - self.started_at)
            return {
                "elapsed_seconds": round(elapsed, 3),
                "requests_total": self.requests_total,
                "requests_ok": self.requests_ok,
                "requests_failed": self.requests_failed,
                "failures_by_code": dict(self.failures_by_code),
            }


def _short_url(url: str) -> str:
    try:
        parts = urlsplit(url)
        path = parts.path or "/"
        if len(path) > 80:
            path = path[:77] + "..."
        base = f"{parts.scheme}://{parts.netloc}{path}"
        return f"{base}?..." if parts.query else base
    except Exception:
        return url[:120]


def urlopen_text(url: str, timeout: int) -> str:
    req = Request(url, headers={"User-Agent": USER_AGENT, "Accept": "application/json"})
    try:
        with urlopen(req, timeout=timeout) as response:
            return response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        try:
            body = exc.read().decode("utf-8", errors="replace")
        except Exception:
            body = ""
        raise UpstreamError(
            f"HTTP {exc.code} {exc.reason} url={_short_url(url)} body={body[:800]}",
            status=exc.code,
            url=url,
        ) from exc
    except (URLError, TimeoutError) as exc:
        raise UpstreamError(f"Network error {type(exc).__name__} url={_short_url(url)}: {exc}", url=url) from exc


def chunked(values: Sequence[Any], size: int) -> list[list[Any]]:
    return [list(values[i : i + size]) for i in range(0, len(values), size)]


# -------- shape probes for loosely typed platform payloads


def _key_probe(key: str) -> ShapeProbe:
    def probe(payload: Any) -> list:
        value = payload.get(key) if isinstance(payload, dict) else None
        return value if isinstance(value, list) else []

    probe.__name__ = f"probe_{key}"
    return probe


def _probe_bare_list(payload: Any) -> list:
    return payload if isinstance(payload, list) else []


SECTION_ITEM_PROBES: tuple[ShapeProbe, ...] = tuple(
    _key_probe(key) for key in ("items", "content", "games", "experiences")
)


def _probe_sections(payload: Any) -> list:
    sections = payload.get("sections") if isinstance(payload, dict) else None
    if not isinstance(sections, list):
        return []
    for section in sections:
        found = first_shape_match(section, SECTION_ITEM_PROBES)
        if found:
            return found
    return []


SORT_PROBES: tuple[ShapeProbe, ...] = (_key_probe("sorts"), _key_probe("data"), _probe_bare_list)
ITEM_PROBES: tuple[ShapeProbe, ...] = (
    _key_probe("items"),
    _key_probe("content"),
    _key_probe("games"),
    _key_probe("experiences"),
    _key_probe("data"),
    _probe_sections,
)


def first_shape_match(payload: Any, probes: Iterable[ShapeProbe]) -> list:
    for probe in probes:
        found = probe(payload)
        if found:
            return found
    return []


def extract_sorts(payload: Any) -> list:
    return first_shape_match(payload, SORT_PROBES)


def extract_items(payload: Any) -> list:
    return first_shape_match(payload, ITEM_PROBES)


def is_filters_payload(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    content_type = str(payload.get("contentType") or "").lower()
    sort_id = str(payload.get("sortId") or "").lower()
    return content_type == "filters" or sort_id == "filters" or isinstance(payload.get("filters"), list)


class RobloxPlatformClient:
    """Thin wrapper over the Roblox explore/games/thumbnails JSON endpoints."""

    def __init__(
        self,
        timeout: int = DEFAULT_HTTP_TIMEOUT,
        max_rpm: int = 0,
        getter: TextGetter | None = None,
    ) -> None:
        self.timeout = timeout
        self.limiter = RequestRateLimiter(max_rpm) if max_rpm > 0 else None
        self.stats = RequestStats()
        self._getter = getter or urlopen_text

    def reset_stats(self) -> None:
        self.stats = RequestStats()

    def http_get(self, url: str) -> str:
        if self.limiter is not None:
            self.limiter.acquire()
        self.stats.record_request()
        try:
            body = self._getter(url, self.timeout)
        except UpstreamError as exc:
            self.stats.record_failure(str(exc.status) if exc.status is not None else "network")
            raise
        self.stats.record_success()
        return body

    def fetch_json(self, url: str) -> Any:
        text = self.http_get(url)
        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except ValueError:
            raise UpstreamError(f"JSON parse failed url={_short_url(url)} body={text[:800]}", url=url) from None

    def get_sorts(self, session_id: str) -> Any:
        return self.fetch_json(f"{EXPLORE_API}/get-sorts?{urlencode({'sessionId': session_id})}")

    def get_sort_content(self, session_id: str, sort_id: str) -> Any:
        query = urlencode({"sessionId": session_id, "sortId": sort_id})
        return self.fetch_json(f"{EXPLORE_API}/get-sort-content?{query}")

    def get_game_details(self, universe_ids: Sequence[int]) -> list[dict[str, Any]]:
        ids = ",".join(str(x) for x in universe_ids)
        payload = self.fetch_json(f"{GAMES_API}/games?{urlencode({'universeIds': ids})}")
        data = payload.get("data") if isinstance(payload, dict) else None
        return [x for x in data if isinstance(x, dict)] if isinstance(data, list) else []

    def get_game_votes(self, universe_ids: Sequence[int]) -> list[dict[str, Any]]:
        ids = ",".join(str(x) for x in universe_ids)
        payload = self.fetch_json(f"{GAMES_API}/games/votes?{urlencode({'universeIds': ids})}")
        data = payload.get("data") if isinstance(payload, dict) else None
        return [x for x in data if isinstance(x, dict)] if isinstance(data, list) else []

    def get_favorites_count(self, universe_id: int) -> int | None:
        payload = self.fetch_json(f"{GAMES_API}/games/{quote(str(universe_id), safe='')}/favorites/count")
        if not isinstance(payload, dict):
            return None
        value = payload.get("favoritesCount")
        if value is None:
            value = payload.get("count")
        return value

    def get_thumbnails(self, universe_ids_csv: str) -> Any:
        query = urlencode(
            {
                "universeIds": universe_ids_csv,
                "size": THUMBNAIL_SIZE,
                "format": THUMBNAIL_FORMAT,
                "isCircular": "false",
            }
        )
        return self.fetch_json(f"{THUMBNAILS_URL}?{query}")
