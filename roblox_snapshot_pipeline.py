from __future__ import annotations

import argparse
import logging
import math
import sys
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from roblox_newspaper_ai import ArticleGenerator, ValidatedArticles, build_generator_from_env, validate_ai_payload
from roblox_platform_client import RobloxPlatformClient, chunked, extract_items, extract_sorts, is_filters_payload
from roblox_settings import NewspaperSettings, load_settings
from roblox_snapshot_store import save_snapshot

NO_DESCRIPTION = "설명이 없습니다."
MISSING = "—"
AI_DESCRIPTION_BUDGET = 1200
LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)


class NoUsableSortError(RuntimeError):
    pass


@dataclass(frozen=True)
class PickedSort:
    sort_id: str
    sort_name: str
    items: list[Any]


@dataclass(frozen=True)
class Candidate:
    universe_id: int
    explore_name: str | None = None
    explore_playing: int | float | None = None
    explore_visits: int | float | None = None


# -------- small value helpers


def _coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def to_number(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def like_ratio(up_votes: Any, down_votes: Any) -> float | None:
    up = to_number(up_votes) or 0
    down = to_number(down_votes) or 0
    if up < 0 or down < 0:
        return None
    total = up + down
    if total <= 0:
        return None
    return round(up / total, 6)


def _plain_number(x: float | int) -> str:
    if isinstance(x, float) and x.is_integer():
        return str(int(x))
    return str(x)


def compact_number(value: Any) -> str | None:
    x = to_number(value)
    if x is None:
        return None
    if x >= 1_000_000_000:
        return f"{x / 1_000_000_000:.2f}B"
    if x >= 1_000_000:
        return f"{x / 1_000_000:.2f}M"
    if x >= 1_000:
        return f"{x / 1_000:.2f}K"
    return _plain_number(x)


def clamp_desc(text: Any, max_len: int = 380) -> str | None:
    if not text:
        return None
    collapsed = " ".join(str(text).split())
    if not collapsed:
        return None
    return collapsed[:max_len] + "…" if len(collapsed) > max_len else collapsed


def display_value(value: Any) -> str:
    if value is None:
        return MISSING
    if isinstance(value, float):
        return _plain_number(value)
    return str(value)


# -------- stage 1: sort discovery


def _sort_priority(sort: dict[str, Any]) -> int:
    name = str(sort.get("name") or sort.get("sortDisplayName") or "").lower()
    if "popular" in name:
        return 100
    if "trending" in name:
        return 90
    if "top" in name:
        return 80
    return 10


def find_sort_with_items(
    client: RobloxPlatformClient,
    session_id: str,
    max_sorts: int = 30,
) -> PickedSort | None:
    sorts = [s for s in extract_sorts(client.get_sorts(session_id)) if isinstance(s, dict)]
    candidates = [s for s in sorts if str(_coalesce(s.get("sortId"), s.get("id"), "")).lower() != "filters"]
    candidates.sort(key=_sort_priority, reverse=True)

    for sort in candidates[:max_sorts]:
        sort_id = _coalesce(sort.get("sortId"), sort.get("id"))
        sort_name = _coalesce(sort.get("name"), sort.get("sortDisplayName"), "(unknown)")
        if not sort_id:
            continue
        try:
            content = client.get_sort_content(session_id, str(sort_id))
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Sort %s skipped: %s", sort_id, exc)
            continue
        if is_filters_payload(content):
            continue
        items = extract_items(content)
        if items:
            return PickedSort(sort_id=str(sort_id), sort_name=str(sort_name), items=items)
    return None


# -------- stage 2: candidate extraction


def pick_universe_id(item: Any) -> int | None:
    if not isinstance(item, dict):
        return None
    raw = _coalesce(item.get("universeId"), item.get("universeID"), item.get("id"))
    if raw is None or isinstance(raw, bool):
        return None
    try:
        universe_id = int(raw)
    except (TypeError, ValueError):
        return None
    return universe_id or None


def extract_candidates(items: Sequence[Any]) -> list[Candidate]:
    out: list[Candidate] = []
    for item in items:
        universe_id = pick_universe_id(item)
        if universe_id is None:
            continue
        out.append(
            Candidate(
                universe_id=universe_id,
                explore_name=_coalesce(item.get("name"), item.get("title")),
                explore_playing=_coalesce(item.get("playing"), item.get("playerCount")),
                explore_visits=item.get("visits"),
            )
        )
    return out


# -------- stage 3: enrichment


def _as_universe_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def batch_lookup(
    fetch: Callable[[Sequence[int]], list[dict[str, Any]]],
    universe_ids: Sequence[int],
    batch_limit: int,
    label: str,
) -> dict[int, dict[str, Any]]:
    out: dict[int, dict[str, Any]] = {}
    for ids_chunk in chunked(universe_ids, batch_limit):
        try:
            rows = fetch(ids_chunk)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("%s lookup failed for %s id(s); fields degrade to null: %s", label, len(ids_chunk), exc)
            continue
        for row in rows:
            key = _as_universe_id(row.get("id"))
            if key is not None:
                out[key] = row
    return out


def fetch_favorites_counts(
    client: RobloxPlatformClient,
    universe_ids: Sequence[int],
    concurrency: int = 5,
) -> dict[int, Any]:
    if not universe_ids:
        return {}

    def _one(universe_id: int) -> tuple[int, Any]:
        try:
            return universe_id, client.get_favorites_count(universe_id)
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("favorites count failed for %s: %s", universe_id, exc)
            return universe_id, None

    workers = max(1, min(int(concurrency), len(universe_ids)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return dict(pool.map(_one, universe_ids))


def build_enriched_game(
    candidate: Candidate,
    detail: dict[str, Any] | None,
    votes: dict[str, Any] | None,
    favorites: Any,
) -> dict[str, Any]:
    d = detail or {}
    v = votes or {}
    up_votes = v.get("upVotes")
    down_votes = v.get("downVotes")
    playing = _coalesce(d.get("playing"), candidate.explore_playing)
    visits = _coalesce(d.get("visits"), candidate.explore_visits)
    creator = d.get("creator")

    return {
        "universeId": candidate.universe_id,
        "placeId": d.get("rootPlaceId"),
        "name": _coalesce(d.get("name"), candidate.explore_name, "(no name)"),
        "description": d.get("description"),
        "creator": (
            {"id": creator.get("id"), "name": creator.get("name"), "type": creator.get("type")}
            if isinstance(creator, dict)
            else None
        ),
        "playing": playing,
        "visits": visits,
        "favorites": favorites,
        "upVotes": up_votes,
        "downVotes": down_votes,
        "likeRatio": like_ratio(up_votes, down_votes),
        "created": d.get("created"),
        "updated": d.get("updated"),
        "maxPlayers": d.get("maxPlayers"),
        "genre": d.get("genre"),
        "playing_compact": compact_number(playing),
        "visits_compact": compact_number(visits),
        "favorites_compact": compact_number(favorites),
    }


def enrich_candidates(
    client: RobloxPlatformClient,
    candidates: Sequence[Candidate],
    fav_concurrency: int = 5,
    batch_limit: int = 25,
) -> list[dict[str, Any]]:
    if not candidates:
        return []
    universe_ids = [c.universe_id for c in candidates]

    with ThreadPoolExecutor(max_workers=3) as pool:
        details_future = pool.submit(batch_lookup, client.get_game_details, universe_ids, batch_limit, "details")
        votes_future = pool.submit(batch_lookup, client.get_game_votes, universe_ids, batch_limit, "votes")
        favorites_future = pool.submit(fetch_favorites_counts, client, universe_ids, fav_concurrency)
        details = details_future.result()
        votes = votes_future.result()
        favorites = favorites_future.result()

    return [
        build_enriched_game(c, details.get(c.universe_id), votes.get(c.universe_id), favorites.get(c.universe_id))
        for c in candidates
    ]


# -------- stage 4: AI augmentation


def build_ai_facts(sort_name: str, sort_id: str, games: Sequence[dict[str, Any]]) -> dict[str, Any]:
    return {
        "sortName": sort_name,
        "sortId": sort_id,
        "games": [
            {
                "universeId": g.get("universeId"),
                "name": g.get("name"),
                "description": clamp_desc(g.get("description"), AI_DESCRIPTION_BUDGET),
                "playing": g.get("playing"),
                "visits": g.get("visits"),
                "favorites": g.get("favorites"),
                "likeRatio": g.get("likeRatio"),
                "updated": g.get("updated"),
                "genre": g.get("genre"),
                "maxPlayers": g.get("maxPlayers"),
            }
            for g in games
        ],
    }


def run_ai_augmentation(
    generator: ArticleGenerator | None,
    sort_name: str,
    sort_id: str,
    games: Sequence[dict[str, Any]],
) -> ValidatedArticles | None:
    if generator is None:
        return None
    facts = build_ai_facts(sort_name, sort_id, games)
    try:
        raw = generator.generate(facts)
    except Exception as exc:  # noqa: BLE001
        LOGGER.error("AI unavailable (%s: %s); using template articles", type(exc).__name__, exc)
        return None
    if raw is None:
        return None
    return validate_ai_payload(raw, [g["universeId"] for g in games])


# -------- stage 5: fallback assembly


def fallback_article(game: dict[str, Any]) -> dict[str, Any]:
    description = game.get("description")
    playing = display_value(game.get("playing"))
    visits = display_value(game.get("visits"))
    favorites = display_value(game.get("favorites"))
    ratio = display_value(game.get("likeRatio"))

    return {
        "universeId": game.get("universeId"),
        "gameName": game.get("name"),
        "title": game.get("name"),
        "deck": clamp_desc(description, 120) or NO_DESCRIPTION,
        "lede": clamp_desc(description, 260) or NO_DESCRIPTION,
        "sections": [
            {"heading": "무엇을 하는 게임인가", "text": clamp_desc(description, 420) or NO_DESCRIPTION},
            {"heading": "플레이 포인트", "text": "제공된 설명을 바탕으로 핵심 목표와 콘텐츠를 확인해보세요."},
            {
                "heading": "지표 요약",
                "text": (
                    f"현재 동접(playing): {playing}, 방문(visits): {visits}, "
                    f"즐겨찾기(favorites): {favorites}, 좋아요 비율(likeRatio): {ratio}"
                ),
            },
        ],
        "whyNow": "설명과 지표에서 확인 가능한 범위 안에서만 요약했습니다.",
        "numbers": [
            f"동접(playing): {playing}",
            f"방문(visits): {visits}",
            f"즐겨찾기(favorites): {favorites}",
            f"좋아요 비율(likeRatio): {ratio}",
            f"장르(genre): {display_value(game.get('genre'))}",
            f"최대 인원(maxPlayers): {display_value(game.get('maxPlayers'))}",
        ],
        "whatToDo": "설명에 적힌 목표와 콘텐츠 흐름을 따라 첫 판을 시작해보세요.",
    }


def assemble_articles(
    games: Sequence[dict[str, Any]],
    validated: ValidatedArticles | None,
) -> list[dict[str, Any]]:
    ai_articles = validated.articles if validated is not None else {}
    articles = []
    for g in games:
        base = ai_articles.get(g["universeId"]) or fallback_article(g)
        articles.append({**base, "placeId": g.get("placeId")})
    return articles


# -------- snapshot assembly


def utc_timestamp(now: datetime | None = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_snapshot(
    client: RobloxPlatformClient,
    generator: ArticleGenerator | None,
    settings: NewspaperSettings,
    session_id: str | None = None,
    run_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    run_id = run_id or uuid.uuid4().hex[:8]
    session_id = session_id or uuid.uuid4().hex

    picked = find_sort_with_items(client, session_id, settings.max_sorts_tried)
    if picked is None:
        raise NoUsableSortError("No explore sort returned items")

    candidates = extract_candidates(picked.items)
    LOGGER.info(
        "[run=%s] sort=%r (%s) items=%s candidates=%s",
        run_id,
        picked.sort_name,
        picked.sort_id,
        len(picked.items),
        len(candidates),
    )

    top_games = enrich_candidates(
        client,
        candidates[: settings.top_articles],
        fav_concurrency=settings.fav_concurrency_top,
        batch_limit=settings.batch_limit,
    )
    ranking = enrich_candidates(
        client,
        candidates[: settings.top_ranking],
        fav_concurrency=settings.fav_concurrency_ranking,
        batch_limit=settings.batch_limit,
    )

    validated = run_ai_augmentation(generator, picked.sort_name, picked.sort_id, top_games)
    LOGGER.info(
        "[run=%s] articles source=%s top=%s ranking=%s",
        run_id,
        "ai" if validated is not None else "fallback",
        len(top_games),
        len(ranking),
    )

    return {
        "generatedAt": utc_timestamp(now),
        "meta": {"sortName": picked.sort_name, "sortId": picked.sort_id},
        "headlines": validated.headlines if validated is not None else [],
        "articles": assemble_articles(top_games, validated),
        "top5": top_games,
        "top100": ranking,
    }


def build_client(settings: NewspaperSettings) -> RobloxPlatformClient:
    return RobloxPlatformClient(
        timeout=settings.http_timeout,
        max_rpm=settings.max_rpm,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate one weekly Roblox newspaper edition and write it to the snapshots directory."
    )
    parser.add_argument(
        "--snapshots-dir",
        default=None,
        help="Snapshots folder (default: ROBLOX_SNAPSHOTS_DIR or public/snapshots)",
    )
    parser.add_argument("--no-ai", action="store_true", help="Skip the text generation call; use template articles")
    parser.add_argument("--timeout", type=int, default=None, help="HTTP timeout for platform calls")
    parser.add_argument("--max-rpm", type=int, default=None, help="Global max platform requests per minute (0 = no limit)")
    parser.add_argument("--quiet", action="store_true", help="Only log warnings and errors")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, Any] = {}
    if args.snapshots_dir:
        overrides["snapshots_dir"] = args.snapshots_dir
    if args.timeout is not None:
        overrides["http_timeout"] = args.timeout
    if args.max_rpm is not None:
        overrides["max_rpm"] = args.max_rpm
    settings = load_settings(**overrides)

    client = build_client(settings)
    generator = None if args.no_ai else build_generator_from_env()
    snapshot = generate_snapshot(client, generator, settings)
    saved = save_snapshot(snapshot, settings.snapshots_dir)
    LOGGER.info("HTTP stats: %s", client.stats.snapshot())
    print(f"latest: {saved.latest_path}")
    print(f"dated : {saved.dated_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
