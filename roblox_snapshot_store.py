from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from roblox_project_paths import (
    DATED_SNAPSHOT_RE,
    LATEST_FILENAME,
    dated_snapshot_name,
    ensure_snapshots_dir,
    resolve_snapshots_dir,
    snapshot_display_id,
)

# Platform "local day" is a fixed UTC+9 offset, independent of the host timezone.
PLATFORM_DAY_OFFSET = timezone(timedelta(hours=9))
LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)


@dataclass(frozen=True)
class SavedSnapshot:
    dated_path: Path
    latest_path: Path
    date_key: str


def parse_generated_at(value: str) -> datetime:
    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def platform_date_key(generated_at: str) -> str:
    return parse_generated_at(generated_at).astimezone(PLATFORM_DAY_OFFSET).strftime("%Y-%m-%d")


def serialize_snapshot(snapshot: dict[str, Any]) -> str:
    return json.dumps(snapshot, ensure_ascii=False, indent=2)


def _write_temp(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    f = tempfile.NamedTemporaryFile("w", delete=False, dir=str(path.parent), encoding="utf-8", suffix=".tmp")
    tmp = Path(f.name)
    try:
        with f:
            f.write(text)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
    return tmp


def _atomic_write(path: Path, text: str) -> None:
    tmp = _write_temp(path, text)
    try:
        tmp.replace(path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def _restore_dated(path: Path, previous_text: str | None) -> None:
    try:
        if previous_text is None:
            path.unlink(missing_ok=True)
        else:
            _atomic_write(path, previous_text)
    except OSError as exc:
        LOGGER.error("Could not roll back %s: %s", snapshot_display_id(path), exc)


def save_snapshot(snapshot: dict[str, Any], snapshots_dir: str | Path | None = None) -> SavedSnapshot:
    """
    Write the edition under its dated name and as latest.json.

    Both files receive the same serialized text. Both temp files are staged before
    anything is replaced; if latest.json cannot be replaced, the dated file is rolled
    back so readers keep seeing the previous edition.
    """
    directory = ensure_snapshots_dir(snapshots_dir)
    date_key = platform_date_key(snapshot["generatedAt"])
    text = serialize_snapshot(snapshot)

    dated_path = directory / dated_snapshot_name(date_key)
    latest_path = directory / LATEST_FILENAME
    previous_dated = dated_path.read_text(encoding="utf-8") if dated_path.is_file() else None

    staged: list[Path] = []
    try:
        staged.append(_write_temp(dated_path, text))
        staged.append(_write_temp(latest_path, text))
    except OSError:
        for tmp in staged:
            tmp.unlink(missing_ok=True)
        raise
    dated_tmp, latest_tmp = staged

    try:
        dated_tmp.replace(dated_path)
    except OSError:
        dated_tmp.unlink(missing_ok=True)
        latest_tmp.unlink(missing_ok=True)
        raise
    try:
        latest_tmp.replace(latest_path)
    except OSError:
        latest_tmp.unlink(missing_ok=True)
        _restore_dated(dated_path, previous_dated)
        raise

    LOGGER.info(
        "Snapshot saved latest=%s dated=%s",
        snapshot_display_id(latest_path),
        snapshot_display_id(dated_path),
    )
    return SavedSnapshot(dated_path=dated_path, latest_path=latest_path, date_key=date_key)


def list_snapshot_files(snapshots_dir: str | Path | None = None) -> list[Path]:
    directory = resolve_snapshots_dir(snapshots_dir)
    if not directory.is_dir():
        return []
    # YYYY-MM-DD names sort chronologically
    return sorted(p for p in directory.iterdir() if p.is_file() and DATED_SNAPSHOT_RE.match(p.name))


def read_snapshot(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def load_latest_and_previous(
    snapshots_dir: str | Path | None = None,
) -> tuple[dict[str, Any], dict[str, Any] | None] | None:
    files = list_snapshot_files(snapshots_dir)
    if not files:
        return None
    latest = read_snapshot(files[-1])
    previous = read_snapshot(files[-2]) if len(files) >= 2 else None
    return latest, previous


def delta_number(cur: Any, prev: Any) -> float | int | None:
    if cur is None or prev is None:
        return None
    return cur - prev


def delta_pct(cur: Any, prev: Any) -> float | None:
    if cur is None or prev is None or prev == 0:
        return None
    return (cur - prev) / prev


def build_delta(game: dict[str, Any], prev_game: dict[str, Any] | None) -> dict[str, Any]:
    p = prev_game or {}
    return {
        "playing": delta_number(game.get("playing"), p.get("playing")),
        "visits": delta_number(game.get("visits"), p.get("visits")),
        "favorites": delta_number(game.get("favorites"), p.get("favorites")),
        "likeRatio": delta_number(game.get("likeRatio"), p.get("likeRatio")),
        "playingPct": delta_pct(game.get("playing"), p.get("playing")),
        "favoritesPct": delta_pct(game.get("favorites"), p.get("favorites")),
        "prevUpdated": p.get("updated"),
    }


def build_delta_snapshot(latest: dict[str, Any], previous: dict[str, Any] | None) -> dict[str, Any]:
    prev_by_id = {
        g.get("universeId"): g for g in ((previous or {}).get("top5") or []) if isinstance(g, dict)
    }
    top5 = [
        {**g, "delta": build_delta(g, prev_by_id.get(g.get("universeId")))}
        for g in (latest.get("top5") or [])
        if isinstance(g, dict)
    ]

    prev_meta = None
    if previous is not None:
        meta = previous.get("meta") or {}
        prev_meta = {
            "generatedAt": previous.get("generatedAt"),
            "sortId": meta.get("sortId"),
            "sortName": meta.get("sortName"),
        }

    return {**latest, "prevMeta": prev_meta, "top5": top5}
