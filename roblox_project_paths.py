from __future__ import annotations

import os
import re
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent
SNAPSHOTS_DIRNAME = (os.getenv("ROBLOX_SNAPSHOTS_DIR", "public/snapshots") or "public/snapshots").strip() or "public/snapshots"
SNAPSHOT_PREFIX = "roblox_top5_"
LATEST_FILENAME = "latest.json"
DATED_SNAPSHOT_RE = re.compile(r"^roblox_top5_(\d{4}-\d{2}-\d{2})\.json$")


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def resolve_snapshots_dir(snapshots_dir: str | Path | None = None) -> Path:
    """
    Resolve the snapshots directory.

    Behavior:
    - None -> ROBLOX_SNAPSHOTS_DIR (default "public/snapshots") under the project root
    - relative path -> resolved under the project root, must not escape it
    - absolute path -> respected as is (tests and deployments mount it elsewhere)
    """
    raw = str(snapshots_dir).strip() if snapshots_dir is not None else SNAPSHOTS_DIRNAME
    if not raw:
        raise ValueError("snapshots_dir must not be empty")

    p = Path(raw)
    if p.is_absolute():
        return p.resolve()

    parts = [x for x in raw.replace("\\", "/").split("/") if x]
    if ".." in parts:
        raise ValueError("snapshots_dir must not contain '..'")
    candidate = (PROJECT_ROOT / p).resolve()
    if not _is_within(candidate, PROJECT_ROOT):
        raise ValueError("snapshots_dir escapes project root")
    return candidate


def ensure_snapshots_dir(snapshots_dir: str | Path | None = None) -> Path:
    path = resolve_snapshots_dir(snapshots_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def dated_snapshot_name(date_key: str) -> str:
    return f"{SNAPSHOT_PREFIX}{date_key}.json"


def snapshot_display_id(path: Path) -> str:
    """Return a stable id for logs/UI (prefer path relative to project root)."""
    resolved = path.resolve()
    if _is_within(resolved, PROJECT_ROOT):
        return str(resolved.relative_to(PROJECT_ROOT)).replace("\\", "/")
    return str(resolved)
