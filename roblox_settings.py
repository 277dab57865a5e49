from __future__ import annotations

import os

from pydantic import BaseModel, Field


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if raw in {"0", "false", "no", "off"}:
        return False
    if raw in {"1", "true", "yes", "on"}:
        return True
    return default


class NewspaperSettings(BaseModel):
    top_articles: int = Field(default=5, ge=1, le=25)
    top_ranking: int = Field(default=100, ge=1, le=500)
    fav_concurrency_top: int = Field(default=5, ge=1, le=32)
    fav_concurrency_ranking: int = Field(default=4, ge=1, le=32)
    max_sorts_tried: int = Field(default=30, ge=1, le=200)
    batch_limit: int = Field(default=25, ge=1, le=100)
    http_timeout: int = Field(default=30, ge=1, le=300)
    max_rpm: int = Field(default=0, ge=0, le=10000)
    thumb_ttl_seconds: float = Field(default=1800.0, gt=0)
    thumb_cache_size: int = Field(default=256, ge=1, le=100000)
    scheduler_enabled: bool = Field(default=True)
    snapshots_dir: str | None = Field(default=None)


def load_settings(**overrides) -> NewspaperSettings:
    values = {
        "http_timeout": int(os.getenv("ROBLOX_HTTP_TIMEOUT", "30")),
        "max_rpm": int(os.getenv("ROBLOX_MAX_RPM", "0")),
        "thumb_ttl_seconds": float(os.getenv("ROBLOX_THUMB_TTL_SECONDS", "1800")),
        "thumb_cache_size": int(os.getenv("ROBLOX_THUMB_CACHE_SIZE", "256")),
        "scheduler_enabled": _env_flag("ROBLOX_SCHEDULER", True),
        "snapshots_dir": os.getenv("ROBLOX_SNAPSHOTS_DIR") or None,
    }
    values.update(overrides)
    return NewspaperSettings(**values)
