from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable
from uuid import uuid4

from roblox_newspaper_ai import ArticleGenerator, build_generator_from_env
from roblox_platform_client import RobloxPlatformClient
from roblox_settings import NewspaperSettings, load_settings
from roblox_snapshot_pipeline import build_client, generate_snapshot, utc_timestamp
from roblox_snapshot_store import build_delta_snapshot, load_latest_and_previous, save_snapshot

LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)


class ThumbnailCache:
    """TTL cache keyed by the exact requested id-list string, bounded by LRU eviction."""

    def __init__(
        self,
        ttl_seconds: float = 1800.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= self._clock():
                return None
            self._entries.move_to_end(key)
            return payload

    def put(self, key: str, payload: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, payload)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class NewspaperService:
    def __init__(
        self,
        settings: NewspaperSettings,
        client: RobloxPlatformClient,
        generator: ArticleGenerator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.client = client
        self.generator = generator
        self.snapshots_dir = settings.snapshots_dir
        self.thumbnails = ThumbnailCache(settings.thumb_ttl_seconds, settings.thumb_cache_size, clock)
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._snapshot: dict[str, Any] | None = None
        self._last_updated: str | None = None
        self._last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def cached_snapshot(self) -> dict[str, Any] | None:
        with self._state_lock:
            return self._snapshot

    def refresh(self) -> bool:
        """Generate and persist one edition. Returns False if skipped or failed."""
        if not self._run_lock.acquire(blocking=False):
            LOGGER.warning("Snapshot refresh skipped: a previous run is still in flight")
            return False
        try:
            return self._run_refresh()
        finally:
            self._run_lock.release()

    def start_refresh_in_background(self) -> bool:
        """Claim the run lock on the caller's thread, then hand the run to a worker."""
        if not self._run_lock.acquire(blocking=False):
            return False

        def _worker() -> None:
            try:
                self._run_refresh()
            finally:
                self._run_lock.release()

        thread = threading.Thread(target=_worker, name="snapshot-refresh", daemon=True)
        try:
            thread.start()
        except RuntimeError:
            self._run_lock.release()
            raise
        return True

    def _run_refresh(self) -> bool:
        run_id = uuid4().hex[:8]
        LOGGER.info("[run=%s] Snapshot refresh started", run_id)
        self.client.reset_stats()
        try:
            snapshot = generate_snapshot(self.client, self.generator, self.settings, run_id=run_id)
            saved = save_snapshot(snapshot, self.snapshots_dir)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or type(exc).__name__
            with self._state_lock:
                self._last_error = message
            LOGGER.error("[run=%s] Snapshot refresh failed: %s", run_id, message)
            return False

        with self._state_lock:
            self._snapshot = snapshot
            self._last_updated = utc_timestamp()
            self._last_error = None
        LOGGER.info(
            "[run=%s] Snapshot updated date=%s http=%s",
            run_id,
            saved.date_key,
            self.client.stats.snapshot(),
        )
        return True

    def latest_snapshot_with_delta(self) -> dict[str, Any] | None:
        loaded = load_latest_and_previous(self.snapshots_dir)
        if loaded is None:
            return None
        latest, previous = loaded
        return build_delta_snapshot(latest, previous)

    def get_thumbnails(self, universe_ids_csv: str) -> tuple[Any, bool]:
        key = universe_ids_csv.strip()
        if not key:
            raise ValueError("universeIds required")
        cached = self.thumbnails.get(key)
        if cached is not None:
            return cached, True
        payload = self.client.get_thumbnails(key)
        self.thumbnails.put(key, payload)
        return payload, False

    def status(self) -> dict[str, Any]:
        with self._state_lock:
            snapshot = self._snapshot
            return {
                "lastUpdated": self._last_updated,
                "lastError": self._last_error,
                "running": self.is_running,
                "hasSnapshot": snapshot is not None,
                "generatedAt": snapshot.get("generatedAt") if snapshot else None,
            }


def build_service(
    settings: NewspaperSettings | None = None,
    client: RobloxPlatformClient | None = None,
    generator: ArticleGenerator | None = None,
    use_env_generator: bool = True,
) -> NewspaperService:
    settings = settings or load_settings()
    if generator is None and use_env_generator:
        generator = build_generator_from_env()
    return NewspaperService(settings, client or build_client(settings), generator)
