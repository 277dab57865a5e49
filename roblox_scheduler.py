from __future__ import annotations

import logging
import threading
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

SCHEDULE_TZ = ZoneInfo("Asia/Seoul")
RUN_WEEKDAY = 0  # Monday
RUN_AT = time(0, 5)
MAX_WAIT_SECONDS = 3600.0
LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)


def next_weekly_run(
    after: datetime,
    weekday: int = RUN_WEEKDAY,
    at: time = RUN_AT,
    tz: ZoneInfo = SCHEDULE_TZ,
) -> datetime:
    local = after.astimezone(tz)
    days_ahead = (weekday - local.weekday()) % 7
    candidate = datetime.combine(local.date() + timedelta(days=days_ahead), at, tzinfo=tz)
    if candidate <= local:
        candidate += timedelta(days=7)
    return candidate


class WeeklyScheduler:
    def __init__(
        self,
        job: Callable[[], Any],
        run_on_start: bool = True,
        weekday: int = RUN_WEEKDAY,
        at: time = RUN_AT,
        tz: ZoneInfo = SCHEDULE_TZ,
        now: Callable[[], datetime] | None = None,
        poll_seconds: float = MAX_WAIT_SECONDS,
    ) -> None:
        self.job = job
        self.run_on_start = run_on_start
        self.weekday = weekday
        self.at = at
        self.tz = tz
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.poll_seconds = poll_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.next_run_at: datetime | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="weekly-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run_job(self, reason: str) -> None:
        LOGGER.info("Scheduled job triggered (%s)", reason)
        try:
            self.job()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Scheduled job failed (%s)", reason)

    def _loop(self) -> None:
        if self.run_on_start and not self._stop.is_set():
            self._run_job("startup")

        self.next_run_at = next_weekly_run(self._now(), self.weekday, self.at, self.tz)
        LOGGER.info("Next scheduled run at %s", self.next_run_at.isoformat())
        while not self._stop.is_set():
            remaining = (self.next_run_at - self._now()).total_seconds()
            if remaining > 0:
                # short waits so a suspended host does not sleep past the tick
                self._stop.wait(min(remaining, self.poll_seconds))
                continue
            self._run_job("weekly")
            self.next_run_at = next_weekly_run(self._now(), self.weekday, self.at, self.tz)
            LOGGER.info("Next scheduled run at %s", self.next_run_at.isoformat())
