from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from services.daily_reset_service import is_reset_performed, perform_daily_reset
from services.user_directory_service import count_users, resolve_system_actor


LOGGER = logging.getLogger("asset_lifecycle.scheduler")


class DailyResetScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        check_interval_seconds: int = 3600,
        reset_hour: int = 1,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if check_interval_seconds <= 0:
            raise ValueError("check_interval_seconds must be positive")
        if not 0 <= reset_hour <= 23:
            raise ValueError("reset_hour must be between 0 and 23")
        self._session_factory = session_factory
        self.check_interval_seconds = int(check_interval_seconds)
        self.reset_hour = int(reset_hour)
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._next_check: datetime | None = None
        self._last_check_at: datetime | None = None
        self._last_result: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                LOGGER.info("Daily reset scheduler already running")
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name="daily-reset-scheduler", daemon=True)
            self._thread.start()
        LOGGER.info(
            "Daily reset scheduler started interval=%ss reset_hour=%s",
            self.check_interval_seconds,
            self.reset_hour,
        )
        return True

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._next_check = None
        self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            LOGGER.info("Daily reset scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.check_and_perform_reset()
            with self._lock:
                self._next_check = self._clock() + timedelta(seconds=self.check_interval_seconds)
            if self._stop_event.wait(self.check_interval_seconds):
                break

    def check_and_perform_reset(self) -> dict[str, Any] | None:
        now = self._clock()
        with self._lock:
            self._last_check_at = now
        if now.hour < self.reset_hour:
            LOGGER.debug("Before reset hour (%s < %s), skipping", now.hour, self.reset_hour)
            return None

        today = now.date()
        db = self._session_factory()
        try:
            if count_users(db) == 0:
                LOGGER.info("No users in directory, skipping daily reset")
                return None
            if is_reset_performed(db, today):
                LOGGER.debug("Daily reset already performed for %s", today.isoformat())
                return None
            system_actor = resolve_system_actor(db)
            LOGGER.info("Performing automatic daily reset for %s", today.isoformat())
            result = perform_daily_reset(db, today, system_actor)
        except Exception as exc:
            db.rollback()
            LOGGER.exception("Automatic daily reset failed for %s", today.isoformat())
            result = {"date": today.isoformat(), "error": str(exc) or exc.__class__.__name__}
            self._remember(result)
            return None
        finally:
            db.close()

        self._remember(result)
        return result

    def trigger_manual_reset(self, target_date: date | None = None, performed_by: str | None = None) -> dict[str, Any]:
        day = target_date or self._clock().date()
        db = self._session_factory()
        try:
            actor = performed_by or resolve_system_actor(db)
            LOGGER.info("Manual daily reset triggered for %s by %s", day.isoformat(), actor)
            result = perform_daily_reset(db, day, actor)
        finally:
            db.close()
        self._remember(result)
        return result

    def _remember(self, result: dict[str, Any]) -> None:
        with self._lock:
            self._last_result = dict(result)

    def get_status(self) -> dict[str, Any]:
        running = self.is_running
        with self._lock:
            return {
                "isRunning": running,
                "checkIntervalSeconds": self.check_interval_seconds,
                "resetHour": self.reset_hour,
                "nextCheck": self._next_check if running else None,
                "lastCheckAt": self._last_check_at,
                "lastResult": self._last_result,
            }
