"""Daily reminder about configured servers that are still running."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from .config import ServerRegistry
from .errors import GameServerError
from .vultr import Instance, VultrClient

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SEC = 60


class RunningServerReminder:
    """
    Notifies once per day, at `reminder_time` ("HH:MM"), about instances
    whose label belongs to a configured server.

    `check(now)` is the whole decision and is safe to call directly; `start()`
    runs it every CHECK_INTERVAL_SEC on a daemon thread until `stop()`.
    """

    def __init__(
        self,
        client: VultrClient,
        registry_loader: Callable[[], ServerRegistry],
        notify: Callable[[List[Instance]], None],
        reminder_time: str,
        clock: Callable[[], datetime] = datetime.now,
        interval_sec: float = CHECK_INTERVAL_SEC,
    ) -> None:
        self.client = client
        self._load_registry = registry_loader
        self.notify = notify
        self.reminder_time = reminder_time
        self._clock = clock
        self.interval_sec = interval_sec
        self._last_notified_date: Optional[str] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check(self, now: datetime) -> List[Instance]:
        """Return (and notify about) running servers if a reminder is due at `now`."""
        if not self.reminder_time:
            return []
        today = now.date().isoformat()
        if now.strftime("%H:%M") != self.reminder_time or self._last_notified_date == today:
            return []

        labels = {p.label for p in self._load_registry().profiles()}
        running = [i for i in self.client.list_instances() if i.label in labels]
        if not running:
            self._last_notified_date = today
            logger.debug("Reminder due, no configured servers running")
            return []

        self.notify(running)
        self._last_notified_date = today
        logger.info(f"Reminder sent: {len(running)} server(s) running")
        return running

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_sec):
            try:
                self.check(self._clock())
            except GameServerError as e:
                logger.error(f"Error sending reminder: {e.describe()}")
            except Exception:
                logger.exception("Error sending reminder")

    def start(self) -> bool:
        if not self.reminder_time:
            logger.info("Reminder disabled (no time configured)")
            return False
        self.stop()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="running-server-reminder", daemon=True)
        self._thread.start()
        logger.info(f"Reminder enabled: {self.reminder_time}")
        return True

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=self.interval_sec + 1)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
