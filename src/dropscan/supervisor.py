"""Keeps the drop-folder monitor alive across watcher failures."""
from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Optional

from .events import WatcherFailure
from .monitor import FileSystemMonitor

logger = logging.getLogger(__name__)

MonitorFactory = Callable[[], FileSystemMonitor]


class WatcherSupervisor:
    """Logs monitor failures and recreates the monitor when it stops working.

    Watcher failures never end the process. Restart attempts back off
    exponentially so a permanently broken drop folder produces one log line
    per attempt rather than a flood.
    """

    def __init__(
        self,
        monitor_factory: MonitorFactory,
        failures: "queue.Queue[WatcherFailure]",
        *,
        health_check_interval: float = 5.0,
        restart_delay: float = 1.0,
        max_restart_delay: float = 60.0,
        rescan_on_recovery: bool = False,
    ):
        self._monitor_factory = monitor_factory
        self._failures = failures
        self._health_check_interval = health_check_interval
        self._restart_delay = restart_delay
        self._max_restart_delay = max(max_restart_delay, restart_delay)
        self._rescan_on_recovery = rescan_on_recovery

        self._monitor: Optional[FileSystemMonitor] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._current_delay = restart_delay
        self._next_restart_at = 0.0
        self._last_rescan_at = 0.0
        self.restarts = 0
        self.failures_seen = 0

    @property
    def monitor(self) -> Optional[FileSystemMonitor]:
        return self._monitor

    def start(self) -> None:
        """Start the first monitor and the supervision thread.

        A failure to start the first monitor propagates: the drop folder is
        unusable at startup.
        """

        monitor = self._monitor_factory()
        monitor.start()
        self._monitor = monitor
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="dropscan-supervisor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join()
        monitor, self._monitor = self._monitor, None
        if monitor is not None:
            monitor.stop()

    def handle_failure(self, failure: WatcherFailure) -> None:
        self.failures_seen += 1
        if failure.overflow:
            logger.warning("The file system watcher experienced an event buffer overflow: %s", failure.message)
            # a rescan started after the overflow already covers its files
            if not failure.rescan and failure.observed_at >= self._last_rescan_at:
                self._rescan()
        else:
            logger.error("The file system watcher has detected an error: %s", failure.message)

    def check_health(self) -> bool:
        """Restart the monitor if it is unhealthy and the backoff allows it."""

        monitor = self._monitor
        if monitor is not None and monitor.is_healthy():
            self._current_delay = self._restart_delay
            return True
        if time.monotonic() < self._next_restart_at:
            return False
        return self._restart()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                failure = self._failures.get(timeout=self._health_check_interval)
            except queue.Empty:
                failure = None
            if self._stop_event.is_set():
                break
            try:
                if failure is not None:
                    self.handle_failure(failure)
                self.check_health()
            except Exception:
                logger.exception("Watcher supervision cycle failed")

    def _restart(self) -> bool:
        old, self._monitor = self._monitor, None
        if old is not None:
            logger.warning("The file system watcher for %s stopped working; restarting", old.drop_folder)
            try:
                old.stop()
            except Exception:
                logger.exception("Stopping the failed watcher raised")

        self.restarts += 1
        try:
            monitor = self._monitor_factory()
            monitor.start()
        except Exception as exc:
            self._next_restart_at = time.monotonic() + self._current_delay
            logger.error(
                "Restarting the file system watcher failed (attempt %s), retrying in %.1fs: %s",
                self.restarts,
                self._current_delay,
                exc,
            )
            self._current_delay = min(self._current_delay * 2, self._max_restart_delay)
            return False

        self._monitor = monitor
        self._next_restart_at = 0.0
        logger.info("File system watcher restarted (restart #%s)", self.restarts)
        self._rescan()
        return True

    def _rescan(self) -> None:
        monitor = self._monitor
        if not self._rescan_on_recovery or monitor is None:
            return
        self._last_rescan_at = time.time()
        try:
            monitor.rescan()
        except OSError as exc:
            logger.error("Rescan of the drop folder failed: %s", exc)
