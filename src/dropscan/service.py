"""Dispatcher loop tying the monitor, coalescer and orchestrator together."""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .coalescer import EventCoalescer
from .config import AppConfig
from .events import FileEvent, WatcherFailure
from .monitor import FileSystemMonitor
from .orchestrator import OutcomeCallback, ScanOrchestrator
from .router import Router
from .scanner import Scanner
from .supervisor import WatcherSupervisor

logger = logging.getLogger(__name__)

MonitorFactory = Callable[["queue.Queue[FileEvent]", "queue.Queue[WatcherFailure]"], FileSystemMonitor]


@dataclass
class ServiceStats:
    """Counters emitted by the dispatcher for observability."""

    events_received: int = 0
    admitted: int = 0
    coalesced: int = 0


class DropFolderService:
    """Admits drop-folder events and hands each file to the orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        scanner: Scanner,
        *,
        monitor_factory: Optional[MonitorFactory] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        poll_interval: float = 0.5,
    ):
        self._config = config
        self._poll_interval = poll_interval
        self._events: "queue.Queue[FileEvent]" = queue.Queue(maxsize=config.monitor.event_buffer_size)
        self._failures: "queue.Queue[WatcherFailure]" = queue.Queue()
        self._stop_event = threading.Event()
        self._stats = ServiceStats()

        if monitor_factory is None:
            monitor_factory = self._default_monitor
        self._monitor_factory = monitor_factory

        self.coalescer = EventCoalescer()
        self.router = Router(config.folders)
        self.orchestrator = ScanOrchestrator(
            scanner,
            self.router,
            self.coalescer,
            max_workers=config.monitor.max_concurrent_scans,
            on_outcome=on_outcome,
        )
        self.supervisor = WatcherSupervisor(
            lambda: self._monitor_factory(self._events, self._failures),
            self._failures,
            health_check_interval=config.monitor.health_check_interval,
            restart_delay=config.monitor.restart_delay,
            max_restart_delay=config.monitor.max_restart_delay,
            rescan_on_recovery=config.monitor.rescan_on_recovery,
        )

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def events(self) -> "queue.Queue[FileEvent]":
        return self._events

    @property
    def failures(self) -> "queue.Queue[WatcherFailure]":
        return self._failures

    def run(self, ready: Optional[threading.Event] = None) -> None:
        """Run the dispatcher until :meth:`stop` is called."""

        logger.info("Starting drop folder service for %s", self._config.folders.drop)
        try:
            self.supervisor.start()
            if ready is not None:
                ready.set()
            while not self._stop_event.is_set():
                try:
                    event = self._events.get(timeout=self._poll_interval)
                except queue.Empty:
                    continue
                self.handle_event(event)
        except KeyboardInterrupt:
            logger.info("Service interrupted by user")
        finally:
            self._shutdown()

    def stop(self) -> None:
        """Signal the dispatcher to stop at the next opportunity."""

        self._stop_event.set()

    def handle_event(self, event: FileEvent) -> bool:
        """Admit ``event``'s file unless it is already being processed."""

        self._stats.events_received += 1
        logger.debug("File: %s %s", event.path, event.kind.value)
        if not event.path.is_file():
            logger.debug("Ignoring %s event for %s: not a regular file", event.kind.value, event.path)
            return False
        if not self.coalescer.admit(event.path):
            self._stats.coalesced += 1
            return False
        if self.orchestrator.submit(event.path) is None:
            self.coalescer.release(event.path)
            logger.info("Not scanning %s: service is shutting down", event.path)
            return False
        self._stats.admitted += 1
        return True

    def _shutdown(self) -> None:
        self.supervisor.stop()
        self.orchestrator.shutdown(self._config.monitor.shutdown_grace_period)
        logger.info(
            "Service stopped after %s events, %s admitted, %s coalesced",
            self._stats.events_received,
            self._stats.admitted,
            self._stats.coalesced,
        )

    def _default_monitor(
        self,
        events: "queue.Queue[FileEvent]",
        failures: "queue.Queue[WatcherFailure]",
    ) -> FileSystemMonitor:
        return FileSystemMonitor(self._config.folders.drop, events, failures)
