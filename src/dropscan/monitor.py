"""Drop-folder watcher built on watchdog observers."""
from __future__ import annotations

import logging
import os
import queue
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from .events import EventKind, FileEvent, WatcherFailure

logger = logging.getLogger(__name__)

ObserverFactory = Callable[[], BaseObserver]


class EventBufferOverflow(OverflowError):
    """The event channel was full and a notification was dropped."""


class _DropFolderHandler(FileSystemEventHandler):
    """Translates watchdog callbacks into FileEvents on the monitor channel."""

    def __init__(self, monitor: "FileSystemMonitor") -> None:
        super().__init__()
        self._monitor = monitor

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event, event.src_path, EventKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(event, event.src_path, EventKind.CHANGED)

    def on_closed(self, event: FileSystemEvent) -> None:
        self._forward(event, event.src_path, EventKind.CHANGED)

    def on_moved(self, event: FileSystemEvent) -> None:
        # A rename into (or within) the drop folder is a new arrival under
        # the destination name; renames out of it are not our concern.
        self._forward(event, event.dest_path, EventKind.CHANGED)

    def _forward(self, event: FileSystemEvent, raw_path, kind: EventKind) -> None:
        if event.is_directory or not raw_path:
            return
        try:
            path = Path(os.fsdecode(raw_path))
            if not self._monitor.contains(path):
                return
            self._monitor.publish(path, kind)
        except Exception as exc:  # the observer thread must survive handler errors
            self._monitor.report_failure(exc)


class FileSystemMonitor:
    """Watches the drop folder and emits events on a bounded channel.

    Failures never raise into the observer thread; they are published on
    the ``failures`` channel for the supervisor instead.
    """

    def __init__(
        self,
        drop_folder: Path,
        events: "queue.Queue[FileEvent]",
        failures: "queue.Queue[WatcherFailure]",
        *,
        observer_factory: ObserverFactory = Observer,
        join_timeout: float = 5.0,
    ):
        self._drop_folder = Path(drop_folder).absolute()
        self._events = events
        self._failures = failures
        self._observer_factory = observer_factory
        self._join_timeout = join_timeout
        self._observer: Optional[BaseObserver] = None

    @property
    def drop_folder(self) -> Path:
        return self._drop_folder

    def contains(self, path: Path) -> bool:
        """Return ``True`` if ``path`` sits directly inside the drop folder."""

        parent = path.parent
        return parent == self._drop_folder or parent.resolve() == self._drop_folder.resolve()

    def start(self) -> None:
        """Create the drop folder if needed and begin watching it."""

        self._drop_folder.mkdir(parents=True, exist_ok=True)
        observer = self._observer_factory()
        observer.schedule(_DropFolderHandler(self), str(self._drop_folder), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s", self._drop_folder)

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        if observer.is_alive():
            observer.join(timeout=self._join_timeout)
        logger.info("Stopped watching %s", self._drop_folder)

    def is_healthy(self) -> bool:
        """Return ``True`` while the observer and its emitters are running."""

        observer = self._observer
        if observer is None or not observer.is_alive():
            return False
        if not all(emitter.is_alive() for emitter in observer.emitters):
            return False
        return self._drop_folder.is_dir()

    def publish(self, path: Path, kind: EventKind) -> None:
        event = FileEvent(path=path, kind=kind)
        try:
            self._events.put_nowait(event)
        except queue.Full:
            self.report_failure(
                EventBufferOverflow(f"Event buffer full; dropped {kind.value} event for {path}"),
                overflow=True,
            )

    def report_failure(self, error: BaseException, *, overflow: bool = False, rescan: bool = False) -> None:
        self._failures.put(WatcherFailure(error=error, overflow=overflow, rescan=rescan))

    def rescan(self) -> int:
        """Emit a CHANGED event for every file currently in the drop folder.

        The pass stops at the first full channel and reports a single
        overflow for the files it could not queue.
        """

        files = [entry for entry in sorted(self._drop_folder.iterdir()) if entry.is_file()]
        count = 0
        for entry in files:
            try:
                self._events.put_nowait(FileEvent(path=entry, kind=EventKind.CHANGED))
            except queue.Full:
                self.report_failure(
                    EventBufferOverflow(
                        f"Event buffer full during rescan; {len(files) - count} of {len(files)} files not queued"
                    ),
                    overflow=True,
                    rescan=True,
                )
                break
            count += 1
        logger.info("Rescan of %s queued %s files", self._drop_folder, count)
        return count
