"""Per-path admission control for raw filesystem notifications."""
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import FrozenSet, Set, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def path_key(path: PathLike) -> str:
    """Normalise ``path`` so different spellings of one file compare equal."""

    return os.path.normcase(os.path.abspath(os.fspath(path)))


class EventCoalescer:
    """Admits each path at most once until its processing is released.

    Watch APIs fire several notifications for one arrival (create, write,
    close); only the first one that finds the path idle is admitted.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()

    def admit(self, path: PathLike) -> bool:
        """Claim ``path`` for processing; ``False`` if it is already in flight."""

        key = path_key(path)
        with self._lock:
            if key in self._in_flight:
                admitted = False
            else:
                self._in_flight.add(key)
                admitted = True
        if not admitted:
            logger.debug("Ignoring duplicate event for in-flight file %s", path)
        return admitted

    def release(self, path: PathLike) -> None:
        """Return ``path`` to idle so a later event can admit it again."""

        key = path_key(path)
        with self._lock:
            self._in_flight.discard(key)

    def is_in_flight(self, path: PathLike) -> bool:
        key = path_key(path)
        with self._lock:
            return key in self._in_flight

    def snapshot(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._in_flight)

    def __len__(self) -> int:
        with self._lock:
            return len(self._in_flight)
