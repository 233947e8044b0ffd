"""Event models shared across monitor components."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class EventKind(str, Enum):
    """Kinds of drop-folder changes emitted by the monitor."""

    CREATED = "created"
    CHANGED = "changed"


@dataclass(frozen=True)
class FileEvent:
    """A single change observed in the drop folder."""

    path: Path
    kind: EventKind
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class WatcherFailure:
    """Non-fatal failure reported by the filesystem monitor.

    ``overflow`` is set when notifications were dropped because the event
    channel was full; those files will not be scanned unless a rescan runs.
    ``rescan`` marks an overflow hit by a rescan pass itself.
    """

    error: BaseException
    overflow: bool = False
    rescan: bool = False
    observed_at: float = field(default_factory=time.time)

    @property
    def message(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"
