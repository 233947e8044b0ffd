"""Scan verdicts and the verdict-to-destination mapping."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class ScanOutcome(str, Enum):
    """Classification returned by the scanning service."""

    CLEAN = "clean"
    INFECTED = "infected"
    SCAN_ERROR = "scan_error"
    UNKNOWN = "unknown"


class TargetLocation(str, Enum):
    """Destination implied by a verdict."""

    CLEAN = "clean"
    QUARANTINE = "quarantine"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ScanVerdict:
    """Result of scanning a single stream."""

    outcome: ScanOutcome
    raw_message: str = ""
    signature_name: Optional[str] = None


_TARGETS: Dict[ScanOutcome, TargetLocation] = {
    ScanOutcome.CLEAN: TargetLocation.CLEAN,
    ScanOutcome.INFECTED: TargetLocation.QUARANTINE,
    ScanOutcome.SCAN_ERROR: TargetLocation.ERROR,
    ScanOutcome.UNKNOWN: TargetLocation.UNKNOWN,
}

# Files bound for any other target stay in the drop folder.
RELOCATED_TARGETS: FrozenSet[TargetLocation] = frozenset(
    {TargetLocation.CLEAN, TargetLocation.QUARANTINE}
)


def target_for(outcome: ScanOutcome) -> TargetLocation:
    """Return the destination for ``outcome``; defined for every outcome."""

    return _TARGETS[ScanOutcome(outcome)]


def is_relocated(target: TargetLocation) -> bool:
    return target in RELOCATED_TARGETS
