"""Exception hierarchy shared across the pipeline."""
from __future__ import annotations


class DropScanError(Exception):
    """Base class for errors raised by dropscan components."""
