"""Per-file scan pipeline: open, scan, interpret the verdict, route."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Optional, Set

from .coalescer import EventCoalescer
from .errors import DropScanError
from .router import MoveError, Router
from .scanner import Scanner, ScannerError
from .verdicts import ScanOutcome, ScanVerdict, is_relocated, target_for

logger = logging.getLogger(__name__)


class ProcessingState(str, Enum):
    """Stages a single admitted file moves through."""

    ADMITTED = "admitted"
    OPENED = "opened"
    SCANNED = "scanned"
    ROUTED = "routed"
    OPEN_FAILED = "open_failed"
    SCAN_FAILED = "scan_failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        ProcessingState.ROUTED,
        ProcessingState.OPEN_FAILED,
        ProcessingState.SCAN_FAILED,
        ProcessingState.CANCELLED,
    }
)


class ScanAborted(DropScanError):
    """Raised from a stream read once shutdown has aborted processing."""


class _AbortableReader:
    """Read-only view of a file stream that stops once ``abort`` is set."""

    def __init__(self, stream: BinaryIO, abort: threading.Event):
        self._stream = stream
        self._abort = abort

    @property
    def name(self):
        return self._stream.name

    def read(self, size: int = -1) -> bytes:
        if self._abort.is_set():
            raise ScanAborted(f"Scan of {self._stream.name} aborted by shutdown")
        return self._stream.read(size)

    def __getattr__(self, attr):
        return getattr(self._stream, attr)


@dataclass(frozen=True)
class FileOutcome:
    """Terminal disposition of one processed file."""

    path: Path
    state: ProcessingState
    verdict: Optional[ScanVerdict] = None
    destination: Optional[Path] = None
    error: Optional[str] = None

    @property
    def moved(self) -> bool:
        return self.destination is not None


@dataclass
class OrchestratorStats:
    """Counters emitted by the orchestrator for observability."""

    submitted: int = 0
    by_state: Dict[ProcessingState, int] = field(default_factory=dict)

    def record(self, state: ProcessingState) -> None:
        self.by_state[state] = self.by_state.get(state, 0) + 1

    def count(self, state: ProcessingState) -> int:
        return self.by_state.get(state, 0)


OutcomeCallback = Callable[[FileOutcome], None]


class ScanOrchestrator:
    """Runs each admitted file through the scan pipeline on a worker pool.

    Every unit of work is tracked until it finishes; the admission taken by
    the coalescer is released whatever the unit's terminal state is.
    """

    def __init__(
        self,
        scanner: Scanner,
        router: Router,
        coalescer: EventCoalescer,
        *,
        max_workers: int = 4,
        on_outcome: Optional[OutcomeCallback] = None,
    ):
        self._scanner = scanner
        self._router = router
        self._coalescer = coalescer
        self._on_outcome = on_outcome
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dropscan-scan")
        self._lock = threading.Lock()
        self._tasks: Set[Future] = set()
        self._closed = False
        self._abort = threading.Event()
        self._stats = OrchestratorStats()

    @property
    def stats(self) -> OrchestratorStats:
        return self._stats

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._tasks)

    def submit(self, path: Path) -> Optional[Future]:
        """Schedule ``path`` for processing; ``None`` once shut down."""

        with self._lock:
            if self._closed:
                return None
            future = self._executor.submit(self.process, path)
            self._tasks.add(future)
            self._stats.submitted += 1
        _trace(Path(path), ProcessingState.ADMITTED)
        future.add_done_callback(partial(self._task_done, path))
        return future

    def process(self, path: Path) -> FileOutcome:
        """Drive one admitted file to a terminal state."""

        try:
            return self._process(Path(path))
        finally:
            self._coalescer.release(path)

    def shutdown(self, grace_period: float = 30.0) -> None:
        """Stop accepting work and drain in-flight files.

        Files still running after ``grace_period`` seconds stop at their next
        safe point (before opening, between stream reads or before moving);
        queued ones never start. A scanner blocked on the network is bounded
        by its own timeout.
        """

        with self._lock:
            self._closed = True
            pending = set(self._tasks)

        if pending:
            logger.info("Waiting up to %.1fs for %s in-flight files", grace_period, len(pending))
            _done, not_done = wait(pending, timeout=grace_period)
            if not_done:
                logger.warning(
                    "%s files still in flight after %.1fs; cancelling at the next safe point",
                    len(not_done),
                    grace_period,
                )
                self._abort.set()
                for future in not_done:
                    future.cancel()
        self._executor.shutdown(wait=True)

    def _process(self, path: Path) -> FileOutcome:
        if self._abort.is_set():
            return self._cancelled(path)

        try:
            stream = path.open("rb")
        except OSError as exc:
            logger.warning("Cannot open %s, skipping scan: %s", path, exc)
            return FileOutcome(path, ProcessingState.OPEN_FAILED, error=str(exc))

        _trace(path, ProcessingState.OPENED)
        try:
            with stream:
                logger.info("Scan begin for file %s", path)
                try:
                    verdict = self._scanner.scan(_AbortableReader(stream, self._abort))
                except ScanAborted:
                    return self._cancelled(path)
                except ScannerError as exc:
                    verdict = ScanVerdict(ScanOutcome.SCAN_ERROR, raw_message=str(exc))
            _trace(path, ProcessingState.SCANNED)
            return self._route(path, verdict)
        except MoveError as exc:
            logger.error("%s; file left in the drop folder", exc)
            return FileOutcome(path, ProcessingState.SCAN_FAILED, verdict=verdict, error=str(exc))
        except Exception as exc:
            logger.exception("Scan of %s failed", path)
            return FileOutcome(path, ProcessingState.SCAN_FAILED, error=str(exc))
        finally:
            logger.info("Scan completed for file %s", path.name)

    def _route(self, path: Path, verdict: ScanVerdict) -> FileOutcome:
        _log_verdict(path, verdict)
        target = target_for(verdict.outcome)
        if not is_relocated(target):
            return FileOutcome(path, ProcessingState.ROUTED, verdict=verdict)

        if self._abort.is_set():
            return self._cancelled(path, verdict)
        destination = self._router.move(path, target)
        return FileOutcome(path, ProcessingState.ROUTED, verdict=verdict, destination=destination)

    def _cancelled(self, path: Path, verdict: Optional[ScanVerdict] = None) -> FileOutcome:
        logger.warning("Processing of %s cancelled by shutdown; file left in place", path)
        return FileOutcome(path, ProcessingState.CANCELLED, verdict=verdict)

    def _task_done(self, path: Path, future: Future) -> None:
        with self._lock:
            self._tasks.discard(future)

        if future.cancelled():
            self._coalescer.release(path)
            logger.warning("Processing of %s cancelled by shutdown; file left in place", path)
            outcome = FileOutcome(path, ProcessingState.CANCELLED)
        else:
            exc = future.exception()
            if exc is not None:
                # process() has already released the admission
                logger.error("Processing unit for %s died", path, exc_info=exc)
                outcome = FileOutcome(path, ProcessingState.SCAN_FAILED, error=str(exc))
            else:
                outcome = future.result()

        with self._lock:
            self._stats.record(outcome.state)
        if self._on_outcome is not None:
            try:
                self._on_outcome(outcome)
            except Exception:
                logger.exception("Outcome callback failed for %s", path)


def _trace(path: Path, state: ProcessingState) -> None:
    logger.debug("%s -> %s", path, state.value)


def _log_verdict(path: Path, verdict: ScanVerdict) -> None:
    if verdict.outcome is ScanOutcome.CLEAN:
        logger.info("The file %s is clean! ScanResult: %s", path.name, verdict.raw_message)
    elif verdict.outcome is ScanOutcome.INFECTED:
        logger.warning("Virus found in %s! Virus name: %s", path.name, verdict.signature_name)
    elif verdict.outcome is ScanOutcome.SCAN_ERROR:
        logger.error(
            "An error occurred while scanning %s; leaving it in place. ScanResult: %s",
            path.name,
            verdict.raw_message,
        )
    else:
        logger.warning(
            "Unknown scan result for %s; leaving it in place. ScanResult: %s",
            path.name,
            verdict.raw_message,
        )
