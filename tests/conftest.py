import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest

from dropscan.config import AppConfig, FolderConfig, MonitorConfig, ScannerConfig
from dropscan.scanner import Scanner
from dropscan.verdicts import ScanOutcome, ScanVerdict

CLEAN = ScanVerdict(ScanOutcome.CLEAN, raw_message="stream: OK")
INFECTED = ScanVerdict(ScanOutcome.INFECTED, raw_message="stream: Eicar-Test FOUND", signature_name="Eicar-Test")


class FakeScanner(Scanner):
    """Returns canned verdicts keyed by file name and records every call."""

    def __init__(
        self,
        verdicts: Optional[Dict[str, Union[ScanVerdict, BaseException]]] = None,
        default: Union[ScanVerdict, BaseException] = CLEAN,
        gate: Optional[threading.Event] = None,
    ):
        self.verdicts = dict(verdicts or {})
        self.default = default
        self.gate = gate
        self.calls: List[str] = []
        self.payloads: Dict[str, bytes] = {}
        self.entered = threading.Event()
        self._lock = threading.Lock()

    def scan(self, stream):
        name = Path(stream.name).name
        data = stream.read()
        with self._lock:
            self.calls.append(name)
            self.payloads[name] = data
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        result = self.verdicts.get(name, self.default)
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def folders(tmp_path) -> FolderConfig:
    return FolderConfig(
        drop=tmp_path / "drop",
        clean=tmp_path / "clean",
        quarantine=tmp_path / "quarantine",
        error=tmp_path / "error",
        unknown=tmp_path / "unknown",
    )


@pytest.fixture
def drop(folders) -> Path:
    folders.drop.mkdir(parents=True, exist_ok=True)
    return folders.drop


@pytest.fixture
def app_config(folders) -> AppConfig:
    return AppConfig(
        scanner=ScannerConfig(url="localhost", port=3310, timeout=5.0),
        folders=folders,
        monitor=MonitorConfig(
            max_concurrent_scans=4,
            event_buffer_size=64,
            shutdown_grace_period=5.0,
            health_check_interval=0.05,
            restart_delay=0.05,
            max_restart_delay=0.2,
        ),
    )


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    import time

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
