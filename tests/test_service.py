import os
import threading

import pytest
from conftest import INFECTED, FakeScanner, wait_for

from dropscan.events import EventKind, FileEvent, WatcherFailure
from dropscan.monitor import EventBufferOverflow
from dropscan.scanner import ScannerUnavailable
from dropscan.service import DropFolderService
from dropscan.verdicts import ScanOutcome, ScanVerdict


@pytest.fixture
def running_service(app_config):
    started = []

    def start(scanner):
        service = DropFolderService(app_config, scanner)
        ready = threading.Event()
        thread = threading.Thread(target=service.run, kwargs={"ready": ready}, daemon=True)
        thread.start()
        assert ready.wait(10)
        started.append((service, thread))
        return service, thread

    yield start
    for service, thread in started:
        service.stop()
        thread.join(15)


def arrive(tmp_path, drop, name, data=b"payload"):
    """Stage a file outside the drop folder and rename it in atomically."""

    staging = tmp_path / "staging"
    staging.mkdir(exist_ok=True)
    staged = staging / name
    staged.write_bytes(data)
    os.replace(staged, drop / name)
    return drop / name


def test_burst_of_events_scans_once(app_config, drop):
    gate = threading.Event()
    scanner = FakeScanner(gate=gate)
    service = DropFolderService(app_config, scanner)
    path = drop / "image.png"
    path.write_bytes(b"\x89PNG")
    try:
        results = [
            service.handle_event(FileEvent(path, EventKind.CREATED)),
            service.handle_event(FileEvent(path, EventKind.CHANGED)),
            service.handle_event(FileEvent(path, EventKind.CHANGED)),
        ]
        assert scanner.entered.wait(5)
        results.append(service.handle_event(FileEvent(path, EventKind.CHANGED)))
        gate.set()
        assert wait_for(lambda: (app_config.folders.clean / "image.png").exists())
    finally:
        service.orchestrator.shutdown(5)

    assert results == [True, False, False, False]
    assert scanner.calls == ["image.png"]
    assert service.stats.coalesced == 3


def test_file_is_readmitted_after_terminal_state(app_config, drop):
    scanner = FakeScanner(default=ScanVerdict(ScanOutcome.SCAN_ERROR, raw_message="stream: ERROR"))
    service = DropFolderService(app_config, scanner)
    path = drop / "retry.bin"
    path.write_bytes(b"data")
    try:
        assert service.handle_event(FileEvent(path, EventKind.CREATED))
        assert wait_for(lambda: len(scanner.calls) == 1 and len(service.coalescer) == 0)
        assert service.handle_event(FileEvent(path, EventKind.CHANGED))
        assert wait_for(lambda: len(scanner.calls) == 2 and len(service.coalescer) == 0)
    finally:
        service.orchestrator.shutdown(5)

    assert path.exists()


def test_events_for_vanished_files_are_ignored(app_config, drop):
    scanner = FakeScanner()
    service = DropFolderService(app_config, scanner)
    try:
        assert not service.handle_event(FileEvent(drop / "gone.tmp", EventKind.CREATED))
    finally:
        service.orchestrator.shutdown(0)
    assert scanner.calls == []
    assert len(service.coalescer) == 0


def test_end_to_end_routing(running_service, app_config, drop, tmp_path):
    folders = app_config.folders
    scanner = FakeScanner({"payload.exe": INFECTED, "huge.bin": ScannerUnavailable("clamd down")})
    running_service(scanner)

    arrive(tmp_path, drop, "report.docx")
    arrive(tmp_path, drop, "payload.exe")
    arrive(tmp_path, drop, "huge.bin")

    assert wait_for(lambda: (folders.clean / "report.docx").exists())
    assert wait_for(lambda: (folders.quarantine / "payload.exe").exists())
    assert wait_for(lambda: "huge.bin" in scanner.calls)
    assert not (drop / "report.docx").exists()
    assert not (drop / "payload.exe").exists()
    assert (drop / "huge.bin").exists()


def test_overflow_does_not_stop_processing(running_service, app_config, drop, tmp_path):
    scanner = FakeScanner()
    service, thread = running_service(scanner)

    service.failures.put(WatcherFailure(EventBufferOverflow("lost events"), overflow=True))
    assert wait_for(lambda: service.supervisor.failures_seen >= 1)

    arrive(tmp_path, drop, "after-overflow.txt")
    assert wait_for(lambda: (app_config.folders.clean / "after-overflow.txt").exists())
    assert thread.is_alive()


def test_concurrent_drops_route_independently(running_service, app_config, drop, tmp_path):
    names = [f"doc{index}.pdf" for index in range(12)]
    infected = {name for index, name in enumerate(names) if index % 4 == 0}
    scanner = FakeScanner({name: INFECTED for name in infected})
    running_service(scanner)

    for name in names:
        arrive(tmp_path, drop, name)

    folders = app_config.folders

    def routed():
        return len(list(folders.clean.glob("*.pdf"))) + len(list(folders.quarantine.glob("*.pdf")))

    assert wait_for(lambda: routed() == len(names))
    assert {p.name for p in folders.quarantine.iterdir()} == infected
    assert {p.name for p in folders.clean.iterdir()} == set(names) - infected


def test_stop_ends_run_and_refuses_new_work(app_config, drop):
    service = DropFolderService(app_config, FakeScanner())
    ready = threading.Event()
    thread = threading.Thread(target=service.run, kwargs={"ready": ready}, daemon=True)
    thread.start()
    assert ready.wait(10)

    service.stop()
    thread.join(15)

    assert not thread.is_alive()
    path = drop / "late.txt"
    path.write_text("late")
    assert not service.handle_event(FileEvent(path, EventKind.CREATED))
    assert len(service.coalescer) == 0
