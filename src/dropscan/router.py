"""Moves scanned files into the folder matching their verdict."""
from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
from pathlib import Path

from .config import FolderConfig
from .errors import DropScanError
from .verdicts import TargetLocation

logger = logging.getLogger(__name__)


class MoveError(DropScanError):
    """A file could not be moved; the source was left untouched."""

    def __init__(self, source: Path, destination: Path, reason: BaseException):
        super().__init__(f"Cannot move {source} to {destination}: {reason}")
        self.source = source
        self.destination = destination
        self.reason = reason


class Router:
    """Relocates files into the configured destination folders.

    Moves overwrite an existing file of the same name and are atomic: the
    file is either at the destination and gone from the source, or still at
    the source with nothing new visible at the destination.
    """

    def __init__(self, folders: FolderConfig):
        self._folders = folders

    @property
    def folders(self) -> FolderConfig:
        return self._folders

    def folder_for(self, target: TargetLocation) -> Path:
        return self._folders.for_target(target)

    def move(self, source: Path, target: TargetLocation) -> Path:
        """Move ``source`` into the folder for ``target`` and return its new path."""

        source = Path(source)
        folder = self.folder_for(target)
        destination = folder / source.name

        try:
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MoveError(source, destination, exc) from exc

        logger.info("Moving %s to %s location", source.name, target.value)
        try:
            os.replace(source, destination)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise MoveError(source, destination, exc) from exc
            self._move_across_devices(source, destination)
        return destination

    def _move_across_devices(self, source: Path, destination: Path) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".part", dir=destination.parent)
        os.close(fd)
        temp_path = Path(temp_name)
        try:
            shutil.copy2(source, temp_path)
            os.replace(temp_path, destination)
        except OSError as exc:
            _discard(temp_path)
            raise MoveError(source, destination, exc) from exc

        try:
            source.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            # Both copies exist now; keep the source authoritative.
            _discard(destination)
            raise MoveError(source, destination, exc) from exc


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Could not remove leftover file %s", path, exc_info=True)
