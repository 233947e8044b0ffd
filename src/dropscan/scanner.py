"""Scanner interface and a clamd client speaking the INSTREAM protocol."""
from __future__ import annotations

import abc
import logging
import socket
import struct
from typing import BinaryIO, Optional

from .errors import DropScanError
from .verdicts import ScanOutcome, ScanVerdict

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3310
DEFAULT_TIMEOUT = 120.0
DEFAULT_CHUNK_SIZE = 64 * 1024

_STREAM_PREFIX = "stream:"


class ScannerError(DropScanError):
    """The scanning service could not produce a verdict."""


class ScannerUnavailable(ScannerError):
    """The scanning service could not be reached or dropped the connection."""


class ScannerTimeout(ScannerError):
    """The scanning service did not answer within the configured timeout."""


class Scanner(abc.ABC):
    """Submits a byte stream to a scanning service and returns its verdict.

    Implementations must be safe to call from several threads at once; each
    call's verdict belongs to the stream it was given.
    """

    @abc.abstractmethod
    def scan(self, stream: BinaryIO) -> ScanVerdict:
        """Scan ``stream`` until EOF.

        Raises :class:`ScannerError` (or a subclass) when no verdict could
        be obtained.
        """

    def ping(self) -> bool:
        """Return ``True`` if the service looks reachable."""

        return True


class ClamdScanner(Scanner):
    """Talks to a ``clamd`` daemon over TCP, one connection per call."""

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        *,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.host = host
        self.port = port
        self.timeout = timeout
        self.chunk_size = chunk_size

    def __repr__(self) -> str:
        return f"ClamdScanner({self.host!r}, {self.port})"

    def scan(self, stream: BinaryIO) -> ScanVerdict:
        with self._connect() as sock:
            self._send(sock, b"zINSTREAM\0")
            try:
                while True:
                    chunk = stream.read(self.chunk_size)
                    if not chunk:
                        break
                    self._send(sock, struct.pack("!L", len(chunk)) + chunk)
                self._send(sock, struct.pack("!L", 0))
            except ScannerUnavailable:
                # clamd closes the connection after rejecting an oversized
                # stream; its reply is still readable.
                reply = self._receive(sock, allow_empty=True)
                if not reply:
                    raise
            else:
                reply = self._receive(sock)
        logger.debug("clamd replied %r", reply)
        return parse_clamd_reply(reply)

    def ping(self) -> bool:
        try:
            with self._connect() as sock:
                self._send(sock, b"zPING\0")
                reply = self._receive(sock)
        except ScannerError as exc:
            logger.debug("clamd ping failed: %s", exc)
            return False
        return reply == "PONG"

    def _connect(self) -> socket.socket:
        try:
            return socket.create_connection((self.host, self.port), timeout=self.timeout)
        except socket.timeout as exc:
            raise ScannerTimeout(f"Timed out connecting to clamd at {self.host}:{self.port}") from exc
        except OSError as exc:
            raise ScannerUnavailable(f"Cannot connect to clamd at {self.host}:{self.port}: {exc}") from exc

    def _send(self, sock: socket.socket, data: bytes) -> None:
        try:
            sock.sendall(data)
        except socket.timeout as exc:
            raise ScannerTimeout(f"Timed out sending to clamd at {self.host}:{self.port}") from exc
        except OSError as exc:
            raise ScannerUnavailable(f"Connection to clamd lost: {exc}") from exc

    def _receive(self, sock: socket.socket, *, allow_empty: bool = False) -> str:
        buffer = bytearray()
        try:
            while b"\0" not in buffer:
                data = sock.recv(4096)
                if not data:
                    break
                buffer.extend(data)
        except socket.timeout as exc:
            raise ScannerTimeout(f"Timed out waiting for clamd at {self.host}:{self.port}") from exc
        except OSError as exc:
            if allow_empty:
                return ""
            raise ScannerUnavailable(f"Connection to clamd lost: {exc}") from exc

        reply = bytes(buffer).split(b"\0", 1)[0].decode("utf-8", errors="replace").strip()
        if not reply and not allow_empty:
            raise ScannerUnavailable("clamd closed the connection without replying")
        return reply


def parse_clamd_reply(reply: str) -> ScanVerdict:
    """Translate a clamd INSTREAM reply line into a :class:`ScanVerdict`."""

    text = reply.strip().rstrip("\0").strip()

    if text.endswith(" FOUND"):
        body = text[: -len(" FOUND")].strip()
        if body.startswith(_STREAM_PREFIX):
            body = body[len(_STREAM_PREFIX):].strip()
        return ScanVerdict(ScanOutcome.INFECTED, raw_message=text, signature_name=body or None)

    if text.endswith("ERROR"):
        return ScanVerdict(ScanOutcome.SCAN_ERROR, raw_message=text)

    if text == "OK" or text.endswith(": OK"):
        return ScanVerdict(ScanOutcome.CLEAN, raw_message=text)

    return ScanVerdict(ScanOutcome.UNKNOWN, raw_message=text)
