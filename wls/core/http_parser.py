"""
Incremental HTTP request framer.

This module decides when enough bytes have arrived to form one complete
HTTP request. It does no I/O itself: callers feed whatever chunks the
transport produced with ``feed_data`` and signal end of stream with
``feed_eof``. That keeps the framing logic testable without sockets and
independent of how the bytes are read.

Framing rules:
- bytes accumulate until the ``\\r\\n\\r\\n`` header terminator
- ``Content-Length`` (matched case-insensitively) declares the body size
  and reading continues until that many body bytes are buffered
- without ``Content-Length`` the body is whatever arrived with the headers
- bytes past the declared length are discarded
"""

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from .config import DEFAULT_MAX_BODY_SIZE, DEFAULT_MAX_HEADER_SIZE

HEADER_TERMINATOR = b"\r\n\r\n"


class ConnectionState(enum.Enum):
    """Lifecycle of a single connection."""

    READING_HEADERS = "reading_headers"
    HEADERS_COMPLETE = "headers_complete"
    READING_BODY = "reading_body"
    DISPATCH = "dispatch"
    RESPONDING = "responding"
    CLOSED = "closed"


_TRANSITIONS = {
    ConnectionState.READING_HEADERS: {
        ConnectionState.HEADERS_COMPLETE,
        ConnectionState.RESPONDING,
        ConnectionState.CLOSED,
    },
    ConnectionState.HEADERS_COMPLETE: {
        ConnectionState.READING_BODY,
        ConnectionState.DISPATCH,
        ConnectionState.RESPONDING,
        ConnectionState.CLOSED,
    },
    ConnectionState.READING_BODY: {
        ConnectionState.DISPATCH,
        ConnectionState.RESPONDING,
        ConnectionState.CLOSED,
    },
    ConnectionState.DISPATCH: {ConnectionState.RESPONDING, ConnectionState.CLOSED},
    ConnectionState.RESPONDING: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


class FramingError(Exception):
    """A request that cannot be framed; answered with ``status_code``."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class RequestTooLargeError(FramingError):
    status_code = 413


class IncompleteRequestError(FramingError):
    """Peer closed the stream before the declared body arrived"""

    status_code = 400


@dataclass(frozen=True)
class IncomingRequest:
    """One fully framed request.

    Header names are lower-cased.
    """

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    version: str = ""


class HTTPParser:
    """Frames a single HTTP request from incrementally fed bytes.

    Constants:
        MAX_HEADER_SIZE: Default limit for the header block (64KB)
        MAX_BODY_SIZE: Default limit for a declared body (10MB)
    """

    MAX_HEADER_SIZE = DEFAULT_MAX_HEADER_SIZE
    MAX_BODY_SIZE = DEFAULT_MAX_BODY_SIZE

    def __init__(
        self,
        max_header_size: Optional[int] = None,
        max_body_size: Optional[int] = None,
    ):
        self.max_header_size = max_header_size or self.MAX_HEADER_SIZE
        self.max_body_size = (
            self.MAX_BODY_SIZE if max_body_size is None else max_body_size
        )
        self.reset()

    def reset(self) -> None:
        """Reset parser state to frame a new request."""
        self._buffer = bytearray()
        self._header_end = -1
        self._scan_from = 0
        self._content_length: Optional[int] = None
        self._request: Optional[IncomingRequest] = None
        self.state = ConnectionState.READING_HEADERS
        self.method = ""
        self.path = ""
        self.version = ""
        self.headers: Dict[str, str] = {}

    def transition(self, state: ConnectionState) -> None:
        """Move the connection to ``state``.

        Raises:
            RuntimeError: If the move is not allowed from the current state
        """
        if state is self.state:
            return
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid connection state change {self.state.value} -> {state.value}"
            )
        self.state = state

    @property
    def is_complete(self) -> bool:
        """True once a request is ready for dispatch"""
        return self._request is not None

    @property
    def expects_more(self) -> bool:
        """True while the framer still wants bytes from the transport"""
        return self.state in (
            ConnectionState.READING_HEADERS,
            ConnectionState.READING_BODY,
        )

    @property
    def content_length(self) -> Optional[int]:
        return self._content_length

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed_data(self, data: bytes) -> None:
        """Feed a chunk of raw bytes from the transport.

        Raises:
            FramingError: If the request cannot be framed
        """
        if not self.expects_more:
            return
        self._buffer.extend(data)

        if self.state is ConnectionState.READING_HEADERS:
            header_end = self._buffer.find(HEADER_TERMINATOR, self._scan_from)
            if header_end < 0:
                # The terminator may straddle the next chunk
                self._scan_from = max(0, len(self._buffer) - len(HEADER_TERMINATOR) + 1)
                if len(self._buffer) > self.max_header_size:
                    raise RequestTooLargeError("Request too large")
                return
            if header_end > self.max_header_size:
                raise RequestTooLargeError("Request too large")
            self._header_end = header_end
            self._parse_head(bytes(self._buffer[:header_end]))
            self.transition(ConnectionState.HEADERS_COMPLETE)

            if self._content_length is None:
                # No declared length: the body is whatever came with the headers
                self._finish(bytes(self._buffer[self._body_start:]))
                return
            self.transition(ConnectionState.READING_BODY)

        self._check_body()

    def feed_eof(self) -> None:
        """Signal that the peer closed its side of the stream.

        Raises:
            IncompleteRequestError: If the stream ended inside a declared body
        """
        if self.state is ConnectionState.READING_HEADERS:
            # Nothing dispatchable arrived
            self.transition(ConnectionState.CLOSED)
        elif self.state is ConnectionState.READING_BODY:
            raise IncompleteRequestError("Incomplete request body")

    def get_request(self) -> IncomingRequest:
        if self._request is None:
            raise FramingError("Request is not complete")
        return self._request

    @property
    def _body_start(self) -> int:
        return self._header_end + len(HEADER_TERMINATOR)

    def _check_body(self) -> None:
        received = len(self._buffer) - self._body_start
        if received >= self._content_length:
            start = self._body_start
            self._finish(bytes(self._buffer[start:start + self._content_length]))

    def _finish(self, body: bytes) -> None:
        self._request = IncomingRequest(
            method=self.method,
            path=self.path,
            headers=MappingProxyType(dict(self.headers)),
            body=body,
            version=self.version,
        )
        self.transition(ConnectionState.DISPATCH)

    def _parse_head(self, head: bytes) -> None:
        lines = head.decode("latin-1").split("\r\n")

        request_line = lines[0].split()
        if len(request_line) > 0:
            self.method = request_line[0]
        if len(request_line) > 1:
            self.path = request_line[1]
        if len(request_line) > 2:
            self.version = request_line[2]

        for line in lines[1:]:
            if ":" not in line:
                continue
            name, value = line.split(":", 1)
            self.headers[name.strip().lower()] = value.strip()

        raw_length = self.headers.get("content-length")
        if raw_length is not None:
            self._content_length = self._parse_content_length(raw_length)

    def _parse_content_length(self, raw: str) -> int:
        if not (raw.isascii() and raw.isdigit()):
            raise FramingError("Invalid Content-Length")
        length = int(raw)
        if length > self.max_body_size:
            raise RequestTooLargeError("Request too large")
        return length
