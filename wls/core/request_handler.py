"""
Request handling for the language server.

This module provides:
- Router: maps (method, path) to a handler and calls the extraction
  capability for ``POST /extract``
- RequestHandler: reads one request from a connection through the
  framer, dispatches it, writes the response and closes the connection
"""

import asyncio
import time
import uuid
from typing import Callable, List, Optional, Tuple

import httptools

from ..features import metrics
from .http_parser import ConnectionState, FramingError, HTTPParser, IncomingRequest
from .response import OutgoingResponse, error_response, json_response
from .server_utils import access_log_payload, default_logger

UNKNOWN_LANGUAGE = "unknown"

RouteHandler = Callable[[IncomingRequest], OutgoingResponse]


def route_path(target: str) -> str:
    """Return the path component of a request target.

    Targets httptools cannot parse are returned unchanged so that they
    fall through to the not-found route.
    """
    if not target:
        return target
    try:
        url = httptools.parse_url(target.encode("latin-1"))
    except httptools.HttpParserInvalidURLError:
        return target
    return url.path.decode("latin-1") if url.path else target


class Router:
    """Ordered routing table.

    Routes are matched on exact method and path; anything unmatched is
    answered with 404.
    """

    def __init__(self, capability: Callable[[bytes], Optional[str]], enable_metrics: bool = False):
        self.capability = capability
        self._routes: List[Tuple[str, str, RouteHandler]] = [
            ("GET", "/health", self.health),
            ("POST", "/extract", self.extract),
        ]
        if enable_metrics:
            self._routes.append(("GET", "/metrics", self.expose_metrics))

    @property
    def routes(self) -> List[Tuple[str, str]]:
        return [(method, path) for method, path, _ in self._routes]

    def dispatch(self, request: IncomingRequest) -> OutgoingResponse:
        path = route_path(request.path)
        for method, route, handler in self._routes:
            if request.method == method and path == route:
                return handler(request)
        return error_response(404, "Not found")

    def health(self, request: IncomingRequest) -> OutgoingResponse:
        return json_response(200, {"status": "healthy"})

    def extract(self, request: IncomingRequest) -> OutgoingResponse:
        if not request.body:
            return error_response(400, "No HTML content provided")

        try:
            language = self.capability(request.body)
        except Exception:
            default_logger.exception("Extraction capability raised")
            return error_response(500, "Extraction failed")

        metrics.record_extraction(language is not None)
        return json_response(200, {"language": language if language is not None else UNKNOWN_LANGUAGE})

    def expose_metrics(self, request: IncomingRequest) -> OutgoingResponse:
        body, content_type = metrics.render_metrics()
        return OutgoingResponse(200, body, content_type=content_type)


class RequestHandler:
    """Handles exactly one request per connection."""

    READ_SIZE = 8192
    DISCARD_LIMIT = 16 * 1024 * 1024  # 16MB
    DISCARD_TIMEOUT = 2.0

    def __init__(
        self,
        router: Router,
        *,
        read_size: int = READ_SIZE,
        read_timeout: Optional[float] = None,
        max_header_size: Optional[int] = None,
        max_body_size: Optional[int] = None,
    ):
        self.router = router
        self.read_size = read_size
        self.read_timeout = read_timeout
        self.max_header_size = max_header_size
        self.max_body_size = max_body_size
        self.last_state: Optional[ConnectionState] = None

    def new_parser(self) -> HTTPParser:
        return HTTPParser(
            max_header_size=self.max_header_size,
            max_body_size=self.max_body_size,
        )

    async def handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        client: str = "-",
    ) -> Optional[OutgoingResponse]:
        """Read, dispatch, respond, close.

        Returns:
            The response written, or None if the connection was closed
            without one (peer went away before a request was framed)
        """
        start_time = time.monotonic()
        request_id = uuid.uuid4().hex
        parser = self.new_parser()
        request: Optional[IncomingRequest] = None
        response: Optional[OutgoingResponse] = None
        rejected = False

        try:
            try:
                request = await self._read_request(reader, parser)
            except FramingError as e:
                default_logger.warning("Rejected request from %s: %s", client, e)
                response = error_response(e.status_code, str(e))
                rejected = True
            except asyncio.TimeoutError:
                default_logger.warning("Read timeout while receiving request from %s", client)
                return None

            if request is not None:
                response = self.router.dispatch(request)

            if response is None:
                default_logger.debug("Connection from %s closed before a request was complete", client)
                return None

            parser.transition(ConnectionState.RESPONDING)
            payload = response.to_bytes()
            try:
                writer.write(payload)
                await writer.drain()
            except (ConnectionResetError, BrokenPipeError) as e:
                default_logger.debug("Client %s went away before the response was sent: %s", client, e)

            if rejected:
                await self._discard_unread(reader, writer, client)

            duration = time.monotonic() - start_time
            metrics.record_request(response.status_code, duration)
            log_payload = access_log_payload(
                request.method if request else parser.method,
                request.path if request else parser.path,
                response.status_code,
                len(payload),
                duration,
                client,
                request_id,
            )
            default_logger.info(
                "%s %s %s",
                log_payload["method"] or "-",
                log_payload["path"] or "-",
                response.status_code,
                extra=log_payload,
            )
            return response
        finally:
            parser.transition(ConnectionState.CLOSED)
            self.last_state = parser.state
            await self._close(writer)

    async def _read_request(
        self, reader: asyncio.StreamReader, parser: HTTPParser
    ) -> Optional[IncomingRequest]:
        """Feed the framer until it has a request or the stream ends.

        Raises:
            FramingError: If the request is malformed or truncated
            asyncio.TimeoutError: If a read exceeds ``read_timeout``
        """
        while parser.expects_more:
            if self.read_timeout is None:
                chunk = await reader.read(self.read_size)
            else:
                chunk = await asyncio.wait_for(
                    reader.read(self.read_size), timeout=self.read_timeout
                )
            if not chunk:
                parser.feed_eof()
                break
            parser.feed_data(chunk)

        if parser.is_complete:
            return parser.get_request()
        return None

    async def _discard_unread(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, client: str
    ) -> None:
        """Half-close, then drain what the peer is still sending.

        Closing with unread bytes in the receive buffer makes the kernel
        reset the connection, which would destroy the error response.
        """
        try:
            if writer.can_write_eof():
                writer.write_eof()
            await asyncio.wait_for(self._read_until_eof(reader), timeout=self.DISCARD_TIMEOUT)
        except asyncio.TimeoutError:
            default_logger.debug("Gave up draining request body from %s", client)
        except (ConnectionResetError, BrokenPipeError) as e:
            default_logger.debug("Client %s went away while draining: %s", client, e)

    async def _read_until_eof(self, reader: asyncio.StreamReader) -> None:
        discarded = 0
        while discarded < self.DISCARD_LIMIT:
            chunk = await reader.read(self.read_size)
            if not chunk:
                return
            discarded += len(chunk)

    async def _close(self, writer: asyncio.StreamWriter) -> None:
        try:
            writer.close()
            await writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError) as e:
            default_logger.debug("Error closing connection: %s", e)
