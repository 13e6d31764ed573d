"""
Utility functions for language server configuration and operation.

This module provides core functionality for:
- Logging setup (plain text or JSON via python-json-logger)
- Event loop setup with uvloop
- Listening socket creation and bind address policy
- Access log payloads

The utilities in this module are shared by the acceptor and the
request handler.
"""

import sys
import socket
import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from pythonjsonlogger.json import JsonFormatter

if sys.platform != "win32":
    import uvloop
else:
    uvloop = None

LOGGER_NAME = "wls"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOOPBACK_HOSTS = {"localhost", "127.0.0.1"}
LOOPBACK_ADDRESS = "127.0.0.1"
ANY_ADDRESS = "0.0.0.0"

# Default logger instance
default_logger = logging.getLogger(LOGGER_NAME)


class ServerStartupError(Exception):
    """Raised when the listening socket cannot be created, bound or listened on"""

    pass


def configure_logging(level=logging.INFO, json_logs: bool = False, log_file=None):
    """Configure logging for the language server.

    Args:
        level: Logging level name or number (default: INFO)
        json_logs: Emit one JSON object per record instead of plain text
        log_file: Optional path to log file

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)
    if isinstance(level, str):
        level = level.upper()
    logger.setLevel(level)

    # Reconfiguring must not stack handlers
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    if json_logs:
        formatter = JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s", datefmt=LOG_DATEFMT
        )
    else:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def setup_uvloop() -> None:
    """Install uvloop as the event loop policy on platforms that ship it.

    Raises:
        ServerStartupError: If uvloop setup fails
    """
    if uvloop is None:
        return
    try:
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        default_logger.debug("Using uvloop event loop")
    except Exception as e:
        default_logger.error(f"Failed to setup uvloop: {e}")
        raise ServerStartupError("Failed to initialize event loop") from e


def resolve_bind_address(host: str) -> str:
    """Map the configured host onto the address actually bound.

    Loopback names bind to 127.0.0.1, anything else binds to all
    interfaces. The host string is never resolved through DNS.
    """
    if host in LOOPBACK_HOSTS:
        return LOOPBACK_ADDRESS
    return ANY_ADDRESS


def configure_socket_opts(sock: socket.socket) -> None:
    """Enable address reuse on the listening socket.

    Raises:
        ServerStartupError: If the option cannot be set
    """
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    except OSError as e:
        default_logger.error(f"Failed to configure socket options: {e}")
        raise ServerStartupError("Socket configuration failed") from e


def create_listening_socket(host: str, port: int, backlog: int) -> socket.socket:
    """Create, bind and listen on a TCP socket for host:port.

    Raises:
        ServerStartupError: On socket creation, bind or listen failure
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as e:
        raise ServerStartupError("Failed to create socket") from e

    try:
        configure_socket_opts(sock)
        address = resolve_bind_address(host)
        try:
            sock.bind((address, port))
        except OSError as e:
            raise ServerStartupError(f"Failed to bind to {host}:{port}") from e
        try:
            sock.listen(backlog)
        except OSError as e:
            raise ServerStartupError("Failed to listen") from e
    except ServerStartupError:
        sock.close()
        raise

    sock.setblocking(False)
    return sock


def format_peer(peername: Optional[Tuple[Any, ...]]) -> str:
    """Render a peer address as host:port for logs."""
    if not peername:
        return "-"
    return f"{peername[0]}:{peername[1]}"


def access_log_payload(
    method: str,
    path: str,
    status: int,
    length: int,
    duration: float,
    client: str,
    request_id: str,
) -> Dict[str, Any]:
    return {
        "method": method,
        "path": path,
        "status": status,
        "length": length,
        "duration_s": round(duration, 6),
        "client": client,
        "request_id": request_id,
    }
