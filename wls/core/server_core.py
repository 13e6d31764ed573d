"""
Language server: connection acceptor and process entry point.

This module implements the accept loop with features including:
- Sequential handling: one connection is read, dispatched, answered and
  closed before the next one is accepted
- Graceful shutdown on SIGINT/SIGTERM
- Ordered teardown (stop accepting, finish the in-flight connection,
  release the capability, close the listening socket)
"""

import argparse
import asyncio
import signal
import socket
import sys
from typing import Optional, Tuple

from .config import ConfigError, ServerConfig, load_config
from .plugin_loader import ExtractionCapability, PluginLoadError, load_capability
from .request_handler import RequestHandler, Router
from .server_utils import (
    ServerStartupError,
    configure_logging,
    create_listening_socket,
    default_logger,
    format_peer,
    setup_uvloop,
)


class LanguageServer:
    """Single-connection-at-a-time HTTP front end for an extraction capability.

    Attributes:
        config: Server configuration
        capability: Loaded extraction capability, released on shutdown
        handler: Per-connection request handler
    """

    def __init__(self, config: ServerConfig, capability: ExtractionCapability):
        # Validate port number
        if not isinstance(config.port, int):
            raise ValueError("Port must be an integer")
        if config.port < 0 or config.port > 65535:
            raise ValueError("Port number must be between 0 and 65535")

        # Validate backlog
        if config.backlog < 1:
            raise ValueError("Backlog must be at least 1")

        self.config = config
        self.capability = capability
        self.handler = RequestHandler(
            Router(capability, enable_metrics=config.enable_metrics),
            read_size=config.read_size,
            read_timeout=config.read_timeout,
            max_header_size=config.max_header_size,
            max_body_size=config.max_body_size,
        )
        self._sock: Optional[socket.socket] = None
        self._shutdown_event = asyncio.Event()
        self.started = asyncio.Event()
        self.connections_handled = 0

    @property
    def bound_address(self) -> Optional[Tuple[str, int]]:
        if self._sock is None:
            return None
        return self._sock.getsockname()

    def run(self) -> int:
        """Serve until a shutdown signal arrives.

        Returns:
            Process exit code
        """
        try:
            setup_uvloop()
        except ServerStartupError:
            self.capability.close()
            raise
        asyncio.run(self.serve())
        return 0

    def shutdown(self) -> None:
        """Stop accepting; the in-flight connection, if any, is finished first."""
        if not self._shutdown_event.is_set():
            default_logger.info("Initiating graceful shutdown...")
            self._shutdown_event.set()

    async def serve(self, install_signal_handlers: bool = True) -> None:
        """Bind, then accept and handle connections one at a time.

        Raises:
            ServerStartupError: If the listening socket cannot be set up
        """
        loop = asyncio.get_running_loop()
        signals_installed = []
        try:
            self._sock = create_listening_socket(
                self.config.host, self.config.port, self.config.backlog
            )

            if install_signal_handlers and sys.platform != "win32":
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.add_signal_handler(sig, self.shutdown)
                    signals_installed.append(sig)

            default_logger.info(
                "Server running on %s:%s", self.config.host, self.bound_address[1]
            )
            self.started.set()
            await self._accept_loop(loop)
        finally:
            for sig in signals_installed:
                loop.remove_signal_handler(sig)
            self.capability.close()
            if self._sock is not None:
                self._sock.close()
            default_logger.info("Server shutdown complete")

    async def _accept_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        stop = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            while not self._shutdown_event.is_set():
                accept = asyncio.ensure_future(loop.sock_accept(self._sock))
                done, _ = await asyncio.wait(
                    {accept, stop}, return_when=asyncio.FIRST_COMPLETED
                )
                if accept not in done:
                    accept.cancel()
                    try:
                        await accept
                    except asyncio.CancelledError:
                        pass
                    break

                try:
                    client_sock, addr = accept.result()
                except OSError as e:
                    default_logger.warning(f"Error accepting connection: {e}")
                    continue

                # Handled inline: the next accept waits for this connection
                await self._handle_client(client_sock, addr)
        finally:
            stop.cancel()

    async def _handle_client(self, client_sock: socket.socket, addr) -> None:
        client = format_peer(addr)
        try:
            reader, writer = await asyncio.open_connection(sock=client_sock)
        except OSError as e:
            default_logger.warning("Could not open stream for %s: %s", client, e)
            client_sock.close()
            return

        try:
            await self.handler.handle_connection(reader, writer, client)
        except (ConnectionResetError, BrokenPipeError) as e:
            default_logger.debug("Connection with %s reset: %s", client, e)
        except Exception:
            default_logger.exception("Error handling client %s", client)
        finally:
            self.connections_handled += 1
            if client_sock.fileno() != -1:
                client_sock.close()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wls-server",
        description="HTTP front end for a dynamically loaded language extractor",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Configuration file used when WLS_HOST/WLS_PORT are not set (default: ./config.json)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override the configured log level",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit structured JSON log records",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write log records to this file",
    )
    return parser


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if not config.valid:
        print("ERROR: Configuration not found.", file=sys.stderr)
        return 1

    configure_logging(
        level=args.log_level or config.log_level,
        json_logs=args.json_logs or config.json_logs,
        log_file=args.log_file,
    )

    try:
        capability = load_capability(config.plugin_path)
    except PluginLoadError as e:
        default_logger.error(f"ERROR: {e}")
        return 1

    try:
        server = LanguageServer(config, capability)
    except ValueError as e:
        capability.close()
        default_logger.error(f"ERROR: {e}")
        return 1

    try:
        return server.run()
    except ServerStartupError as e:
        cause = f" ({e.__cause__})" if e.__cause__ else ""
        default_logger.error(f"ERROR: {e}{cause}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
