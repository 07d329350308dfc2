"""Async socket server for the pysuv daemon.

This module implements the long-running process started by `pysuv serve`:
1. Loads the persisted program list and starts every program
2. Answers RPC requests on the unix socket (and on TCP when configured)
3. Stops all programs and removes its socket on shutdown

Usage:
    pysuv serve             (normally spawned automatically by the CLI)
"""

import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pysuv import __version__
from pysuv.config import SuvConfig
from pysuv.daemon.protocol import (
    STATUS_END,
    STATUS_ERROR,
    STATUS_OK,
    STATUS_STREAM,
    deserialize_request,
    serialize_response,
)
from pysuv.daemon.state import ProgramError, SupervisorState
from pysuv.daemon.transport import TCP, UNIX, DaemonEndpoint, split_host_port
from pysuv.errors import DaemonRunningError

logger = logging.getLogger(__name__)

TAIL_POLL_INTERVAL = 0.2
MAX_FRAME = 1024 * 1024
CLAIM_TIMEOUT = 1.0


class DaemonServer:
    """
    Async socket server for the daemon.

    Handles concurrent client connections using asyncio. A connection
    may carry any number of requests, answered in order.
    """

    def __init__(
        self,
        config: SuvConfig,
        endpoint: Optional[DaemonEndpoint] = None,
        install_signal_handlers: bool = True,
    ):
        """
        Args:
            config: Paths for the socket, program list and logs
            endpoint: Extra TCP endpoint to listen on (unix is always served)
            install_signal_handlers: Stop on SIGTERM/SIGINT (main thread only)
        """
        self.config = config
        self.endpoint = endpoint
        self.install_signal_handlers = install_signal_handlers
        if endpoint is not None and endpoint.transport == UNIX:
            self.socket_path = Path(endpoint.address)
        else:
            self.socket_path = config.sock_path

        self.state = SupervisorState(config.program_config, config.log_dir)
        self.servers: List[asyncio.AbstractServer] = []
        self._writers: Set[asyncio.StreamWriter] = set()
        self._shutdown_event: Optional[asyncio.Event] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "Status": self._handle_status,
            "Create": self._handle_create,
            "Start": self._handle_start,
            "Stop": self._handle_stop,
            "Shutdown": self._handle_shutdown,
            "Version": self._handle_version,
        }

    async def start(self) -> None:
        """Start the daemon and serve until shutdown."""
        logger.info(f"Starting pysuv daemon {__version__} (pid {os.getpid()})")
        self._shutdown_event = asyncio.Event()
        await self._claim_socket()

        try:
            # Programs are up before the first Status can be answered.
            for info in self.state.load():
                try:
                    await self.state.start(info.name)
                except ProgramError as e:
                    logger.error(str(e))

            await self._listen()

            if self.install_signal_handlers:
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.add_signal_handler(sig, self._signal_handler)

            await self._shutdown_event.wait()
        finally:
            await self._cleanup()

    async def _claim_socket(self) -> None:
        """
        Remove a stale socket file left by a daemon that is gone.

        Raises:
            DaemonRunningError: A daemon still answers on the socket
        """
        if not self.socket_path.exists():
            return
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.socket_path)),
                timeout=CLAIM_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.info(f"Removing stale socket {self.socket_path}: {e}")
            self.socket_path.unlink()
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        raise DaemonRunningError(f"a daemon is already listening on {self.socket_path}")

    async def _listen(self) -> None:
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        unix_server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
            limit=MAX_FRAME,
        )
        # Set socket permissions (owner only)
        os.chmod(self.socket_path, 0o600)
        self.servers.append(unix_server)
        logger.info(f"Daemon listening on {self.socket_path}")

        if self.endpoint is not None and self.endpoint.transport == TCP:
            host, port = split_host_port(self.endpoint.address)
            tcp_server = await asyncio.start_server(
                self._handle_client, host=host, port=port, limit=MAX_FRAME
            )
            self.servers.append(tcp_server)
            logger.info(f"Daemon listening on {host}:{port}")

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single client connection."""
        self._writers.add(writer)
        try:
            while not self._shutdown_event.is_set():
                try:
                    data = await reader.readline()
                except (asyncio.LimitOverrunError, ValueError):
                    await self._write(writer, serialize_response(STATUS_ERROR, error="Request too large"))
                    return
                if not data:
                    return

                try:
                    request = deserialize_request(data)
                except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
                    await self._write(writer, serialize_response(STATUS_ERROR, error=f"Invalid request: {e}"))
                    continue

                method = request.get("method", "")
                params = request.get("params") or {}
                logger.debug(f"Request {method} {params}")

                if method == "Tail":
                    await self._handle_tail(params, reader, writer)
                    continue

                handler = self._handlers.get(method)
                if handler is None:
                    response = serialize_response(STATUS_ERROR, error=f"Unknown method: {method}")
                else:
                    try:
                        response = serialize_response(STATUS_OK, result=await handler(params))
                    except ProgramError as e:
                        response = serialize_response(STATUS_ERROR, error=str(e))
                await self._write(writer, response)
        except (ConnectionError, BrokenPipeError):
            logger.debug("Client went away")
        except Exception as e:
            logger.exception(f"Error handling client: {e}")
            try:
                await self._write(writer, serialize_response(STATUS_ERROR, error=str(e)))
            except OSError:
                pass
        finally:
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _write(self, writer: asyncio.StreamWriter, data: bytes) -> None:
        writer.write(data)
        await writer.drain()

    async def _handle_status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"programs": self.state.status()}

    async def _handle_create(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"message": await self.state.create(params)}

    async def _handle_start(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"message": await self.state.start(str(params.get("name", "")))}

    async def _handle_stop(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"message": await self.state.stop(str(params.get("name", "")))}

    async def _handle_version(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"message": __version__}

    async def _handle_shutdown(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Handle graceful shutdown request; answered before the daemon stops."""
        logger.info("Shutdown requested via socket")
        asyncio.get_running_loop().call_soon(self.request_shutdown)
        return {"message": "shutdown server"}

    async def _handle_tail(
        self,
        params: Dict[str, Any],
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Stream the last lines of a program log, then follow it if asked."""
        name = str(params.get("name", ""))
        try:
            number = max(int(params.get("number", 10)), 0)
        except (TypeError, ValueError):
            number = 10
        follow = bool(params.get("follow", False))

        try:
            self.state.get(name)
        except ProgramError as e:
            await self._write(writer, serialize_response(STATUS_ERROR, error=str(e)))
            return

        log_path = self.state.log_path(name)
        position = 0
        if log_path.exists():
            with open(log_path, "rb") as f:
                content = f.read()
            position = len(content)
            lines = content.decode("utf-8", errors="replace").splitlines(keepends=True)
            for line in lines[-number:] if number else []:
                await self._write(writer, serialize_response(STATUS_STREAM, result={"line": line}))

        while follow and not self._shutdown_event.is_set() and not reader.at_eof():
            position = await self._send_new_lines(log_path, position, writer)
            await asyncio.sleep(TAIL_POLL_INTERVAL)

        if not reader.at_eof():
            await self._write(writer, serialize_response(STATUS_END))

    async def _send_new_lines(self, log_path: Path, position: int, writer: asyncio.StreamWriter) -> int:
        if not log_path.exists():
            return position
        if log_path.stat().st_size < position:
            # Truncated, start over.
            position = 0
        with open(log_path, "rb") as f:
            f.seek(position)
            chunk = f.read()
        # Hold back a trailing partial line until it is complete.
        complete = chunk.rfind(b"\n") + 1
        if complete == 0:
            return position
        for line in chunk[:complete].decode("utf-8", errors="replace").splitlines(keepends=True):
            await self._write(writer, serialize_response(STATUS_STREAM, result={"line": line}))
        return position + complete

    def _signal_handler(self) -> None:
        """Handle SIGTERM/SIGINT for graceful shutdown."""
        logger.info("Received shutdown signal")
        self.request_shutdown()

    async def _cleanup(self) -> None:
        """Cleanup on shutdown."""
        logger.info("Cleaning up...")

        await self.state.stop_all()

        for server in self.servers:
            server.close()
        # Idle clients would otherwise keep wait_closed() pending.
        for writer in list(self._writers):
            writer.close()
        for server in self.servers:
            await server.wait_closed()
        self.servers = []

        if self.socket_path.exists():
            self.socket_path.unlink()

        logger.info("Daemon stopped")


def run_daemon(config: SuvConfig, endpoint: Optional[DaemonEndpoint] = None) -> None:
    """
    Run the daemon server in the foreground.

    Args:
        config: Process configuration
        endpoint: Resolved --addr endpoint; a TCP endpoint is served too
    """
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    server = DaemonServer(config, endpoint=endpoint)
    asyncio.run(server.start())
