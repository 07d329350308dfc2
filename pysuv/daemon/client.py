"""RPC clients for daemon communication.

One Connection wraps the single socket an invocation owns; the
ProgramClient and SupervisorClient facades are thin method tables on top
of it, so every client handed to a command shares the same connection.

Usage:
    with Connection(dial_endpoint(endpoint, timeout=3.0)) as conn:
        for program in SupervisorClient(conn).status():
            ...
"""

import json
import logging
import socket
from typing import Any, Dict, Iterator, List, Optional

from pysuv.daemon.protocol import (
    STATUS_END,
    STATUS_ERROR,
    STATUS_OK,
    STATUS_STREAM,
    deserialize_response,
    serialize_request,
)
from pysuv.errors import MalformedResponseError, RemoteCallError

logger = logging.getLogger(__name__)

PROGRAM_FIELDS = ("name", "status", "extra")


class Connection:
    """
    A connected daemon socket speaking the JSON-lines protocol.

    Calls are sequential: each call writes one request and reads its
    response frames before the next call may start.
    """

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self._file = sock.makefile("rwb")
        self.closed = False

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Perform a unary call and return its result dict.

        Raises:
            RemoteCallError: The daemon rejected the call, or the
                connection dropped before an answer arrived
            MalformedResponseError: The answer is not a valid response
        """
        self._send(method, params)
        response = self._receive(method)
        if response is None:
            raise RemoteCallError(f"{method}: connection closed by daemon")
        status = response.get("status")
        if status == STATUS_ERROR:
            raise RemoteCallError(f"{method}: {response.get('error') or 'unknown error'}")
        if status != STATUS_OK:
            raise MalformedResponseError(f"{method}: unexpected status {status!r}")
        result = response.get("result")
        if not isinstance(result, dict):
            raise MalformedResponseError(f"{method}: result is not an object")
        return result

    def stream(self, method: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """
        Perform a streaming call, yielding each item as it arrives.

        The iterator ends on the end-of-stream frame or when the daemon
        closes the connection.
        """
        self._send(method, params)
        while True:
            response = self._receive(method)
            if response is None:
                logger.debug(f"{method}: connection closed, ending stream")
                return
            status = response.get("status")
            if status == STATUS_END:
                return
            if status == STATUS_ERROR:
                raise RemoteCallError(f"{method}: {response.get('error') or 'unknown error'}")
            if status != STATUS_STREAM or not isinstance(response.get("result"), dict):
                raise MalformedResponseError(f"{method}: unexpected stream frame")
            yield response["result"]

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._file.close()
        finally:
            self.sock.close()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _send(self, method: str, params: Optional[Dict[str, Any]]) -> None:
        logger.debug(f"-> {method} {params or {}}")
        try:
            self._file.write(serialize_request(method, params))
            self._file.flush()
        except OSError as e:
            raise RemoteCallError(f"{method}: {e}") from e

    def _receive(self, method: str) -> Optional[Dict[str, Any]]:
        try:
            line = self._file.readline()
        except OSError as e:
            raise RemoteCallError(f"{method}: {e}") from e
        if not line:
            return None
        try:
            return deserialize_response(line)
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            raise MalformedResponseError(f"{method}: {e}") from e


def _message(result: Dict[str, Any], method: str) -> str:
    message = result.get("message")
    if not isinstance(message, str):
        raise MalformedResponseError(f"{method}: missing 'message' in result")
    return message


class SupervisorClient:
    """Daemon-wide operations."""

    def __init__(self, conn: Connection):
        self.conn = conn

    def status(self) -> List[Dict[str, str]]:
        result = self.conn.call("Status")
        programs = result.get("programs")
        if not isinstance(programs, list):
            raise MalformedResponseError("Status: missing 'programs' in result")
        for program in programs:
            if not isinstance(program, dict) or not all(
                isinstance(program.get(key), str) for key in PROGRAM_FIELDS
            ):
                raise MalformedResponseError(f"Status: invalid program entry {program!r}")
        return programs

    def create(
        self,
        name: str,
        directory: str,
        command: List[str],
        environ: Optional[List[str]] = None,
    ) -> str:
        result = self.conn.call(
            "Create",
            {
                "name": name,
                "directory": directory,
                "command": list(command),
                "environ": list(environ or []),
            },
        )
        return _message(result, "Create")

    def shutdown(self) -> str:
        return _message(self.conn.call("Shutdown"), "Shutdown")

    def version(self) -> str:
        return _message(self.conn.call("Version"), "Version")


class ProgramClient:
    """Operations on a single managed program."""

    def __init__(self, conn: Connection):
        self.conn = conn

    def start(self, name: str) -> str:
        return _message(self.conn.call("Start", {"name": name}), "Start")

    def stop(self, name: str) -> str:
        return _message(self.conn.call("Stop", {"name": name}), "Stop")

    def tail(self, name: str, number: int = 10, follow: bool = False) -> Iterator[str]:
        """Yield log lines (newline included) as the daemon streams them."""
        params = {"name": name, "number": number, "follow": follow}
        for item in self.conn.stream("Tail", params):
            line = item.get("line")
            if not isinstance(line, str):
                raise MalformedResponseError("Tail: stream item without 'line'")
            yield line
