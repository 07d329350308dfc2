"""Address resolution and dialing for unix-socket and TCP transports.

The RPC layer only ever sees a connected stream socket; whether it came
from a unix domain socket or a TCP address is decided here.
"""

import logging
import socket
from dataclasses import dataclass
from typing import Tuple

from pysuv.config import SuvConfig
from pysuv.errors import TransportError

logger = logging.getLogger(__name__)

UNIX = "unix"
TCP = "tcp"

DEFAULT_HOST = "127.0.0.1"


@dataclass(frozen=True)
class DaemonEndpoint:
    transport: str
    address: str

    def __str__(self) -> str:
        if self.transport == UNIX:
            return f"{UNIX}:{self.address}"
        return self.address


def split_host_port(address: str) -> Tuple[str, int]:
    """Split "host:port" (host optional) into its parts."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"Invalid network address {address!r}: missing port")
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"Invalid network address {address!r}: bad port") from None
    return host.strip("[]") or DEFAULT_HOST, port_number


def resolve_endpoint(addr: str, config: SuvConfig) -> DaemonEndpoint:
    """
    Resolve the --addr value into a DaemonEndpoint.

    - "" -> the unix socket in the home directory
    - "unix:<path>" or anything containing a path separator -> unix socket
    - "host:port" or ":port" -> TCP
    """
    addr = (addr or "").strip()
    if not addr:
        return DaemonEndpoint(UNIX, str(config.sock_path))
    if addr.startswith(f"{UNIX}:"):
        return DaemonEndpoint(UNIX, addr[len(UNIX) + 1:])
    if "/" in addr:
        return DaemonEndpoint(UNIX, addr)
    split_host_port(addr)
    return DaemonEndpoint(TCP, addr)


def dial(transport: str, address: str, timeout: float) -> socket.socket:
    """
    Open a stream connection to the daemon.

    The timeout only bounds the connect; the returned socket is blocking
    so streamed calls can wait for as long as the daemon keeps them open.

    Raises:
        TransportError: On timeout, refusal, missing socket file or an
            unknown transport kind, whichever transport was asked for.
    """
    logger.debug(f"dial {transport} {address} (timeout {timeout}s)")
    try:
        if transport == UNIX:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            try:
                sock.connect(address)
            except BaseException:
                sock.close()
                raise
        elif transport == TCP:
            sock = socket.create_connection(split_host_port(address), timeout=timeout)
        else:
            raise TransportError(f"unknown transport {transport!r}")
    except socket.timeout as e:
        raise TransportError(f"dial {transport} {address}: timed out") from e
    except (OSError, ValueError) as e:
        raise TransportError(f"dial {transport} {address}: {e}") from e

    sock.settimeout(None)
    return sock


def dial_endpoint(endpoint: DaemonEndpoint, timeout: float) -> socket.socket:
    return dial(endpoint.transport, endpoint.address, timeout)
