"""Daemon bridge for pysuv.

Architecture:
- Bootstrapper: probes the daemon and starts it when nothing answers
- dial: opens a unix-socket or TCP connection to the daemon
- Connection / ProgramClient / SupervisorClient: JSON-lines RPC clients
- DaemonServer: the asyncio server behind `pysuv serve`
"""

from pysuv.daemon.bootstrap import Bootstrapper
from pysuv.daemon.client import Connection, ProgramClient, SupervisorClient
from pysuv.daemon.transport import DaemonEndpoint, dial, resolve_endpoint

__all__ = [
    "Bootstrapper",
    "Connection",
    "DaemonEndpoint",
    "ProgramClient",
    "SupervisorClient",
    "dial",
    "resolve_endpoint",
]
