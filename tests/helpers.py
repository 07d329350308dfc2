"""Shared helpers for tests that need a live daemon."""

import asyncio
import socket
import tempfile
import threading
import time
from pathlib import Path
from typing import Optional

from pysuv.config import SuvConfig, load_config
from pysuv.daemon.bootstrap import Bootstrapper
from pysuv.daemon.server import DaemonServer
from pysuv.daemon.transport import DaemonEndpoint


def make_home() -> Path:
    """Short temporary home (unix socket paths are length limited)."""
    return Path(tempfile.mkdtemp(prefix="suv"))


def make_config(home: Optional[Path] = None) -> SuvConfig:
    return load_config(home=home or make_home(), environ={})


def free_tcp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class ServerThread:
    """Runs a DaemonServer on its own event loop in a background thread."""

    def __init__(self, config: SuvConfig, endpoint: Optional[DaemonEndpoint] = None):
        self.config = config
        self.endpoint = endpoint
        self.server = DaemonServer(config, endpoint=endpoint, install_signal_handlers=False)
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run, daemon=True)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        try:
            self.loop.run_until_complete(self.server.start())
        finally:
            self.loop.close()

    def start(self) -> "ServerThread":
        self.thread.start()
        endpoints = [DaemonEndpoint("unix", str(self.config.sock_path))]
        if self.endpoint is not None:
            endpoints.append(self.endpoint)
        for endpoint in endpoints:
            probe = Bootstrapper(endpoint, ready_timeout=0)
            if not wait_until(probe.probe):
                raise RuntimeError(f"daemon did not start listening on {endpoint}")
        return self

    def stop(self) -> None:
        if self.thread.is_alive():
            self.loop.call_soon_threadsafe(self.server.request_shutdown)
            self.thread.join(timeout=15)
