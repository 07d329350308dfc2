"""Make sure a daemon is listening before a command needs it.

ensure_daemon() probes the endpoint and, when nothing answers, re-invokes
the current interpreter in "serve" mode. The spawned process and a timer
then race: the daemon is supposed to run forever, so a process that is
still alive when the timer fires counts as a successful start, and one
that exits inside the window counts as a failed start.

The race is two threads feeding one queue; whichever posts first wins.
Neither branch cancels the other. When the timer wins the child keeps
running as the new daemon, and its waiter thread is a daemon thread so it
never holds up interpreter exit.
"""

import logging
import os
import queue
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from pysuv.daemon.transport import DaemonEndpoint, dial_endpoint
from pysuv.errors import BootstrapError, TransportError

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 0.1
BOOTSTRAP_WINDOW = 0.5
READY_TIMEOUT = 3.0
READY_POLL_INTERVAL = 0.1

_EXITED = "exited"
_TIMED_OUT = "timeout"


def daemon_command(endpoint: DaemonEndpoint) -> List[str]:
    """Command line that starts this program in serve mode."""
    return [sys.executable, "-m", "pysuv", "--addr", str(endpoint), "serve"]


class Bootstrapper:
    """
    Probe-and-spawn logic for one invocation.

    At most one spawn happens per Bootstrapper, however many times
    ensure_daemon() or probe() are called.
    """

    def __init__(
        self,
        endpoint: DaemonEndpoint,
        command: Optional[List[str]] = None,
        log_path: Optional[Path] = None,
        probe_timeout: float = PROBE_TIMEOUT,
        window: float = BOOTSTRAP_WINDOW,
        ready_timeout: float = READY_TIMEOUT,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        """
        Args:
            endpoint: Where the daemon is expected to listen
            command: Spawn command (default: daemon_command(endpoint))
            log_path: File receiving the daemon's stdout/stderr
            probe_timeout: Connect timeout for a reachability probe
            window: How long the spawned process has to fail
            ready_timeout: How long to wait for the socket after a
                successful start (0 disables the re-check)
            popen: Process factory, replaceable in tests
        """
        self.endpoint = endpoint
        self.command = command or daemon_command(endpoint)
        self.log_path = log_path
        self.probe_timeout = probe_timeout
        self.window = window
        self.ready_timeout = ready_timeout
        self._popen = popen
        self.spawn_count = 0
        self._ensured = False

    def probe(self) -> bool:
        """True if something accepts connections on the endpoint."""
        try:
            sock = dial_endpoint(self.endpoint, self.probe_timeout)
        except TransportError as e:
            logger.debug(f"probe failed: {e}")
            return False
        sock.close()
        return True

    def ensure_daemon(self) -> None:
        """
        Return once a daemon is presumed to be running.

        Raises:
            BootstrapError: The daemon could not be launched, or it exited
                before the bootstrap window elapsed.
        """
        if self._ensured:
            return
        logger.debug(f"test connection to {self.endpoint}")
        if self.probe():
            self._ensured = True
            return

        if self.spawn_count:
            raise BootstrapError(f"daemon at {self.endpoint} is not reachable")

        logger.debug("start run server")
        proc = self._spawn()
        exit_code = self._race(proc)
        if exit_code is not None:
            raise BootstrapError(f"server start failed, exit status {exit_code}")

        logger.info("server started")
        self._ensured = True
        self._wait_ready()

    def _spawn(self) -> subprocess.Popen:
        self.spawn_count += 1
        log_file = None
        try:
            if self.log_path is not None:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = open(self.log_path, "ab")
            output = log_file if log_file is not None else subprocess.DEVNULL
            return self._popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=output,
                start_new_session=True,
                close_fds=True,
                env=dict(os.environ),
            )
        except OSError as e:
            raise BootstrapError(f"server start failed: {e}") from e
        finally:
            # The child holds its own descriptor.
            if log_file is not None:
                log_file.close()

    def _race(self, proc: subprocess.Popen) -> Optional[int]:
        """
        Race process exit against the bootstrap timer.

        Returns the exit status if the process exited first, None if the
        timer fired first.
        """
        outcomes: "queue.Queue[tuple]" = queue.Queue()

        def wait_exit() -> None:
            outcomes.put((_EXITED, proc.wait()))

        def timer_fired() -> None:
            outcomes.put((_TIMED_OUT, None))

        waiter = threading.Thread(target=wait_exit, name="pysuv-spawn-wait", daemon=True)
        timer = threading.Timer(self.window, timer_fired)
        timer.daemon = True
        waiter.start()
        timer.start()

        kind, exit_code = outcomes.get()
        logger.debug(f"bootstrap race won by {kind}")
        return exit_code if kind == _EXITED else None

    def _wait_ready(self) -> None:
        deadline = time.monotonic() + self.ready_timeout
        while time.monotonic() < deadline:
            if self.probe():
                return
            time.sleep(READY_POLL_INTERVAL)
        if self.ready_timeout > 0:
            logger.warning(
                f"daemon started but {self.endpoint} is not accepting connections yet"
            )
