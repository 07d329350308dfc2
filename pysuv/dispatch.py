"""Per-invocation command dispatch.

A handler is registered together with the capabilities it needs. The set
of known capabilities is fixed, so asking for something unknown fails at
registration time, long before any user runs the command. At dispatch the
dispatcher opens the one daemon connection (bootstrapping the daemon
first) only if a needed capability requires it, builds a Deps struct and
calls the handler with it. The connection is closed on every exit path.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import typer

from pysuv.config import SuvConfig
from pysuv.daemon.bootstrap import Bootstrapper
from pysuv.daemon.client import Connection, ProgramClient, SupervisorClient
from pysuv.daemon.transport import DaemonEndpoint, dial_endpoint
from pysuv.errors import (
    BootstrapError,
    MalformedResponseError,
    RemoteCallError,
    TransportError,
)
from pysuv.ui.output import UIManager

logger = logging.getLogger(__name__)

CONTEXT = "context"
PROGRAM_CLIENT = "program_client"
SUPERVISOR_CLIENT = "supervisor_client"

CAPABILITIES = frozenset({CONTEXT, PROGRAM_CLIENT, SUPERVISOR_CLIENT})
CLIENT_CAPABILITIES = frozenset({PROGRAM_CLIENT, SUPERVISOR_CLIENT})

DIAL_TIMEOUT = 3.0


@dataclass(frozen=True)
class CommandContext:
    """Global flags plus the parsed arguments of one command."""
    addr: str = ""
    debug: bool = False
    args: Tuple[str, ...] = ()
    options: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(cls, addr: str, debug: bool, args=(), **options: Any) -> "CommandContext":
        return cls(
            addr=addr,
            debug=debug,
            args=tuple(args),
            options=MappingProxyType(dict(options)),
        )


@dataclass(frozen=True)
class Deps:
    """What a handler gets; clients are None unless it declared them."""
    context: CommandContext
    programs: Optional[ProgramClient] = None
    supervisor: Optional[SupervisorClient] = None


Handler = Callable[[Deps], Optional[int]]


@dataclass(frozen=True)
class Registration:
    handler: Handler
    needs: frozenset
    autostart: bool = True
    unreachable_message: Optional[str] = None


class CommandDispatcher:
    """Resolves handler dependencies against one lazily opened connection."""

    def __init__(
        self,
        config: SuvConfig,
        endpoint: DaemonEndpoint,
        bootstrapper: Optional[Bootstrapper] = None,
        dialer: Callable[[DaemonEndpoint, float], Any] = dial_endpoint,
        ui: Optional[UIManager] = None,
    ):
        self.config = config
        self.endpoint = endpoint
        self.bootstrapper = bootstrapper or Bootstrapper(endpoint, log_path=config.daemon_log)
        self._dialer = dialer
        self.ui = ui or UIManager()
        self._registry: Dict[str, Registration] = {}
        self._connection: Optional[Connection] = None

    def register(
        self,
        name: str,
        handler: Handler,
        needs: Tuple[str, ...] = (CONTEXT,),
        autostart: bool = True,
        unreachable_message: Optional[str] = None,
    ) -> Handler:
        """
        Register a handler under a command name.

        Raises:
            ValueError: Unknown capability in needs, or name taken
        """
        unknown = set(needs) - CAPABILITIES
        if unknown:
            raise ValueError(f"command {name!r} needs unknown capabilities: {sorted(unknown)}")
        if name in self._registry:
            raise ValueError(f"command {name!r} is already registered")
        self._registry[name] = Registration(
            handler=handler,
            needs=frozenset(needs),
            autostart=autostart,
            unreachable_message=unreachable_message,
        )
        return handler

    def __contains__(self, name: object) -> bool:
        return name in self._registry

    def dispatch(self, name: str, context: CommandContext) -> int:
        """
        Run a registered command and return its exit status.

        Bootstrap and dial failures are reported once and give status 1;
        RPC failures are reported and give status 1.
        """
        registration = self._registry[name]
        try:
            try:
                deps = self._resolve(registration, context)
            except (BootstrapError, TransportError) as e:
                if not registration.autostart and registration.unreachable_message:
                    logger.debug(f"{name}: {e}")
                    typer.echo(registration.unreachable_message)
                    return 0
                self.ui.error(str(e))
                return 1

            try:
                return registration.handler(deps) or 0
            except RemoteCallError as e:
                self.ui.error(f"ERR: call failed: {e}")
                return 1
            except MalformedResponseError as e:
                self.ui.error(f"ERR: unexpected response: {e}")
                return 1
        finally:
            self.close()

    def connection(self, autostart: bool = True) -> Connection:
        """The invocation's single connection, opened on first use."""
        if self._connection is None:
            if autostart:
                self.bootstrapper.ensure_daemon()
            self._connection = Connection(self._dialer(self.endpoint, DIAL_TIMEOUT))
        return self._connection

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _resolve(self, registration: Registration, context: CommandContext) -> Deps:
        needs = registration.needs
        conn = None
        if needs & CLIENT_CAPABILITIES:
            conn = self.connection(autostart=registration.autostart)
        return Deps(
            context=context,
            programs=ProgramClient(conn) if PROGRAM_CLIENT in needs else None,
            supervisor=SupervisorClient(conn) if SUPERVISOR_CLIENT in needs else None,
        )
