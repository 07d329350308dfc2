"""
Command handlers.

Each handler receives a Deps struct carrying exactly the clients it was
registered with (see COMMANDS) and returns an exit status. Handlers only
print; RPC errors propagate to the dispatcher, which reports them.
"""

import logging
import os
from typing import Optional

import typer

from pysuv import __version__
from pysuv.config import SuvConfig
from pysuv.daemon.bootstrap import Bootstrapper
from pysuv.daemon.transport import DaemonEndpoint
from pysuv.dispatch import (
    CONTEXT,
    PROGRAM_CLIENT,
    SUPERVISOR_CLIENT,
    CommandDispatcher,
    Deps,
)
from pysuv.ui.output import UIManager
from pysuv.utils import look_path, split_environ

logger = logging.getLogger(__name__)

ui = UIManager()


def handle_version(deps: Deps) -> int:
    """Print client and server versions."""
    typer.echo(f"Client: {__version__}")
    typer.echo(f"Server: {deps.supervisor.version()}")
    return 0


def handle_status(deps: Deps) -> int:
    """Print one tab-separated line per managed program."""
    for program in deps.supervisor.status():
        typer.echo(
            f"{program.get('name', '')}\t{program.get('status', '')}\t{program.get('extra', '')}"
        )
    return 0


def handle_add(deps: Deps) -> int:
    """Register a program with the daemon, resolving its executable first."""
    context = deps.context
    if not context.args:
        ui.error("need at least one argument: the command to run")
        return 1

    command, *command_args = context.args
    command_path = look_path(command)
    if command_path is None:
        ui.error(f"executable file not found: {command}")
        return 1

    try:
        environ = split_environ(context.options.get("env"))
    except ValueError as e:
        ui.error(str(e))
        return 1

    name = context.options.get("name") or os.path.basename(command)
    message = deps.supervisor.create(
        name=name,
        directory=os.getcwd(),
        command=[command_path, *command_args],
        environ=environ,
    )
    typer.echo(message)
    return 0


def handle_start(deps: Deps) -> int:
    typer.echo(deps.programs.start(deps.context.options["name"]))
    return 0


def handle_stop(deps: Deps) -> int:
    typer.echo(deps.programs.stop(deps.context.options["name"]))
    return 0


def handle_tail(deps: Deps) -> int:
    """Print log lines as they arrive until the stream ends."""
    options = deps.context.options
    for line in deps.programs.tail(
        options["name"],
        number=options.get("number", 10),
        follow=options.get("follow", False),
    ):
        typer.echo(line, nl=False)
    return 0


def handle_shutdown(deps: Deps) -> int:
    typer.echo(deps.supervisor.shutdown())
    return 0


# name, handler, needs, autostart, message when the daemon is unreachable
COMMANDS = (
    ("version", handle_version, (SUPERVISOR_CLIENT,), True, None),
    ("status", handle_status, (SUPERVISOR_CLIENT,), True, None),
    ("add", handle_add, (CONTEXT, SUPERVISOR_CLIENT), True, None),
    ("start", handle_start, (CONTEXT, PROGRAM_CLIENT), True, None),
    ("stop", handle_stop, (CONTEXT, PROGRAM_CLIENT), True, None),
    ("tail", handle_tail, (CONTEXT, PROGRAM_CLIENT), True, None),
    ("shutdown", handle_shutdown, (SUPERVISOR_CLIENT,), False, "server already closed"),
)


def make_dispatcher(
    config: SuvConfig,
    endpoint: DaemonEndpoint,
    bootstrapper: Optional[Bootstrapper] = None,
) -> CommandDispatcher:
    """Dispatcher with every built-in command registered."""
    dispatcher = CommandDispatcher(config, endpoint, bootstrapper=bootstrapper)
    for name, handler, needs, autostart, unreachable_message in COMMANDS:
        dispatcher.register(
            name,
            handler,
            needs=needs,
            autostart=autostart,
            unreachable_message=unreachable_message,
        )
    return dispatcher
