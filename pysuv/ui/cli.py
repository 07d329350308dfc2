"""Main CLI entry point - built in one pass from built-ins and plugins."""

import dataclasses
from dataclasses import dataclass
from typing import List, Optional

import typer

from pysuv.commands import make_dispatcher
from pysuv.config import ENV_DEBUG, ENV_SERVER_ADDR, SuvConfig, ensure_home, setup_logging
from pysuv.daemon.transport import DaemonEndpoint, resolve_endpoint
from pysuv.dispatch import CommandContext, CommandDispatcher
from pysuv.errors import DaemonRunningError, PluginError
from pysuv.plugins import PluginRegistry
from pysuv.ui.output import UIManager

ui = UIManager()

PASSTHROUGH = {
    "allow_extra_args": True,
    "ignore_unknown_options": True,
    "allow_interspersed_args": False,
}


@dataclass(frozen=True)
class Invocation:
    """Everything resolved from the global options, shared by subcommands."""
    config: SuvConfig
    addr: str
    debug: bool
    endpoint: DaemonEndpoint
    dispatcher: CommandDispatcher


def _dispatch(ctx: typer.Context, name: str, args=(), **options) -> None:
    invocation: Invocation = ctx.obj
    context = CommandContext.build(invocation.addr, invocation.debug, args, **options)
    code = invocation.dispatcher.dispatch(name, context)
    if code:
        raise typer.Exit(code)


def build_app(config: SuvConfig, plugins: Optional[PluginRegistry] = None) -> typer.Typer:
    """
    Build the complete command table.

    Built-in commands are registered first, then one command per plugin.
    The returned app is not modified afterwards.
    """
    plugins = plugins if plugins is not None else PluginRegistry()

    app = typer.Typer(
        add_completion=False,
        no_args_is_help=True,
        help="pysuv - supervise your programs.",
    )

    @app.callback()
    def main(
        ctx: typer.Context,
        addr: str = typer.Option(
            config.server_addr, "--addr", envvar=ENV_SERVER_ADDR, help="server address"
        ),
        debug: bool = typer.Option(
            config.debug, "--debug", "-d", envvar=ENV_DEBUG, help="enable debug info"
        ),
    ) -> None:
        setup_logging(debug)
        ensure_home(config)
        try:
            endpoint = resolve_endpoint(addr, config)
        except ValueError as e:
            ui.error(str(e))
            raise typer.Exit(2)
        invocation_config = dataclasses.replace(config, debug=debug)
        ctx.obj = Invocation(
            config=invocation_config,
            addr=addr,
            debug=debug,
            endpoint=endpoint,
            dispatcher=make_dispatcher(invocation_config, endpoint),
        )

    @app.command()
    def version(ctx: typer.Context) -> None:
        """Show version"""
        _dispatch(ctx, "version")

    @app.command()
    def status(ctx: typer.Context) -> None:
        """Show program status"""
        _dispatch(ctx, "status")

    app.command("st", hidden=True)(status)

    @app.command(context_settings={"allow_interspersed_args": False})
    def add(
        ctx: typer.Context,
        command: List[str] = typer.Argument(..., help="Command to run and its arguments"),
        name: str = typer.Option("", "--name", "-n", help="program name"),
        env: Optional[List[str]] = typer.Option(None, "--env", "-e", help="Specify environ"),
    ) -> None:
        """
        Add to running list.

        Example: pysuv add --name worker -e PORT=8000 -- ./server.py --verbose
        """
        _dispatch(ctx, "add", command, name=name, env=list(env or []))

    @app.command()
    def start(
        ctx: typer.Context,
        name: str = typer.Argument(..., help="program name"),
    ) -> None:
        """Start a not running program"""
        _dispatch(ctx, "start", name=name)

    @app.command()
    def stop(
        ctx: typer.Context,
        name: str = typer.Argument(..., help="program name"),
    ) -> None:
        """Stop running program"""
        _dispatch(ctx, "stop", name=name)

    @app.command()
    def tail(
        ctx: typer.Context,
        name: str = typer.Argument(..., help="program name"),
        number: int = typer.Option(10, "--number", "-n", min=0, help="The location is number lines."),
        follow: bool = typer.Option(False, "--follow", "-f", help="Constantly show log"),
    ) -> None:
        """Tail log"""
        _dispatch(ctx, "tail", name=name, number=number, follow=follow)

    @app.command()
    def shutdown(ctx: typer.Context) -> None:
        """Shutdown server"""
        _dispatch(ctx, "shutdown")

    @app.command(hidden=True)
    def serve(ctx: typer.Context) -> None:
        """This command should only be called by pysuv itself"""
        # Lazy import: only the daemon needs asyncio and the program table.
        from pysuv.daemon.server import run_daemon

        invocation: Invocation = ctx.obj
        try:
            run_daemon(invocation.config, invocation.endpoint)
        except DaemonRunningError as e:
            ui.error(str(e))
            raise typer.Exit(1)

    builtin = {"version", "status", "st", "add", "start", "stop", "tail", "shutdown", "serve"}
    for plugin in plugins:
        if plugin.name in builtin:
            ui.warning(f"plugin {plugin.name} ignored: shadows a built-in command")
            continue
        app.command(
            plugin.name,
            help="Plugin command",
            context_settings=PASSTHROUGH,
            add_help_option=False,
        )(_plugin_action(plugins, plugin.name))

    return app


def _plugin_action(plugins: PluginRegistry, name: str):
    def run_plugin(ctx: typer.Context) -> None:
        invocation: Invocation = ctx.obj
        try:
            plugins.invoke(name, list(ctx.args), str(invocation.endpoint))
        except PluginError as e:
            ui.error(str(e))
            raise typer.Exit(e.exit_code)

    return run_plugin
