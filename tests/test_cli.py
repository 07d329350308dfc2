"""
Tests for the Typer CLI in ui/cli.py.

The end-to-end cases start a real daemon through the auto-start path and
shut it down again afterwards.
"""

import json
import logging
import os
import shutil
import stat
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from helpers import make_home, wait_until

from pysuv import __version__
from pysuv.commands import make_dispatcher
from pysuv.config import load_config
from pysuv.daemon.bootstrap import Bootstrapper
from pysuv.daemon.client import Connection, SupervisorClient
from pysuv.daemon.transport import UNIX, DaemonEndpoint, dial
from pysuv.errors import TransportError
from pysuv.plugins import PluginRegistry
from pysuv.ui.cli import build_app


def make_executable(path: Path, script: str) -> Path:
    path.write_text(script)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def shutdown_daemon(config) -> None:
    try:
        with Connection(dial(UNIX, str(config.sock_path), 1.0)) as conn:
            SupervisorClient(conn).shutdown()
    except TransportError:
        return
    wait_until(lambda: not config.sock_path.exists(), timeout=10)


class CliTestCase(unittest.TestCase):

    def setUp(self):
        self.home = make_home()
        self.config = load_config(home=self.home, environ={})
        self.runner = CliRunner()

    def tearDown(self):
        shutil.rmtree(self.home, ignore_errors=True)

    def invoke(self, *args, plugins=None):
        app = build_app(self.config, plugins)
        return self.runner.invoke(app, list(args), env={"PYSUV_HOME": str(self.home)})


class TestCliWithoutDaemon(CliTestCase):
    """Commands that must not start a daemon."""

    def test_help_lists_builtin_commands(self):
        result = self.invoke("--help")
        self.assertEqual(result.exit_code, 0)
        for name in ("version", "status", "add", "start", "stop", "tail", "shutdown"):
            self.assertIn(name, result.output)
        self.assertNotIn("serve", result.output)

    def test_shutdown_when_nothing_runs(self):
        result = self.invoke("shutdown")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("server already closed", result.output)
        self.assertFalse(self.config.sock_path.exists())

    def test_invalid_addr(self):
        result = self.invoke("--addr", "localhost", "status")
        self.assertEqual(result.exit_code, 2)

    def test_debug_flag_reaches_dispatcher_config(self):
        root = logging.getLogger()
        self.addCleanup(root.setLevel, root.level)
        with patch("pysuv.ui.cli.make_dispatcher", wraps=make_dispatcher) as factory:
            result = self.invoke("--debug", "shutdown")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertFalse(self.config.debug)
        self.assertTrue(factory.call_args[0][0].debug)


class TestPluginCommands(CliTestCase):
    """Plugins are commands that bypass the daemon."""

    def setUp(self):
        super().setUp()
        self.out = self.home / "out.txt"
        self.env = patch.dict(os.environ, {"PLUGIN_OUT": str(self.out)})
        self.env.start()
        root = self.config.plugin_dir
        (root / "foo").mkdir(parents=True)
        make_executable(
            root / "foo" / "run",
            '#!/bin/sh\n{ pwd -P; echo "$PYSUV_PLUGIN_NAME"; echo "$PYSUV_SERVER_ADDR"; echo "$@"; } > "$PLUGIN_OUT"\n',
        )
        (root / "fails").mkdir()
        make_executable(root / "fails" / "run", "#!/bin/sh\nexit 3\n")
        (root / "status").mkdir()
        (root / "notes.txt").write_text("ignored")
        self.plugins = PluginRegistry.discover(root)

    def tearDown(self):
        self.env.stop()
        super().tearDown()

    def test_plugin_receives_arguments_verbatim(self):
        result = self.invoke("foo", "--help", "-x", "value", plugins=self.plugins)

        self.assertEqual(result.exit_code, 0, result.output)
        cwd, name, addr, args = self.out.read_text().splitlines()
        self.assertEqual(Path(cwd), (self.config.plugin_dir / "foo").resolve())
        self.assertEqual(name, "foo")
        self.assertEqual(addr, f"unix:{self.config.sock_path}")
        self.assertEqual(args, "--help -x value")
        self.assertFalse(self.config.sock_path.exists())

    def test_plugin_sees_addr_flag(self):
        result = self.invoke("--addr", "127.0.0.1:9999", "foo", plugins=self.plugins)
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(self.out.read_text().splitlines()[2], "127.0.0.1:9999")

    def test_failing_plugin_exit_status(self):
        result = self.invoke("fails", plugins=self.plugins)
        self.assertEqual(result.exit_code, 3)
        self.assertIn("exited with status 3", result.output)

    def test_plugin_list_in_help(self):
        result = self.invoke("--help", plugins=self.plugins)
        self.assertIn("foo", result.output)
        self.assertIn("fails", result.output)
        self.assertNotIn("notes.txt", result.output)

    def test_builtin_wins_over_plugin_with_same_name(self):
        import typer

        command = typer.main.get_command(build_app(self.config, self.plugins)).commands["status"]
        self.assertEqual(command.help, "Show program status")


class TestEndToEnd(CliTestCase):
    """Auto-start a real daemon and drive it through the CLI."""

    def tearDown(self):
        shutdown_daemon(self.config)
        super().tearDown()

    def test_status_autostarts_daemon(self):
        self.config.program_config.write_text(json.dumps([
            {"name": "sleeper", "directory": str(self.home), "command": ["/bin/sleep", "30"]},
        ]))
        self.assertFalse(Bootstrapper(DaemonEndpoint(UNIX, str(self.config.sock_path))).probe())

        result = self.invoke("status")

        self.assertEqual(result.exit_code, 0, result.output)
        lines = [line for line in result.output.splitlines() if line.startswith("sleeper")]
        self.assertEqual(len(lines), 1)
        name, status, extra = lines[0].split("\t")
        self.assertEqual((name, status), ("sleeper", "running"))
        self.assertTrue(extra.startswith("pid "))
        self.assertTrue(self.config.sock_path.exists())

        # Second invocation reuses the running daemon.
        result = self.invoke("st")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("sleeper\trunning", result.output)

    def test_version(self):
        result = self.invoke("version")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn(f"Client: {__version__}", result.output)
        self.assertIn(f"Server: {__version__}", result.output)

    def test_add_resolves_relative_command(self):
        workdir = self.home / "app"
        workdir.mkdir()
        make_executable(workdir / "server.py", "#!/bin/sh\necho \"$GREETING $1\"\nsleep 30\n")
        cwd = os.getcwd()
        os.chdir(workdir)
        self.addCleanup(os.chdir, cwd)

        result = self.invoke("add", "--name", "worker", "-e", "GREETING=hi", "--", "./server.py", "--flag")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("program worker created", result.output)

        saved = json.loads(self.config.program_config.read_text())
        self.assertEqual(saved[0]["name"], "worker")
        self.assertEqual(saved[0]["command"], [os.path.join(os.getcwd(), "server.py"), "--flag"])
        self.assertEqual(saved[0]["directory"], os.getcwd())
        self.assertEqual(saved[0]["environ"], ["GREETING=hi"])

        log_path = self.config.log_dir / "worker.log"
        self.assertTrue(wait_until(lambda: log_path.exists() and "hi --flag" in log_path.read_text()))

    def test_add_defaults_name_to_basename(self):
        result = self.invoke("add", "sleep", "30")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("program sleep created", result.output)

    def test_add_unknown_command(self):
        result = self.invoke("add", "definitely-not-a-command-xyz")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("executable file not found", result.output)

    def test_start_stop_and_errors(self):
        self.assertEqual(self.invoke("add", "--name", "nap", "sleep", "30").exit_code, 0)

        result = self.invoke("stop", "nap")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("program nap stopped", result.output)

        result = self.invoke("start", "nap")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("program nap started", result.output)

        result = self.invoke("start", "nobody")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("call failed", result.output)

    def test_tail_last_lines(self):
        script = "for i in 1 2 3 4; do echo row $i; done"
        self.assertEqual(self.invoke("add", "--name", "rows", "sh", "-c", script).exit_code, 0)
        log_path = self.config.log_dir / "rows.log"
        self.assertTrue(wait_until(lambda: log_path.exists() and "row 4" in log_path.read_text()))

        result = self.invoke("tail", "-n", "2", "rows")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(result.output, "row 3\nrow 4\n")

    def test_tail_follow_until_connection_closes(self):
        script = "i=0; while true; do echo tick $i; i=$((i+1)); sleep 0.1; done"
        self.assertEqual(self.invoke("add", "--name", "ticker", "sh", "-c", script).exit_code, 0)
        log_path = self.config.log_dir / "ticker.log"
        self.assertTrue(wait_until(lambda: log_path.exists() and "tick 0" in log_path.read_text()))

        # Shutting the daemon down closes the stream from the other end.
        timer = threading.Timer(2.0, shutdown_daemon, args=(self.config,))
        timer.start()
        self.addCleanup(timer.cancel)

        result = self.invoke("tail", "--follow", "--number", "1", "ticker")

        self.assertEqual(result.exit_code, 0, result.output)
        ticks = [int(line.split()[1]) for line in result.output.splitlines() if line.startswith("tick ")]
        self.assertGreaterEqual(len(ticks), 5)
        self.assertEqual(ticks, list(range(ticks[0], ticks[0] + len(ticks))))

    def test_shutdown(self):
        self.assertEqual(self.invoke("status").exit_code, 0)
        result = self.invoke("shutdown")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("shutdown server", result.output)
        self.assertTrue(wait_until(lambda: not self.config.sock_path.exists(), timeout=10))


if __name__ == "__main__":
    unittest.main()
