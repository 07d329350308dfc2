"""Command plugins discovered on disk.

Every immediate subdirectory of the plugin root (<home>/cmdplugin) is a
plugin; its executable `run` file is the entry point. Plugins are plain
processes: they get the remaining command-line arguments verbatim, the
caller's stdio, their own directory as working directory, and three
environment variables telling them where the daemon is, what they are
called and which program invoked them.
"""

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Sequence

from pysuv.config import ENV_PLUGIN_NAME, ENV_PROGRAM, ENV_SERVER_ADDR
from pysuv.errors import PluginError

logger = logging.getLogger(__name__)

ENTRY_POINT = "run"


@dataclass(frozen=True)
class PluginDescriptor:
    name: str
    directory: Path
    entry_point: Path


def plugin_environ(
    plugin: PluginDescriptor,
    server_addr: str,
    program: Optional[str] = None,
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Environment for a plugin process: the caller's plus the pysuv variables."""
    env = dict(os.environ if base is None else base)
    env[ENV_SERVER_ADDR] = server_addr
    env[ENV_PLUGIN_NAME] = plugin.name
    env[ENV_PROGRAM] = os.path.abspath(program or sys.argv[0])
    return env


class PluginRegistry:
    """Immutable set of plugins found at startup."""

    def __init__(self, plugins: Sequence[PluginDescriptor] = ()):
        self._plugins = {p.name: p for p in plugins}

    @classmethod
    def discover(cls, root: Path) -> "PluginRegistry":
        """
        Scan root for plugin directories.

        A missing or unreadable root gives an empty registry. Regular files
        in the root are ignored. Whether `run` exists is only checked when
        the plugin is invoked.
        """
        try:
            entries = sorted(root.iterdir(), key=lambda p: p.name)
        except OSError as e:
            logger.debug(f"No plugins loaded from {root}: {e}")
            return cls()

        plugins = []
        for entry in entries:
            if not entry.is_dir():
                continue
            directory = entry.resolve()
            plugins.append(
                PluginDescriptor(
                    name=entry.name,
                    directory=directory,
                    entry_point=directory / ENTRY_POINT,
                )
            )
        logger.debug(f"Discovered plugins: {[p.name for p in plugins]}")
        return cls(plugins)

    def __iter__(self) -> Iterator[PluginDescriptor]:
        return iter(self._plugins.values())

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def names(self) -> List[str]:
        return list(self._plugins)

    def get(self, name: str) -> PluginDescriptor:
        try:
            return self._plugins[name]
        except KeyError:
            raise PluginError(f"unknown plugin {name!r}") from None

    def invoke(
        self,
        name: str,
        args: Sequence[str],
        server_addr: str,
        program: Optional[str] = None,
    ) -> int:
        """
        Run a plugin's entry point and wait for it.

        Args:
            name: Plugin name
            args: Arguments passed through untouched
            server_addr: Resolved daemon address exported to the plugin
            program: Path of the invoking executable (default: sys.argv[0])

        Returns:
            0 on success

        Raises:
            PluginError: Entry point missing or not executable, or the
                plugin exited with a non-zero status
        """
        plugin = self.get(name)
        entry_point = plugin.entry_point
        if not entry_point.is_file() or not os.access(entry_point, os.X_OK):
            raise PluginError(f"plugin {name}: {entry_point} is missing or not executable")

        logger.debug(f"Running plugin {name}: {entry_point} {list(args)}")
        try:
            completed = subprocess.run(
                [str(entry_point), *args],
                cwd=str(plugin.directory),
                env=plugin_environ(plugin, server_addr, program),
            )
        except OSError as e:
            raise PluginError(f"plugin {name}: {e}") from e

        if completed.returncode != 0:
            raise PluginError(
                f"plugin {name} exited with status {completed.returncode}",
                # Killed by a signal shows up as a negative status.
                exit_code=completed.returncode if completed.returncode > 0 else 1,
            )
        return 0
