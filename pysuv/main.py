#!/usr/bin/env python3
"""
Main entry point for the pysuv CLI.

Configuration is loaded and plugins are discovered once, before the
command table is built.
"""

from pysuv.config import load_config
from pysuv.plugins import PluginRegistry
from pysuv.ui.cli import build_app


def pysuv() -> None:
    """Entry point for console script mapping."""
    config = load_config()
    app = build_app(config, PluginRegistry.discover(config.plugin_dir))
    app(prog_name="pysuv")


if __name__ == "__main__":
    pysuv()
