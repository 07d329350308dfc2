"""Configuration for pysuv.

All paths live under a single home directory (``~/.pysuv`` unless
``PYSUV_HOME`` says otherwise). Settings are read once at startup into an
immutable SuvConfig that is passed explicitly to every component.

Precedence for the settings that can be overridden:
    process environment > <home>/env (dotenv) > <home>/pysuv.json > default
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

ENV_HOME = "PYSUV_HOME"
ENV_SERVER_ADDR = "PYSUV_SERVER_ADDR"
ENV_DEBUG = "PYSUV_DEBUG"
ENV_PLUGIN_NAME = "PYSUV_PLUGIN_NAME"
ENV_PROGRAM = "PYSUV_PROGRAM"

DEFAULT_HOME = Path.home() / ".pysuv"


@dataclass(frozen=True)
class SuvConfig:
    home: Path
    sock_path: Path
    config_file: Path
    program_config: Path
    env_file: Path
    plugin_dir: Path
    log_dir: Path
    daemon_log: Path
    server_addr: str = ""
    debug: bool = False


def _get_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def load_server_config(path: Path) -> Dict[str, Any]:
    """
    Read the JSON server configuration.

    A missing file gives an empty dict. A file that is not valid JSON is
    logged and ignored so a broken config never blocks the CLI.
    """
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable server config {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def load_config(
    home: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SuvConfig:
    """
    Build the SuvConfig for this process.

    Args:
        home: Home directory override (default: $PYSUV_HOME or ~/.pysuv)
        environ: Environment to read overrides from (default: os.environ)

    Returns:
        Immutable SuvConfig
    """
    environ = os.environ if environ is None else environ
    if home is None:
        home = Path(environ[ENV_HOME]) if environ.get(ENV_HOME) else DEFAULT_HOME
    home = Path(os.path.expanduser(str(home)))

    config_file = home / "pysuv.json"
    env_file = home / "env"

    server = load_server_config(config_file).get("server") or {}
    file_env = dotenv_values(env_file) if env_file.exists() else {}

    server_addr = (
        environ.get(ENV_SERVER_ADDR)
        or file_env.get(ENV_SERVER_ADDR)
        or server.get("rpc_addr")
        or ""
    )
    debug = _get_bool(environ.get(ENV_DEBUG, file_env.get(ENV_DEBUG)), False)

    return SuvConfig(
        home=home,
        sock_path=home / "pysuv.sock",
        config_file=config_file,
        program_config=home / "programs.json",
        env_file=env_file,
        plugin_dir=home / "cmdplugin",
        log_dir=home / "logs",
        daemon_log=home / "pysuv.log",
        server_addr=str(server_addr),
        debug=debug,
    )


def ensure_home(config: SuvConfig) -> None:
    """Create the home directory if it does not exist yet."""
    config.home.mkdir(parents=True, exist_ok=True)


def setup_logging(debug: bool = False) -> None:
    """Configure client-side logging: warnings only unless --debug."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.WARNING)
