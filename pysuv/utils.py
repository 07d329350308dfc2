import os
import shutil
from typing import Optional


def look_path(command: str) -> Optional[str]:
    """
    Resolve a command to the absolute path of an executable.

    Names containing a path separator are checked directly (relative to
    the current directory); bare names are searched on PATH.

    Returns:
        Absolute path, or None if no executable was found
    """
    if os.sep in command or (os.altsep and os.altsep in command):
        if os.path.isfile(command) and os.access(command, os.X_OK):
            return os.path.abspath(command)
        return None
    found = shutil.which(command)
    return os.path.abspath(found) if found else None


def split_environ(entries) -> list:
    """Validate KEY=VAL entries given on the command line."""
    result = []
    for entry in entries or []:
        key, sep, _ = entry.partition("=")
        if not sep or not key:
            raise ValueError(f"invalid environment entry {entry!r}, expected KEY=VAL")
        result.append(entry)
    return result
