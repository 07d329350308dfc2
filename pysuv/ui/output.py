"""
Colour-coded terminal output for pysuv.

Messages meant for the user (errors, notices) go through UIManager; plain
command results are printed with typer.echo by the command handlers.
"""

import sys
from typing import Optional, TextIO


TEXT_COLOR_MAPPING = {
    "blue": "36;1",
    "yellow": "33;1",
    "green": "32;1",
    "red": "31;1",
    "gray": "90",
}


def get_colored_text(text: str, color: str) -> str:
    """
    Get colored text.

    Raises:
        ValueError: If the specified color is not supported
    """
    if color not in TEXT_COLOR_MAPPING:
        raise ValueError(
            f"Unsupported color: {color}. Available colors: {', '.join(TEXT_COLOR_MAPPING.keys())}"
        )

    color_str = TEXT_COLOR_MAPPING[color]
    return f"\u001b[{color_str}m{text}\u001b[0m"


class UIManager:
    """Manages colored terminal output for pysuv."""

    def __init__(self, file: Optional[TextIO] = None):
        """
        Args:
            file: Stream to write to (default: sys.stderr at call time)
        """
        self._file = file

    def error(self, message: str) -> None:
        """Print error message in red."""
        self._print_colored(message, "red")

    def warning(self, message: str) -> None:
        """Print warning message in yellow."""
        self._print_colored(message, "yellow")

    def _print_colored(self, text: str, color: str, end: str = "\n") -> None:
        file = self._file or sys.stderr
        # No escape codes when output is redirected.
        if hasattr(file, "isatty") and file.isatty():
            try:
                text = get_colored_text(text, color)
            except ValueError:
                pass
        print(text, end=end, file=file)
        file.flush()
