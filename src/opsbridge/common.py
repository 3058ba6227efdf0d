"""Terminal helpers shared by the API launcher and the CLI client."""

import os
import sys
from enum import Enum
from typing import (
    Any,
    Dict,
    TextIO,
)

ANSI_RESET = "\033[0m"


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"


def supports_color(stream: TextIO | None = None) -> bool:
    """Colors only on a TTY, and never when ``NO_COLOR`` is set."""
    if os.environ.get("NO_COLOR"):
        return False
    target = stream or sys.stdout
    return bool(getattr(target, "isatty", lambda: False)())


def paint(text: str, color: AnsiColors, enabled: bool = True) -> str:
    return f"{color.value}{text}{ANSI_RESET}" if enabled else text


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    stream = kwargs.get("file")
    print(paint(text, color, supports_color(stream)), *args, **kwargs)


def describe_validation_request(request: Dict[str, Any]) -> str:
    """One-line label of a pending approval, e.g. ``POST /admin/products (AdminPostProducts)``."""
    method = str(request.get("method") or "?").upper()
    path = request.get("path") or "?"
    operation_id = request.get("operation_id") or "?"
    return f"{method} {path} ({operation_id})"
