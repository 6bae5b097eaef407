"""Console colors for core-lease CLI output.

Provides ANSI color codes for terminal output with auto-detection
of TTY support.
"""

import os
import sys


class ConsoleColors:
    """ANSI color codes for terminal output.

    Auto-detects TTY support on stderr, where errors and warnings are printed.
    """

    RED = '\033[91m'
    YELLOW = '\033[93m'
    RESET = '\033[0m'

    _enabled = sys.stderr.isatty() and os.environ.get('NO_COLOR') is None

    @classmethod
    def configure(cls, no_color: bool = False) -> None:
        """Apply the global color policy (``--no-color`` always wins)."""
        if no_color:
            cls._enabled = False

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red)"""
        if cls._enabled:
            return f"{cls.RED}{text}{cls.RESET}"
        return text

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow)"""
        if cls._enabled:
            return f"{cls.YELLOW}{text}{cls.RESET}"
        return text
