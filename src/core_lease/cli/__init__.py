"""CLI module - Command-line interface components."""

from core_lease.cli.main import build_child_command, format_status, main
from core_lease.cli.parser import build_parser, parse_arguments

__all__ = [
    "build_child_command",
    "build_parser",
    "format_status",
    "main",
    "parse_arguments",
]
