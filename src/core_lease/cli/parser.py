"""CLI argument parsing."""

from __future__ import annotations

import argparse

import argcomplete

from core_lease.core.constants import LOCK_BACKENDS, VALID_LOG_LEVELS
from core_lease.core.version import __version__

__all__ = ["build_parser", "parse_arguments"]


def _add_cpus_argument(parser: argparse.ArgumentParser, default: str | None) -> None:
    parser.add_argument(
        "--cpus",
        default=default,
        required=default is None,
        metavar="NUM|LIST",
        help=(
            "Number of CPU cores to lease (e.g. 4) or exact comma-separated core list (e.g. 0,1,4). "
            "A single explicit core is written with a trailing comma (e.g. 3,)"
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser (exposed for tests and shell completion)."""
    parser = argparse.ArgumentParser(
        prog="core-lease",
        description="Lease disjoint sets of CPU cores to concurrently running sessions on this host",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Lease 2 cores for the calling shell and pin a program to them
  CORES=$(core-lease acquire --cpus 2 --session $$)
  trap 'core-lease release --session $$' EXIT
  taskset -c "$CORES" ./simulate

  # Lease specific cores 0, 2 and 4
  core-lease acquire --cpus 0,2,4 --session my-job

  # Run a command on 4 leased cores; the lease ends with the command
  core-lease run --cpus 4 -- rserver --www-port 50040

  # Show leased and free cores
  core-lease status
  core-lease status --format json

  # Clear every lease (administrators only, after crashed sessions)
  core-lease reset --yes

Environment:
  CORE_LEASE_STATE_DIR, CORE_LEASE_TOTAL_CORES, CORE_LEASE_LOCK_BACKEND,
  CORE_LEASE_LOCK_TIMEOUT, CORE_LEASE_POLL_INTERVAL, CORE_LEASE_STALE_SECONDS,
  CORE_LEASE_SESSION_ID, LOG_LEVEL (also read from a .env file)
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    state_group = parser.add_argument_group("Lease state")
    state_group.add_argument("--state-dir", help="Directory holding the shared lease state")
    state_group.add_argument("--total-cores", type=int, help="Size of the core pool (default: host core count)")
    state_group.add_argument("--lock-backend", choices=LOCK_BACKENDS, help="Lock backend (default: auto)")
    state_group.add_argument(
        "--lock-timeout",
        type=float,
        help="Seconds to wait for the lease lock before failing (default: wait forever)",
    )

    output_group = parser.add_argument_group("Output")
    output_group.add_argument("--log-level", choices=VALID_LOG_LEVELS, help="Logging level (default: INFO)")
    output_group.add_argument("--log-format", choices=["text", "json"], help="Log line format (default: text)")
    output_group.add_argument("--log-file", help="Also write logs to this rotating file")
    output_group.add_argument("--no-color", action="store_true", help="Disable colored error output")

    subparsers = parser.add_subparsers(dest="subcommand", metavar="COMMAND")
    subparsers.required = True

    acquire_parser = subparsers.add_parser("acquire", help="Lease cores and print them")
    _add_cpus_argument(acquire_parser, default=None)
    acquire_parser.add_argument(
        "--session",
        help="Session identifier to register the lease under (default: the calling shell's PID)",
    )
    acquire_parser.add_argument("--format", choices=["text", "json"], default="text", dest="output_format")

    release_parser = subparsers.add_parser("release", help="Release the cores held by a session")
    release_parser.add_argument("--session", help="Session identifier (default: the calling shell's PID)")
    release_parser.add_argument("--format", choices=["text", "json"], default="text", dest="output_format")

    status_parser = subparsers.add_parser("status", help="Show leased and free cores")
    status_parser.add_argument("--format", choices=["text", "json"], default="text", dest="output_format")
    status_parser.add_argument(
        "--no-lock",
        action="store_true",
        help="Read without taking the lease lock (may show a state that is being written)",
    )

    run_parser = subparsers.add_parser("run", help="Run a command on leased cores")
    _add_cpus_argument(run_parser, default="0")
    run_parser.add_argument("--session", help="Session identifier (default: generated)")
    run_parser.add_argument(
        "--no-pin",
        action="store_true",
        help="Do not wrap the command in taskset; only export CORE_LEASE_CORES",
    )
    run_parser.add_argument("cmd", nargs=argparse.REMAINDER, metavar="CMD", help="Command to run (after --)")

    reset_parser = subparsers.add_parser("reset", help="Discard every lease (administrative)")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")

    return parser


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments"""
    parser = build_parser()
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)
    if args.subcommand == "run" and args.cmd and args.cmd[0] == "--":
        args.cmd = args.cmd[1:]
    return args
