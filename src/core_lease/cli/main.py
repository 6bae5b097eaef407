"""CLI entrypoint and command handlers."""

from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import signal
import subprocess
import sys
from typing import NoReturn

from core_lease.core.colors import ConsoleColors
from core_lease.core.config import LeaseConfig
from core_lease.core.constants import EXIT_LEASE_ERROR, EXIT_OK, EXIT_USAGE_ERROR, TASKSET_COMMAND
from core_lease.core.exceptions import ConfigurationError, CoreLeaseError, InvalidRequest
from core_lease.core.logging import setup_logging
from core_lease.cli.parser import parse_arguments
from core_lease.lease.manager import LeaseManager, new_session_id
from core_lease.lease.models import format_cores, parse_cpu_spec
from core_lease.lease.session import CoreLeaseSession

__all__ = ["main"]

logger = logging.getLogger(__name__)


def _exit_error(msg: str, code: int = EXIT_LEASE_ERROR) -> NoReturn:
    """Print a coloured error message to stderr and exit."""
    print(ConsoleColors.error(f"ERROR: {msg}"), file=sys.stderr)
    sys.exit(code)


def _default_session() -> str:
    return str(os.getppid())


def _emit(payload: dict, output_format: str, text: str) -> None:
    if output_format == "json":
        print(json.dumps(payload, indent=2))
    else:
        print(text)


def cmd_acquire(manager: LeaseManager, args: argparse.Namespace) -> int:
    request = parse_cpu_spec(args.cpus)
    if request is None:
        raise InvalidRequest("--cpus must request at least one core")
    session_id = args.session or _default_session()
    cores = manager.acquire(request, session_id)
    _emit({"session": session_id, "cores": cores}, args.output_format, format_cores(cores))
    return EXIT_OK


def cmd_release(manager: LeaseManager, args: argparse.Namespace) -> int:
    session_id = args.session or _default_session()
    freed = manager.release(session_id)
    _emit({"session": session_id, "released": freed}, args.output_format, format_cores(freed))
    return EXIT_OK


def format_status(status: dict) -> str:
    """Render ``LeaseManager.status()`` for humans."""
    lines = [
        f"Total cores: {status['total_cores']}",
        f"Leased ({len(status['leased'])}): {format_cores(status['leased']) or '-'}",
        f"Free ({len(status['free'])}): {format_cores(status['free']) or '-'}",
    ]
    owners = status["owners"]
    if owners:
        lines.append("Sessions:")
        for session_id, cores in owners.items():
            lines.append(f"  {session_id}: {format_cores(cores)}")
    else:
        lines.append("Sessions: none")

    consistency = status["consistency"]
    if not consistency["consistent"]:
        lines.append(ConsoleColors.warning("Lease record and owner registry disagree:"))
        for key in ("unowned", "untracked", "shared", "empty_sessions"):
            if consistency[key]:
                lines.append(ConsoleColors.warning(f"  {key}: {', '.join(str(v) for v in consistency[key])}"))
    return "\n".join(lines)


def cmd_status(manager: LeaseManager, args: argparse.Namespace) -> int:
    status = manager.status(locked=not args.no_lock)
    _emit(status, args.output_format, format_status(status))
    return EXIT_OK


def cmd_reset(manager: LeaseManager, args: argparse.Namespace) -> int:
    if not args.yes:
        _exit_error("reset discards every lease on this host; pass --yes to confirm", EXIT_USAGE_ERROR)
    previous = manager.reset()
    print(f"Discarded {len(previous.owners)} session(s); released cores: {format_cores(sorted(previous.leased)) or '-'}")
    return EXIT_OK


def build_child_command(cmd: list[str], cores: list[int] | None, pin: bool = True) -> list[str]:
    """Prefix ``cmd`` with taskset when cores were leased and pinning is on."""
    if cores is None or not pin:
        return list(cmd)
    return [TASKSET_COMMAND, "-c", format_cores(cores), *cmd]


def _run_child(cmd: list[str], env: dict[str, str]) -> int:
    child = subprocess.Popen(cmd, env=env)
    try:
        returncode = child.wait()
        # Killed by a signal: report it the way a shell would
        return 128 - returncode if returncode < 0 else returncode
    except (KeyboardInterrupt, SystemExit):
        # The session is ending; make sure the workload ends before its cores are freed
        if child.poll() is None:
            child.send_signal(signal.SIGTERM)
            try:
                child.wait(timeout=10)
            except subprocess.TimeoutExpired:
                child.kill()
                child.wait()
        raise


def cmd_run(manager: LeaseManager, args: argparse.Namespace, config: LeaseConfig) -> int:
    if not args.cmd:
        _exit_error("run needs a command, e.g. core-lease run --cpus 2 -- ./job", EXIT_USAGE_ERROR)
    request = parse_cpu_spec(args.cpus)
    pin = not args.no_pin
    if pin and request is not None and shutil.which(TASKSET_COMMAND) is None:
        _exit_error(f"'{TASKSET_COMMAND}' not found; install util-linux or pass --no-pin", EXIT_USAGE_ERROR)

    env = dict(os.environ)
    if request is None:
        logger.info("Using all available CPU cores")
        return _run_child(list(args.cmd), env)

    session = CoreLeaseSession(
        manager,
        request,
        session_id=args.session or new_session_id(config.session_id_mode),
    )
    with session:
        cores = session.cores or []
        logger.info(f"Using {len(cores)} CPU core(s): {format_cores(cores)}")
        env["CORE_LEASE_CORES"] = format_cores(cores)
        env["CORE_LEASE_SESSION"] = session.session_id
        return _run_child(build_child_command(list(args.cmd), cores, pin=pin), env)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the script"""
    args = parse_arguments(argv)
    ConsoleColors.configure(no_color=args.no_color)

    try:
        config = LeaseConfig.from_args(args)
    except ConfigurationError as e:
        _exit_error(str(e), EXIT_USAGE_ERROR)

    setup_logging(config.log.level, config.log.log_format, config.log.log_file)
    manager = LeaseManager.from_config(config)

    try:
        if args.subcommand == "acquire":
            code = cmd_acquire(manager, args)
        elif args.subcommand == "release":
            code = cmd_release(manager, args)
        elif args.subcommand == "status":
            code = cmd_status(manager, args)
        elif args.subcommand == "reset":
            code = cmd_reset(manager, args)
        else:
            code = cmd_run(manager, args, config)
    except InvalidRequest as e:
        _exit_error(str(e), EXIT_USAGE_ERROR)
    except CoreLeaseError as e:
        _exit_error(str(e))
    except KeyboardInterrupt:
        sys.exit(128 + signal.SIGINT)
    sys.exit(code)


if __name__ == "__main__":
    main()
