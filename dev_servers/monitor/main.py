"""
Command-line entry point for dev-monitor.

Starts the app server, the companion service and a monitored browser, and
writes everything they produce into one session log.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from importlib import metadata
from pathlib import Path

from .config import DEFAULT_APP_PORT, DEFAULT_COMPANION_PORT, SessionConfig, _env_flag
from .log_sink import create_persistent_log_file, default_alias_path
from .orchestrator import DevEnvironment

logger = logging.getLogger("dev.monitor")

LOCK_FILES = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
)


def package_version() -> str:
    try:
        return metadata.version("dev-monitor")
    except metadata.PackageNotFoundError:
        return "0.0.0"


def detect_package_manager(cwd: str | Path) -> str:
    root = Path(cwd)
    for lock_file, manager in LOCK_FILES:
        if (root / lock_file).exists():
            return manager
    return "npm"


def build_parser(version: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dev-monitor",
        description="Run a dev server with a monitored browser and one unified log.",
    )
    parser.add_argument("-p", "--port", type=int, default=None, help=f"app server port (default {DEFAULT_APP_PORT})")
    parser.add_argument(
        "--companion-port",
        type=int,
        default=None,
        help=f"companion service port (default {DEFAULT_COMPANION_PORT})",
    )
    parser.add_argument("-s", "--script", default="dev", help="package.json script to run (default: dev)")
    parser.add_argument("--server-command", default=None, help="full command that starts the app server")
    parser.add_argument("--profile-dir", default=None, help="browser profile directory")
    parser.add_argument(
        "--framework",
        default=None,
        help="error profile: rails, nextjs, django, express, default or auto",
    )
    parser.add_argument(
        "--process-manager",
        default=None,
        help="output format: foreman, overmind, hivemind, docker-compose, pm2, standard or auto",
    )
    parser.add_argument("--debug", action="store_true", help="verbose diagnostic logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {version}")
    return parser


def resolve_server_command(args: argparse.Namespace, cwd: str | Path) -> str:
    if args.server_command:
        return str(args.server_command)
    return f"{detect_package_manager(cwd)} run {args.script}"


def build_config(args: argparse.Namespace, cwd: str) -> SessionConfig:
    return SessionConfig.from_env(
        resolve_server_command(args, cwd),
        port=args.port,
        companion_port=args.companion_port,
        profile_dir=args.profile_dir,
        framework=args.framework,
        process_manager=args.process_manager,
        debug=True if args.debug else None,
        cwd=cwd,
    )


def main(argv: list[str] | None = None) -> None:
    version = package_version()
    args = build_parser(version).parse_args(argv)
    debug = bool(args.debug) or _env_flag("DEV_MONITOR_DEBUG")
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    cwd = os.getcwd()
    try:
        config = build_config(args, cwd)
    except ValueError as exc:
        logger.error("%s", exc)
        sys.exit(2)

    log_path = create_persistent_log_file(cwd=cwd)
    config.log_file = str(log_path)
    config.screenshot_dir = str(log_path.parent / "screenshots")
    logger.info("dev-monitor %s | log=%s | alias=%s", version, log_path, default_alias_path())

    env = DevEnvironment(config, version=version)
    sys.exit(asyncio.run(env.run()))


if __name__ == "__main__":
    main()
