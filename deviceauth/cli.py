"""
DeviceAuth command line.

    deviceauth run                 start the runtime and control server
    deviceauth uid [--force]       print the device UID
    deviceauth authenticate        authenticate once
    deviceauth verify              verify the persisted session
    deviceauth check-network       report internet and backend reachability
    deviceauth show                print stored identity and session state
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Any, List, Optional

from deviceauth import __version__
from deviceauth.core.config import LOG_LEVELS, DeviceAuthConfig
from deviceauth.core.errors import AuthError
from deviceauth.core.logging import configure_root_logger
from deviceauth.runtime import DeviceAuthRuntime

logger = logging.getLogger("deviceauth.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deviceauth", description="Hardware-bound device identity client")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level", type=str.upper, choices=LOG_LEVELS, default=None, help="Logging level (overrides config)"
    )
    parser.add_argument("--env-file", type=str, default=None, help="Path to a .env file")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Start the runtime and block until interrupted")
    uid_parser = sub.add_parser("uid", help="Print the device UID")
    uid_parser.add_argument("--force", action="store_true", help="Re-collect the hardware fingerprint")
    sub.add_parser("authenticate", help="Authenticate this device")
    sub.add_parser("verify", help="Verify the persisted session")
    sub.add_parser("check-network", help="Check internet and backend reachability")
    sub.add_parser("show", help="Print stored identity and session state")
    return parser


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _run(runtime: DeviceAuthRuntime) -> int:
    stop = threading.Event()

    def handle_signal(signum, frame) -> None:
        logger.info("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    with runtime:
        while not stop.wait(1.0):
            pass
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = DeviceAuthConfig.load(env_file=args.env_file)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_root_logger(
        log_dir=config.paths.log_dir,
        level=args.log_level or config.logging.level,
        enable_console=config.logging.enable_console,
        enable_file=config.logging.enable_file,
        max_file_size=config.logging.max_file_size_bytes,
        backup_count=config.logging.backup_count,
    )
    config.ensure_directories()

    runtime = DeviceAuthRuntime(config)

    if args.command == "run":
        return _run(runtime)

    if args.command == "uid":
        uid = runtime.identity.get_identity(force_recompute=args.force)
        record = runtime.identity.identity()
        _print({"uid": uid, "sourceCount": record.fingerprint_source_count, "fallback": record.is_fallback})
        return 0

    if args.command == "authenticate":
        try:
            session = runtime.client.authenticate()
        except AuthError as e:
            _print({"success": False, "message": e.message, "status": e.http_status})
            return 1
        _print({"success": True, "uid": session.uid, "user": session.user})
        return 0

    if args.command == "verify":
        runtime.client.restore_session()
        result = runtime.client.verify()
        _print({"success": result is not None, "data": result})
        return 0 if result is not None else 1

    if args.command == "check-network":
        _print(runtime.client.check_connectivity())
        return 0

    if args.command == "show":
        runtime.client.restore_session()
        _print(runtime.client.stored_data())
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
