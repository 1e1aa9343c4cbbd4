"""Command-line interface for labguard.

Usage:
    labguard serve                 # run the API with schedulers (default)
    labguard backup                # take one snapshot now
    labguard check                 # verify the newest snapshot now
    labguard cert                  # make sure a valid certificate exists
    labguard status                # print scheduler and history state
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

# Lazy imports to avoid circular dependencies
logger = structlog.get_logger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _configure(config_path: Optional[Path]):
    import labguard
    from labguard.services import build_services

    config = labguard.configure(config_path=config_path)
    return build_services(config)


async def run_backup(config_path: Optional[Path]) -> int:
    """Take one manual snapshot and print its record."""
    from labguard.core.models import BackupStatus

    services = _configure(config_path)
    await services.load()
    try:
        record = await services.backup_scheduler.trigger()
    finally:
        await services.close_store()

    _print_json(record.model_dump(mode="json"))
    return 0 if record.status == BackupStatus.SUCCESS else 1


async def run_check(config_path: Optional[Path]) -> int:
    """Run one integrity check and print its record."""
    from labguard.core.models import IntegrityStatus

    services = _configure(config_path)
    await services.load()
    try:
        record = await services.integrity_checker.run_check()
    finally:
        await services.close_store()

    _print_json(record.model_dump(mode="json"))
    return 0 if record.status == IntegrityStatus.PASS else 1


def run_cert(config_path: Optional[Path], show_only: bool = False) -> int:
    """Ensure a valid certificate exists (or just describe it)."""
    from labguard.core.exceptions import CertificateGenerationError

    services = _configure(config_path)
    provisioner = services.certificates

    if show_only:
        _print_json(provisioner.inspect().model_dump(mode="json"))
        return 0

    try:
        bundle = provisioner.ensure()
    except CertificateGenerationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _print_json(bundle.model_dump(mode="json"))
    return 0


async def run_status(config_path: Optional[Path], limit: int) -> int:
    """Print scheduler state and recent history without starting timers."""
    services = _configure(config_path)
    await services.backup_ledger.load()
    await services.integrity_ledger.load()
    services.backup_scheduler.restore_last_run()
    services.integrity_checker.restore_last_run()

    _print_json(
        {
            "backup": services.backup_scheduler.get_status().model_dump(mode="json"),
            "integrity": services.integrity_checker.get_status().model_dump(mode="json"),
            "certificate": services.certificates.inspect().model_dump(mode="json"),
            "recent_backups": [
                r.model_dump(mode="json") for r in services.backup_scheduler.get_history(limit)
            ],
        }
    )
    return 0


def run_serve(config_path: Optional[Path]) -> int:
    from labguard.web.transport import run

    return run(config_path=config_path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labguard",
        description="Backups, integrity checks and TLS for the lab data store",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="YAML configuration file (LABGUARD_* environment variables override it)",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the API server with backup and integrity schedulers")
    subparsers.add_parser("backup", help="Take one snapshot now")
    subparsers.add_parser("check", help="Verify the newest snapshot now")

    cert_parser = subparsers.add_parser("cert", help="Ensure a valid TLS certificate exists")
    cert_parser.add_argument(
        "--show",
        action="store_true",
        help="Only describe the current certificate, never generate",
    )

    status_parser = subparsers.add_parser("status", help="Show scheduler and history state")
    status_parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=10,
        help="Number of recent backup records to show",
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    from labguard.core.exceptions import ConfigurationError

    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "serve"

    try:
        if command == "serve":
            return run_serve(args.config)
        if command == "backup":
            return asyncio.run(run_backup(args.config))
        if command == "check":
            return asyncio.run(run_check(args.config))
        if command == "cert":
            return run_cert(args.config, show_only=args.show)
        if command == "status":
            return asyncio.run(run_status(args.config, args.limit))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nCancelled")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
