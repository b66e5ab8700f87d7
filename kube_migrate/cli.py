"""Command line entry point: kube-migrate migrate | status | rollback-hint."""

import argparse
import asyncio
import contextlib
import os
import signal
import sys
import tempfile
from pathlib import Path

from dotenv import load_dotenv

from .core.config_loader import MigrationConfig, load_config
from .core.exceptions import ConfigurationError, KubeMigrateError
from .core.logging_config import get_logger, setup_logging
from .models.enums import FailureKind, MigrateAction
from .services.migration import MigrationService
from .services.reporter import Reporter

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIGURATION = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    default_log_level = os.getenv("LOG_LEVEL", "INFO")

    parser = argparse.ArgumentParser(
        prog="kube-migrate",
        description="Migrate a database Deployment with a bound volume to a StatefulSet",
    )
    parser.add_argument("--config", default=None, help="Configuration file path")
    parser.add_argument("--namespace", default=None, help="Override the target namespace")
    parser.add_argument("--context", default=None, help="kubectl context to use")
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument("--log-dir", default=os.getenv("LOG_DIR"), help="Directory for log files")
    parser.add_argument("--json", action="store_true", help="Print machine-readable output")

    subparsers = parser.add_subparsers(dest="action", required=True)

    migrate = subparsers.add_parser(MigrateAction.MIGRATE.value, help="Run the migration")
    migrate.add_argument(
        "--dry-run", action="store_true", help="Show the planned steps without changing anything"
    )
    migrate.add_argument(
        "--keep-backup", action="store_true", help="Keep the local backup after success"
    )
    migrate.add_argument(
        "--require-backup",
        action="store_true",
        help="Fail instead of continuing when the legacy instance cannot be backed up",
    )

    subparsers.add_parser(MigrateAction.STATUS.value, help="Show the current topology")
    subparsers.add_parser(
        MigrateAction.ROLLBACK_HINT.value, help="Print manual recovery steps for the current state"
    )

    return parser.parse_args(argv)


def _setup_log_directory(explicit: str | None) -> str | None:
    """Pick a writable log directory, falling back to console-only logging."""
    log_dir_candidates = [
        explicit,
        str(Path.home() / ".local" / "share" / "kube-migrate" / "logs"),
        str(Path(tempfile.gettempdir()) / "kube-migrate-logs"),
    ]

    for candidate in log_dir_candidates:
        if candidate:
            try:
                candidate_path = Path(candidate)
                candidate_path.mkdir(parents=True, exist_ok=True)
                if candidate_path.is_dir() and os.access(candidate_path, os.W_OK):
                    return str(candidate_path)
            except OSError:
                continue

    return None


def _load_config(args: argparse.Namespace) -> MigrationConfig:
    config = load_config(args.config)
    if args.namespace:
        config.namespace = args.namespace
    if args.context:
        config.kubectl.context = args.context
    if getattr(args, "keep_backup", False):
        config.keep_backup = True
    if getattr(args, "require_backup", False):
        config.require_backup = True
    return config


async def _run_migrate(
    service: MigrationService, reporter: Reporter, dry_run: bool
) -> int:
    machine = service.build_state_machine(on_transition=reporter.phase_transition)
    loop = asyncio.get_running_loop()

    def _on_interrupt() -> None:
        machine.request_abort()
        reporter.warning("Interrupt received; stopping at the next safe point (press again to force)")
        loop.remove_signal_handler(signal.SIGINT)

    # add_signal_handler is unavailable on some platforms
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)

    try:
        attempt = await service.migrate(dry_run=dry_run, machine=machine)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

    reporter.migration_result(attempt)
    if attempt.succeeded:
        return EXIT_OK
    if attempt.failure_kind == FailureKind.CONFIGURATION:
        return EXIT_CONFIGURATION
    return EXIT_FAILED


async def run(
    args: argparse.Namespace,
    config: MigrationConfig,
    reporter: Reporter,
    service: MigrationService | None = None,
) -> int:
    """Execute the selected subcommand and return the process exit code."""
    service = service or MigrationService(config)
    action = MigrateAction(args.action)

    if action == MigrateAction.MIGRATE:
        return await _run_migrate(service, reporter, args.dry_run)

    if action == MigrateAction.STATUS:
        reporter.status(await service.status())
        return EXIT_OK

    reporter.rollback_hint(await service.rollback_hint())
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    load_dotenv()
    args = parse_args(argv)

    setup_logging(log_dir=_setup_log_directory(args.log_dir), log_level=args.log_level)
    logger = get_logger()

    try:
        config = _load_config(args)
    except ConfigurationError as e:
        logger.error("Configuration invalid", error=str(e))
        print(f"[ERROR] {e}", file=sys.stderr)
        return EXIT_CONFIGURATION

    reporter = Reporter(config, as_json=args.json)

    try:
        return asyncio.run(run(args, config, reporter))
    except ConfigurationError as e:
        logger.error("Configuration invalid", error=str(e))
        reporter.error(str(e))
        return EXIT_CONFIGURATION
    except KubeMigrateError as e:
        logger.error("Command failed", action=args.action, error=str(e))
        reporter.error(str(e))
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Interrupted", action=args.action)
        reporter.error("Interrupted")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
