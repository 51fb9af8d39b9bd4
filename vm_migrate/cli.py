"""Command line interface: ``vm-migrate <list|migrate|finalize|rollback>``."""

import argparse
import asyncio
import os
import sys
from typing import TextIO

from . import __version__
from .core.config_loader import MigrationConfig, load_config
from .core.exceptions import (
    PreconditionError,
    RemoteCommandError,
    StepFailedError,
    VMMigrateError,
)
from .core.executor import ExecutorFactory
from .core.logging_config import get_logger, setup_logging
from .core.orchestrator import MigrationOrchestrator
from .core.records import MigrationRecordStore
from .core.resolver import build_directory


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--snapshot-name",
        default=None,
        help="Snapshot label (default: the recorded one, else 'migration')",
    )
    common.add_argument("--config", default=os.getenv("VM_MIGRATE_CONFIG"), help="YAML config file")
    common.add_argument(
        "--mode", choices=["headnode", "cn"], default=None, help="Deployment mode override"
    )
    common.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="File log level",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Show debug logs on stderr")

    parser = argparse.ArgumentParser(
        prog="vm-migrate", description="Migrate VM instances between compute nodes"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", metavar="<sub-command>")
    subparsers.required = True

    list_parser = subparsers.add_parser("list", parents=[common], help="list migrations")
    list_parser.add_argument(
        "-l", "--long", action="store_true", help="Show alias, source and target"
    )

    migrate = subparsers.add_parser(
        "migrate", parents=[common], help="full automatic migration for this instance"
    )
    migrate.add_argument(
        "-n",
        "--cn",
        "--target-cn-address",
        dest="target",
        required=True,
        metavar="CN",
        help="Target compute node UUID, hostname or address",
    )
    migrate.add_argument("vm_uuid", metavar="VM_UUID")

    finalize = subparsers.add_parser(
        "finalize", parents=[common], help="cleanup, removes the original source instance"
    )
    finalize.add_argument("vm_uuid", metavar="VM_UUID")

    rollback = subparsers.add_parser(
        "rollback", parents=[common], help="revert back to the original source instance"
    )
    rollback.add_argument("vm_uuid", metavar="VM_UUID")

    return parser


def build_orchestrator(config: MigrationConfig, out: TextIO | None = None) -> MigrationOrchestrator:
    executors = ExecutorFactory(config)
    return MigrationOrchestrator(
        config,
        executors,
        MigrationRecordStore(config.state_dir),
        build_directory(config, executors),
        out=out,
    )


def print_migrations(orchestrator: MigrationOrchestrator, long: bool, out: TextIO) -> None:
    if not long:
        out.write("UUID\n")
        for vm_uuid in orchestrator.list_migrations():
            out.write(f"{vm_uuid}\n")
        return

    rows = [("UUID", "ALIAS", "SOURCE", "TARGET", "CREATED")]
    for record in orchestrator.describe_migrations():
        rows.append(
            (
                record.vm_uuid,
                record.vm_alias or "-",
                record.source_cn_hostname or "-",
                record.target_cn_hostname or "-",
                record.created_at or "-",
            )
        )
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        out.write("  ".join(value.ljust(width) for value, width in zip(row, widths)).rstrip() + "\n")


async def dispatch(args: argparse.Namespace, orchestrator: MigrationOrchestrator) -> None:
    if args.command == "migrate":
        await orchestrator.migrate(args.vm_uuid, args.target, args.snapshot_name)
    elif args.command == "finalize":
        await orchestrator.finalize(args.vm_uuid, args.snapshot_name)
    elif args.command == "rollback":
        await orchestrator.rollback(args.vm_uuid, args.snapshot_name)


def main(argv: list[str] | None = None, out: TextIO | None = None, err: TextIO | None = None) -> int:
    """Run one subcommand and return the process exit status."""
    out = out or sys.stdout
    err = err or sys.stderr
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except VMMigrateError as e:
        err.write(f"{e}\n")
        return 1

    if args.mode:
        config.mode = args.mode
    if args.log_level:
        config.log_level = args.log_level

    setup_logging(
        log_dir=config.log_dir,
        log_level=config.log_level,
        console_level="DEBUG" if args.verbose else "WARNING",
    )
    logger = get_logger().bind(command=args.command, mode=config.mode)

    orchestrator = build_orchestrator(config, out)
    try:
        if args.command == "list":
            print_migrations(orchestrator, args.long, out)
            return 0
        asyncio.run(dispatch(args, orchestrator))
    except StepFailedError as e:
        if e.step.detail:
            err.write(f"{e.step.detail}\n")
        err.write(f"{args.command} stopped at step '{e.step.name}'\n")
        logger.error("Operation failed", step=e.step.name, exit_status=e.exit_status)
        return e.exit_status
    except RemoteCommandError as e:
        err.write(f"{e}\n")
        logger.error("Remote command failed", error=str(e), returncode=e.returncode)
        return e.exit_status
    except PreconditionError as e:
        err.write(f"{e}\n")
        logger.warning("Precondition failed", error=str(e))
        return 1
    except VMMigrateError as e:
        err.write(f"{e}\n")
        logger.error("Operation failed", error=str(e))
        return 1
    except KeyboardInterrupt:
        err.write("Interrupted; the last completed step is the current state\n")
        logger.warning("Operation interrupted")
        return 130

    logger.info("Operation succeeded")
    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
