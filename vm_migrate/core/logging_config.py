"""Logging configuration: structured file log plus a console stream."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter


def setup_logging(
    log_dir: Path | str | None = None,
    log_level: str = "INFO",
    console_level: str = "WARNING",
    max_file_size_mb: int = 10,
) -> None:
    """Route structlog through stdlib logging to a file and stderr.

    Operator narration goes to stdout separately, so the console handler only
    shows warnings unless asked for more.

    Args:
        log_dir: Directory for vm-migrate.log; console-only when None or unwritable
        log_level: Level for the file log
        console_level: Level for the stderr handler
        max_file_size_mb: Max file size before truncation (no backup files kept)
    """
    file_level_num = getattr(logging, log_level.upper(), logging.INFO)
    console_level_num = getattr(logging, console_level.upper(), logging.WARNING)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(min(file_level_num, console_level_num))

    renderer = (
        structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer()
    )
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level_num)
    console_handler.setFormatter(ProcessorFormatter(processor=renderer))
    root_logger.addHandler(console_handler)

    log_file = None
    if log_dir is not None:
        try:
            log_path = Path(log_dir)
            log_path.mkdir(parents=True, exist_ok=True)
            log_file = log_path / "vm-migrate.log"
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=0,
                encoding="utf-8",
            )
        except OSError:
            log_file = None
        else:
            file_handler.setLevel(file_level_num)
            file_handler.setFormatter(
                ProcessorFormatter(processor=structlog.processors.JSONRenderer())
            )
            root_logger.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )

    get_logger().debug(
        "Logging system initialized",
        log_file=str(log_file) if log_file else None,
        log_level=log_level,
        console_level=console_level,
    )


def get_logger() -> Any:
    """Get the vm-migrate logger."""
    return structlog.get_logger("vm_migrate")
