"""Data models for vm-migrate."""

from .node import NodeDescriptor  # noqa: F401
from .record import REQUIRED_RECORD_FIELDS, MigrationRecord  # noqa: F401
from .results import CommandResult, StepResult  # noqa: F401

__all__ = [
    "CommandResult",
    "MigrationRecord",
    "NodeDescriptor",
    "REQUIRED_RECORD_FIELDS",
    "StepResult",
]
