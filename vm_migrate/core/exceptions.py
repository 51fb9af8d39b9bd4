"""Core exceptions for VM migration operations."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..models.results import CommandResult, StepResult


def exit_status_for(returncode: int) -> int:
    """Process exit status for a failed command's return code.

    Commands killed by a signal report ``-signum``; shells report those as
    ``128 + signum``. A zero or unknown code still means failure.
    """
    if returncode < 0:
        return 128 - returncode
    return returncode or 1


class VMMigrateError(Exception):
    """Base exception for VM migration operations."""


class ConfigurationError(VMMigrateError):
    """Configuration validation or loading failed."""


class PreconditionError(VMMigrateError):
    """An operation was refused before anything was changed."""


class ResolutionError(PreconditionError):
    """A VM or node could not be resolved through the directory."""


class RecordExistsError(PreconditionError):
    """A migration record already exists for the VM."""

    def __init__(self, vm_uuid: str):
        super().__init__(
            f"Migration record for {vm_uuid} already exists. "
            "Finalize or roll back the previous migration first."
        )
        self.vm_uuid = vm_uuid


class RecordNotFoundError(PreconditionError):
    """No migration record exists for the VM."""

    def __init__(self, vm_uuid: str):
        super().__init__(f"No migration record found for {vm_uuid}")
        self.vm_uuid = vm_uuid


class RecordFormatError(VMMigrateError):
    """A record file contains syntax the strict parser does not accept."""


class IncompleteRecordError(VMMigrateError):
    """A record is missing fields required by finalize/rollback."""

    def __init__(self, vm_uuid: str, missing_fields: list[str]):
        super().__init__(
            f"Migration record for {vm_uuid} is missing required fields: "
            + ", ".join(missing_fields)
        )
        self.vm_uuid = vm_uuid
        self.missing_fields = missing_fields


class RemoteCommandError(VMMigrateError):
    """A command on a node exited non-zero."""

    def __init__(self, result: "CommandResult", message: str | None = None):
        output = result.output or "no output"
        super().__init__(
            message or f"Command failed with exit status {result.returncode}: {output}"
        )
        self.result = result

    @property
    def returncode(self) -> int:
        return self.result.returncode

    @property
    def exit_status(self) -> int:
        return exit_status_for(self.result.returncode)


class ReplicationError(VMMigrateError):
    """Dataset replication could not be planned or performed."""


class StepFailedError(VMMigrateError):
    """An orchestrator step failed; the operation stopped at that step."""

    def __init__(self, step: "StepResult"):
        super().__init__(f"Step '{step.name}' failed: {step.detail}")
        self.step = step

    @property
    def exit_status(self) -> int:
        return exit_status_for(self.step.returncode)
