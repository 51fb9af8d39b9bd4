"""Typed results for node commands and orchestrator steps."""

from dataclasses import dataclass, field

from ..core.exceptions import RemoteCommandError


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command run on a node."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    host: str = "localhost"

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined, stripped stdout and stderr."""
        parts = [self.stdout.strip(), self.stderr.strip()]
        return "\n".join(part for part in parts if part)

    def check(self, message: str | None = None) -> "CommandResult":
        """Return self, or raise RemoteCommandError if the command failed."""
        if not self.ok:
            raise RemoteCommandError(self, message)
        return self


@dataclass
class StepResult:
    """Outcome of one orchestrator step."""

    name: str
    success: bool
    detail: str = ""
    returncode: int = 0
    outputs: list[str] = field(default_factory=list)
