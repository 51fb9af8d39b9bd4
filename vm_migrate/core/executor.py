"""Command execution on the local node and on remote nodes over SSH.

Every call blocks (in a worker thread) until the command exits. There are no
retries and no timeouts; interrupting the process is the cancellation path.
"""

import asyncio
import subprocess
from abc import ABC, abstractmethod

import structlog

from ..constants import SSH_BATCH_MODE, SSH_ERROR_LOG_LEVEL, SSH_NO_HOST_CHECK, SSH_NO_KNOWN_HOSTS
from ..models.results import CommandResult
from .config_loader import MigrationConfig

logger = structlog.get_logger()


def build_ssh_command(
    address: str,
    identity_file: str | None = None,
    user: str = "root",
    port: int = 22,
    cipher: str | None = None,
) -> list[str]:
    """Build the SSH argv prefix for a node.

    Example:
        >>> build_ssh_command("10.0.0.5", "/root/.ssh/sdc.id_rsa")
        ['ssh', '-o', 'StrictHostKeyChecking=no', '-o', 'UserKnownHostsFile=/dev/null',
         '-o', 'LogLevel=ERROR', '-o', 'BatchMode=yes', '-i', '/root/.ssh/sdc.id_rsa',
         'root@10.0.0.5']
    """
    ssh_cmd = [
        "ssh",
        "-o", SSH_NO_HOST_CHECK,
        "-o", SSH_NO_KNOWN_HOSTS,
        "-o", SSH_ERROR_LOG_LEVEL,
        "-o", SSH_BATCH_MODE,
    ]

    if identity_file:
        ssh_cmd.extend(["-i", identity_file])

    if cipher:
        ssh_cmd.extend(["-c", cipher])

    if port != 22:
        ssh_cmd.extend(["-p", str(port)])

    # IPv6 address needs brackets
    if ":" in address and not (address.startswith("[") and address.endswith("]")):
        address = f"[{address}]"

    ssh_cmd.append(f"{user}@{address}")
    return ssh_cmd


class CommandExecutor(ABC):
    """Runs shell command strings on one node."""

    def __init__(self, host: str):
        self.host = host
        self.logger = logger.bind(component="executor", host=host)

    @abstractmethod
    def build_argv(self, command: str) -> list[str]:
        """Build the argv that runs ``command`` on this node."""

    async def run(self, command: str, input: str | None = None) -> CommandResult:
        """Run a command and wait for it to finish.

        Args:
            command: Shell command string, interpreted by the node's shell
            input: Optional text fed to the command's standard input

        Returns:
            CommandResult with exit status and captured output
        """
        argv = self.build_argv(command)
        self.logger.debug("Executing command", command=command)

        completed = await asyncio.to_thread(
            subprocess.run,  # nosec B603
            argv,
            input=input,
            check=False,
            capture_output=True,
            text=True,
        )

        result = CommandResult(
            command=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            host=self.host,
        )
        if result.ok:
            self.logger.debug("Command succeeded", command=command)
        else:
            self.logger.info(
                "Command failed",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )
        return result


class LocalExecutor(CommandExecutor):
    """Runs commands on this machine through bash."""

    def __init__(self):
        super().__init__("localhost")

    def build_argv(self, command: str) -> list[str]:
        return ["/bin/bash", "-c", command]


class SSHExecutor(CommandExecutor):
    """Runs commands on a remote node with a fixed identity file."""

    def __init__(
        self,
        address: str,
        identity_file: str | None = None,
        user: str = "root",
        port: int = 22,
    ):
        super().__init__(address)
        self.ssh_cmd = build_ssh_command(address, identity_file, user, port)

    def build_argv(self, command: str) -> list[str]:
        return self.ssh_cmd + [command]


class ExecutorFactory:
    """Hands out executors for the local machine and for nodes by address."""

    def __init__(self, config: MigrationConfig):
        self.config = config
        self._local = LocalExecutor()
        self._remote: dict[str, SSHExecutor] = {}

    def local(self) -> CommandExecutor:
        return self._local

    def remote(self, address: str) -> CommandExecutor:
        if address not in self._remote:
            self._remote[address] = SSHExecutor(
                address,
                identity_file=self.config.identity_file,
                user=self.config.ssh_user,
                port=self.config.ssh_port,
            )
        return self._remote[address]
