"""VM lifecycle control through vmadm, zonecfg and zoneadm."""

import json
import shlex
from typing import Any

import structlog

from ..constants import DO_NOT_INVENTORY, INDESTRUCTIBLE_DELEGATED, INDESTRUCTIBLE_ZONEROOT
from ..models.results import CommandResult
from .exceptions import RemoteCommandError
from .executor import CommandExecutor

logger = structlog.get_logger()


class VMManager:
    """Drives one node's VM manager for a single VM at a time."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor
        self.logger = logger.bind(component="vmadm", host=executor.host)

    async def state(self, vm_uuid: str) -> str | None:
        """Current VM state, or None when the VM does not exist on this node."""
        result = await self.executor.run(f"vmadm list -H -o state uuid={shlex.quote(vm_uuid)}")
        result.check(f"Failed to list VM {vm_uuid}: {result.output}")
        state = result.stdout.strip()
        return state or None

    async def alias(self, vm_uuid: str) -> str | None:
        result = await self.executor.run(f"vmadm list -H -o alias uuid={shlex.quote(vm_uuid)}")
        result.check(f"Failed to list VM {vm_uuid}: {result.output}")
        return result.stdout.strip() or None

    async def get(self, vm_uuid: str) -> dict[str, Any]:
        """Full VM descriptor as reported by ``vmadm get``."""
        result = await self.executor.run(f"vmadm get {shlex.quote(vm_uuid)}")
        result.check(f"Failed to get VM {vm_uuid}: {result.output}")
        try:
            descriptor = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise RemoteCommandError(
                result, f"Unparsable vmadm get output for {vm_uuid}: {e}"
            ) from e
        if not isinstance(descriptor, dict):
            raise RemoteCommandError(result, f"vmadm get {vm_uuid} did not return an object")
        return descriptor

    async def stop(self, vm_uuid: str) -> CommandResult | None:
        """Gracefully stop the VM, blocking until it is down.

        Returns:
            The vmadm result, or None if the VM was already stopped
        """
        if await self.state(vm_uuid) == "stopped":
            self.logger.info("VM already stopped", vm_uuid=vm_uuid)
            return None
        result = await self.executor.run(f"vmadm stop {shlex.quote(vm_uuid)}")
        return result.check(f"Failed to stop VM {vm_uuid}: {result.output}")

    async def start(self, vm_uuid: str) -> CommandResult | None:
        if await self.state(vm_uuid) == "running":
            self.logger.info("VM already running", vm_uuid=vm_uuid)
            return None
        result = await self.executor.run(f"vmadm start {shlex.quote(vm_uuid)}")
        return result.check(f"Failed to start VM {vm_uuid}: {result.output}")

    async def delete(self, vm_uuid: str) -> CommandResult | None:
        """Permanently delete the VM; None if it is already gone."""
        if await self.state(vm_uuid) is None:
            self.logger.info("VM already deleted", vm_uuid=vm_uuid)
            return None
        result = await self.executor.run(f"vmadm delete {shlex.quote(vm_uuid)}")
        return result.check(f"Failed to delete VM {vm_uuid}: {result.output}")

    async def update(self, vm_uuid: str, **properties: bool | str) -> CommandResult:
        assignments = " ".join(
            shlex.quote(f"{name}={_format_value(value)}") for name, value in properties.items()
        )
        result = await self.executor.run(f"vmadm update {shlex.quote(vm_uuid)} {assignments}")
        return result.check(f"Failed to update VM {vm_uuid}: {result.output}")

    async def set_inventory_flags(
        self,
        vm_uuid: str,
        hidden: bool,
        protect: bool | None = None,
        has_delegate_dataset: bool = False,
    ) -> CommandResult:
        """Hide or show the VM to the control plane's inventory.

        Args:
            vm_uuid: VM to update
            hidden: Value for do_not_inventory
            protect: When not None, also set the indestructible flags
            has_delegate_dataset: Whether indestructible_delegated applies
        """
        properties: dict[str, bool | str] = {}
        if protect is not None:
            properties[INDESTRUCTIBLE_ZONEROOT] = protect
            if has_delegate_dataset:
                properties[INDESTRUCTIBLE_DELEGATED] = protect
        properties[DO_NOT_INVENTORY] = hidden
        return await self.update(vm_uuid, **properties)

    async def clear_protection(self, vm_uuid: str, has_delegate_dataset: bool) -> CommandResult:
        properties: dict[str, bool | str] = {INDESTRUCTIBLE_ZONEROOT: False}
        if has_delegate_dataset:
            properties[INDESTRUCTIBLE_DELEGATED] = False
        return await self.update(vm_uuid, **properties)

    async def export_config(self, vm_uuid: str) -> str:
        """Export the zone configuration as zonecfg commands."""
        result = await self.executor.run(f"zonecfg -z {shlex.quote(vm_uuid)} export")
        result.check(f"Failed to export zone config of {vm_uuid}: {result.output}")
        return result.stdout

    async def import_config(self, vm_uuid: str, zone_config: str) -> CommandResult:
        """Create an installed-but-detached zone shell from exported config."""
        path = shlex.quote(f"/tmp/{vm_uuid}.zcfg")
        result = await self.executor.run(f"cat > {path}", input=zone_config)
        result.check(f"Failed to copy zone config for {vm_uuid}: {result.output}")
        result = await self.executor.run(
            f"zonecfg -z {shlex.quote(vm_uuid)} -f {path} && rm -f {path}"
        )
        return result.check(f"Failed to import zone config for {vm_uuid}: {result.output}")

    async def attach(self, vm_uuid: str) -> CommandResult:
        """Bind the received datasets to the zone shell."""
        result = await self.executor.run(f"zoneadm -z {shlex.quote(vm_uuid)} attach")
        return result.check(f"Failed to attach zone {vm_uuid}: {result.output}")

    async def restart_agent(self) -> CommandResult:
        """Restart vm-agent so inventory flag changes reach the control plane."""
        result = await self.executor.run("svcadm restart vm-agent")
        return result.check(f"Failed to restart vm-agent: {result.output}")


def _format_value(value: bool | str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value
