"""Resolve VMs to their hosting node and nodes to reachable addresses.

Two backends share one interface:

- ``HeadnodeDirectory`` queries the control plane (VMAPI/CNAPI) from the head node.
- ``ComputeNodeDirectory`` runs on the source compute node and reads ``vmadm``
  and ``sysinfo`` directly, over SSH for the target.
"""

import json
import re
import shlex
from abc import ABC, abstractmethod
from typing import Any

import structlog
from pydantic import BaseModel

from ..models.node import NodeDescriptor
from .config_loader import MigrationConfig
from .exceptions import ResolutionError
from .executor import CommandExecutor, ExecutorFactory
from .vmadm import VMManager

logger = structlog.get_logger()

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


class VMLocation(BaseModel):
    """Where a VM currently lives."""

    vm_uuid: str
    alias: str
    server_uuid: str | None = None


def parse_sysinfo(sysinfo: dict[str, Any], overlay_nic_tag: str) -> NodeDescriptor:
    """Build a node descriptor from a sysinfo document.

    The admin address comes from ``Admin IP`` when present, else from the NIC
    tagged ``admin``. The overlay address is the first interface, physical or
    virtual, tagged (or named after) ``overlay_nic_tag``.
    """
    hostname = sysinfo.get("Hostname")
    if not hostname:
        raise ResolutionError("sysinfo has no Hostname")

    interfaces: dict[str, dict[str, Any]] = {}
    interfaces.update(sysinfo.get("Network Interfaces") or {})
    interfaces.update(sysinfo.get("Virtual Network Interfaces") or {})

    admin_address = sysinfo.get("Admin IP")
    overlay_address = None
    for name, nic in interfaces.items():
        tags = nic.get("NIC Names") or []
        address = nic.get("ip4addr")
        if not address:
            continue
        if not admin_address and "admin" in tags:
            admin_address = address
        if overlay_address is None and (overlay_nic_tag in tags or name.startswith(overlay_nic_tag)):
            overlay_address = address

    if not admin_address:
        raise ResolutionError(f"Node {hostname} has no administrative network address")

    return NodeDescriptor(
        uuid=sysinfo.get("UUID", ""),
        hostname=hostname,
        admin_address=admin_address,
        overlay_address=overlay_address,
    )


def select_transfer_address(
    source: NodeDescriptor, target: NodeDescriptor, overlay_reachable: bool
) -> str:
    """Pick the target address the source streams datasets to.

    The overlay is used only when both nodes have an overlay address and the
    source can reach the target's; otherwise the target's admin address.
    """
    if target.overlay_address and source.overlay_address and overlay_reachable:
        return target.overlay_address
    return target.admin_address


async def choose_transfer_address(
    source: NodeDescriptor, target: NodeDescriptor, source_executor: CommandExecutor
) -> str:
    """Probe overlay reachability from the source and select an address."""
    reachable = False
    if target.overlay_address and source.overlay_address:
        result = await source_executor.run(f"ping {shlex.quote(target.overlay_address)} 2")
        reachable = result.ok

    address = select_transfer_address(source, target, reachable)
    logger.info(
        "Selected transfer address",
        component="resolver",
        source=source.hostname,
        target=target.hostname,
        address=address,
        overlay=address == target.overlay_address,
    )
    return address


def _parse_json(output: str, what: str) -> Any:
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        raise ResolutionError(f"Unparsable response for {what}: {e}") from e


class NodeDirectory(ABC):
    """Lookup interface used by the orchestrator."""

    def __init__(self, config: MigrationConfig):
        self.config = config
        self.logger = logger.bind(component=self.__class__.__name__.lower())

    @abstractmethod
    async def resolve_vm(self, vm_uuid: str) -> VMLocation:
        """Find the VM's alias and hosting node; ResolutionError if unknown."""

    @abstractmethod
    async def resolve_source(self, location: VMLocation) -> NodeDescriptor:
        """Describe the node currently hosting the VM."""

    @abstractmethod
    async def resolve_node(self, spec: str) -> NodeDescriptor:
        """Describe a node given by UUID, hostname or address."""

    @abstractmethod
    async def vm_metadata(self, vm_uuid: str) -> dict[str, Any]:
        """Full VM descriptor, saved as the metadata backup."""


class HeadnodeDirectory(NodeDirectory):
    """Control-plane lookups run on the head node."""

    def __init__(self, config: MigrationConfig, executor: CommandExecutor):
        super().__init__(config)
        self.executor = executor

    async def _api(self, tool: str, path: str) -> Any:
        result = await self.executor.run(f"{tool} {shlex.quote(path)} | json -H")
        if not result.ok:
            raise ResolutionError(f"{tool} {path} failed: {result.output}")
        return _parse_json(result.stdout, f"{tool} {path}")

    async def vm_metadata(self, vm_uuid: str) -> dict[str, Any]:
        vm = await self._api("sdc-vmapi", f"/vms/{vm_uuid}")
        if not isinstance(vm, dict) or vm.get("uuid") != vm_uuid:
            raise ResolutionError(f"Invalid VM UUID: {vm_uuid}")
        return vm

    async def resolve_vm(self, vm_uuid: str) -> VMLocation:
        vm = await self.vm_metadata(vm_uuid)
        if vm.get("state") in ("destroyed", "failed") or not vm.get("server_uuid"):
            raise ResolutionError(f"VM {vm_uuid} is not placed on any node")
        return VMLocation(
            vm_uuid=vm_uuid, alias=vm.get("alias") or vm_uuid, server_uuid=vm["server_uuid"]
        )

    async def resolve_source(self, location: VMLocation) -> NodeDescriptor:
        if not location.server_uuid:
            raise ResolutionError(f"VM {location.vm_uuid} has no hosting node")
        return await self.resolve_node(location.server_uuid)

    async def resolve_node(self, spec: str) -> NodeDescriptor:
        if UUID_PATTERN.match(spec):
            server = await self._api("sdc-cnapi", f"/servers/{spec}")
        else:
            servers = await self._api("sdc-cnapi", f"/servers?hostname={spec}&extras=sysinfo")
            if not isinstance(servers, list) or not servers:
                raise ResolutionError(f"No compute node named {spec}")
            server = servers[0]

        if not isinstance(server, dict) or not server.get("sysinfo"):
            raise ResolutionError(f"No compute node found for {spec}")

        node = parse_sysinfo(server["sysinfo"], self.config.overlay_nic_tag)
        self.logger.debug("Resolved node", spec=spec, node=node.model_dump())
        return node


class ComputeNodeDirectory(NodeDirectory):
    """Lookups made from the source compute node itself."""

    def __init__(self, config: MigrationConfig, executors: ExecutorFactory):
        super().__init__(config)
        self.executors = executors
        self.vmadm = VMManager(executors.local())

    async def _sysinfo(self, executor: CommandExecutor) -> NodeDescriptor:
        result = await executor.run("sysinfo")
        if not result.ok:
            raise ResolutionError(f"sysinfo failed on {executor.host}: {result.output}")
        return parse_sysinfo(_parse_json(result.stdout, "sysinfo"), self.config.overlay_nic_tag)

    async def vm_metadata(self, vm_uuid: str) -> dict[str, Any]:
        return await self.vmadm.get(vm_uuid)

    async def resolve_vm(self, vm_uuid: str) -> VMLocation:
        alias = await self.vmadm.alias(vm_uuid)
        if not alias:
            raise ResolutionError(f"Invalid VM UUID: {vm_uuid}")
        return VMLocation(vm_uuid=vm_uuid, alias=alias)

    async def resolve_source(self, location: VMLocation) -> NodeDescriptor:
        return await self._sysinfo(self.executors.local())

    async def resolve_node(self, spec: str) -> NodeDescriptor:
        return await self._sysinfo(self.executors.remote(spec))


def build_directory(config: MigrationConfig, executors: ExecutorFactory) -> NodeDirectory:
    if config.mode == "cn":
        return ComputeNodeDirectory(config, executors)
    return HeadnodeDirectory(config, executors.local())
