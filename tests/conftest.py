"""Shared pytest fixtures: a simulated two-node cluster and its control plane."""

import json
import shlex
from dataclasses import dataclass, field
from io import StringIO
from typing import Any

import pytest

from vm_migrate.core.config_loader import MigrationConfig
from vm_migrate.core.executor import CommandExecutor
from vm_migrate.core.orchestrator import MigrationOrchestrator
from vm_migrate.core.records import MigrationRecordStore
from vm_migrate.core.resolver import ComputeNodeDirectory, HeadnodeDirectory
from vm_migrate.models.results import CommandResult

IMAGE_UUID = "1f3a9c2e-5b7d-4e8f-9a0b-c1d2e3f4a5b6"
NODE_A_UUID = "aaaaaaaa-0000-4000-8000-00000000000a"
NODE_B_UUID = "bbbbbbbb-0000-4000-8000-00000000000b"


class ScriptedExecutor(CommandExecutor):
    """Executor answering commands from (substring, CommandResult) rules."""

    def __init__(self, host: str = "fake", rules: list[tuple[str, CommandResult]] | None = None):
        super().__init__(host)
        self.rules = list(rules or [])
        self.commands: list[str] = []
        self.inputs: list[str | None] = []

    def build_argv(self, command: str) -> list[str]:
        return ["fake", command]

    def add(self, needle: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.rules.append((needle, CommandResult(needle, returncode, stdout, stderr, self.host)))

    async def run(self, command: str, input: str | None = None) -> CommandResult:
        self.commands.append(command)
        self.inputs.append(input)
        for needle, result in self.rules:
            if needle in command:
                return CommandResult(command, result.returncode, result.stdout, result.stderr, self.host)
        return CommandResult(command, 0, "", "", self.host)


@dataclass
class FakeVM:
    uuid: str
    alias: str
    state: str = "running"
    flags: dict[str, str] = field(default_factory=dict)


@dataclass
class FakeNode:
    """Just enough of a compute node to answer vmadm/zfs/imgadm commands."""

    uuid: str
    hostname: str
    admin_address: str
    overlay_address: str | None = None
    reachable: set[str] = field(default_factory=set)
    vms: dict[str, FakeVM] = field(default_factory=dict)
    datasets: dict[str, dict[str, str]] = field(default_factory=dict)
    snapshots: set[str] = field(default_factory=set)
    images: set[str] = field(default_factory=set)
    files: dict[str, str] = field(default_factory=dict)
    commands: list[str] = field(default_factory=list)
    received: list[tuple[str, list[str], list[str]]] = field(default_factory=list)
    cluster: "FakeCluster | None" = None

    def sysinfo(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "UUID": self.uuid,
            "Hostname": self.hostname,
            "Admin IP": self.admin_address,
        }
        if self.overlay_address:
            info["Virtual Network Interfaces"] = {
                "sdc_underlay0": {"ip4addr": self.overlay_address, "Host Interface": "ixgbe0"}
            }
        return info

    def add_image(self, image_uuid: str) -> None:
        self.images.add(image_uuid)
        self.datasets[f"zones/{image_uuid}"] = {"type": "filesystem", "origin": "-"}
        self.snapshots.add(f"zones/{image_uuid}@final")

    def add_vm(self, vm_uuid: str, alias: str, image_uuid: str | None = None, delegate: bool = False) -> None:
        self.vms[vm_uuid] = FakeVM(vm_uuid, alias)
        origin = f"zones/{image_uuid}@final" if image_uuid else "-"
        self.datasets[f"zones/{vm_uuid}"] = {
            "type": "filesystem",
            "quota": "10737418240",
            "recordsize": "128K",
            "mountpoint": f"/zones/{vm_uuid}",
            "sharenfs": "off",
            "sync": "standard",
            "origin": origin,
        }
        if delegate:
            self.datasets[f"zones/{vm_uuid}/data"] = {
                "type": "filesystem",
                "quota": "-",
                "recordsize": "128K",
                "mountpoint": f"/zones/{vm_uuid}/data",
                "sharenfs": "off",
                "sync": "standard",
                "origin": "-",
            }
        self.datasets[f"zones/{vm_uuid}/disk0"] = {
            "type": "volume",
            "volsize": "10G",
            "volblocksize": "8K",
            "sync": "disabled",
            "origin": "-",
        }

    def vm_datasets(self, vm_uuid: str) -> list[str]:
        root = f"zones/{vm_uuid}"
        return sorted(name for name in self.datasets if name == root or name.startswith(root + "/"))

    def snapshots_of(self, vm_uuid: str) -> set[str]:
        return {snap for snap in self.snapshots if snap.startswith(f"zones/{vm_uuid}")}

    def handle(self, command: str, input: str | None) -> tuple[int, str, str]:
        self.commands.append(command)
        argv = shlex.split(command)
        tool = argv[0]
        handler = getattr(self, f"_{tool}", None)
        if tool == "exit":
            return int(argv[1]), "", ""
        if tool == "cat":
            self.files[argv[2]] = input or ""
            return 0, "", ""
        if handler is None:
            return 127, "", f"{tool}: command not found"
        return handler(argv, command)

    def _ping(self, argv, command):
        if argv[1] in self.reachable:
            return 0, f"{argv[1]} is alive", ""
        return 1, "", f"no answer from {argv[1]}"

    def _sysinfo(self, argv, command):
        return 0, json.dumps(self.sysinfo()), ""

    def _svcadm(self, argv, command):
        return 0, "", ""

    def _vmadm(self, argv, command):
        action = argv[1]
        if action == "list":
            column, selector = argv[4], argv[5]
            vm = self.vms.get(selector.split("=", 1)[1])
            return 0, (getattr(vm, column) + "\n") if vm else "", ""

        vm = self.vms.get(argv[2])
        if vm is None:
            return 1, "", f"Unable to load VM {argv[2]}: VM does not exist"
        if action == "get":
            return 0, json.dumps({"uuid": vm.uuid, "alias": vm.alias, "state": vm.state, **vm.flags}), ""
        if action == "stop":
            if vm.state != "running":
                return 1, "", f"Failed to stop VM {vm.uuid}: VM is already not 'running'"
            vm.state = "stopped"
            return 0, f"Successfully completed stop for VM {vm.uuid}", ""
        if action == "start":
            if vm.state != "stopped":
                return 1, "", f"Cannot start VM from state: {vm.state}"
            vm.state = "running"
            return 0, f"Successfully started VM {vm.uuid}", ""
        if action == "update":
            for assignment in argv[3:]:
                key, _, value = assignment.partition("=")
                vm.flags[key] = value
            return 0, f"Successfully updated VM {vm.uuid}", ""
        if action == "delete":
            if vm.flags.get("indestructible_zoneroot") == "true":
                return 1, "", "indestructible_zoneroot is set, cannot delete"
            for dataset in self.vm_datasets(vm.uuid):
                del self.datasets[dataset]
            self.snapshots = {snap for snap in self.snapshots if not snap.startswith(f"zones/{vm.uuid}")}
            del self.vms[vm.uuid]
            return 0, f"Successfully deleted VM {vm.uuid}", ""
        return 1, "", f"unknown vmadm action {action}"

    def _zonecfg(self, argv, command):
        vm_uuid = argv[2]
        if argv[3] == "export":
            vm = self.vms[vm_uuid]
            return 0, f"create -b\nset zonepath=/zones/{vm_uuid}\nset alias={vm.alias}\n", ""
        path = argv[4]
        alias = self.files[path].split("set alias=")[1].splitlines()[0]
        self.vms[vm_uuid] = FakeVM(vm_uuid, alias, state="configured")
        del self.files[path]
        return 0, "", ""

    def _zoneadm(self, argv, command):
        vm = self.vms[argv[2]]
        if f"zones/{vm.uuid}" not in self.datasets:
            return 1, "", "zoneadm: zone root dataset missing"
        vm.state = "stopped"
        return 0, "", ""

    def _imgadm(self, argv, command):
        if argv[1] == "get":
            return (0, "{}", "") if argv[2] in self.images else (1, "", "image not installed")
        self.add_image(argv[3])
        return 0, f"Imported image {argv[3]}", ""

    def _zfs(self, argv, command):
        action = argv[1]
        if action == "list":
            name = argv[-1]
            if "-r" in argv:
                if name not in self.datasets:
                    return 1, "", f"cannot open '{name}': dataset does not exist"
                children = [n for n in self.datasets if n == name or n.startswith(name + "/")]
                return 0, "".join(f"{n}\n" for n in sorted(children)), ""
            if name in self.datasets or name in self.snapshots:
                return 0, f"{name}\n", ""
            return 1, "", f"cannot open '{name}': dataset does not exist"
        if action == "get":
            dataset = self.datasets[argv[-1]]
            names = argv[-2].split(",")
            if argv[3] == "property,value":
                return 0, "".join(f"{n}\t{dataset.get(n, '-')}\n" for n in names), ""
            return 0, dataset.get(names[0], "-") + "\n", ""
        if action == "set":
            key, _, value = argv[2].partition("=")
            self.datasets[argv[3]][key] = value
            return 0, "", ""
        if action == "snapshot":
            full = argv[-1]
            dataset, snap = full.split("@")
            if full in self.snapshots:
                return 1, "", f"cannot create snapshot '{full}': dataset already exists"
            for child in self.vm_datasets(dataset.split("/", 1)[1]) if "-r" in argv else [dataset]:
                self.snapshots.add(f"{child}@{snap}")
            return 0, "", ""
        if action == "destroy":
            full = argv[-1]
            dataset, snap = full.split("@")
            self.snapshots = {
                s for s in self.snapshots
                if not (s.endswith(f"@{snap}") and (s.split("@")[0] == dataset or s.startswith(dataset + "/")))
            }
            return 0, "", ""
        return 1, "", f"unknown zfs action {action}"

    def _bash(self, argv, command):
        pipeline = argv[-1]
        send_part, ssh_part = pipeline.split(" | ", 1)
        send_argv = shlex.split(send_part)
        ssh_argv = shlex.split(ssh_part)
        recv_argv = shlex.split(ssh_argv[-1])
        address = ssh_argv[-2].split("@", 1)[1]
        if address not in self.reachable and address != self.admin_address:
            return 255, "", f"ssh: connect to host {address}: Connection timed out"
        target = self.cluster.by_address(address)

        snapshot = send_argv[-1]
        dataset, snap = snapshot.split("@")
        if snapshot not in self.snapshots:
            return 1, "", f"cannot open '{snapshot}': dataset does not exist"

        options: dict[str, str] = {}
        it = iter(recv_argv[2:])
        for arg in it:
            if arg == "-o":
                key, _, value = next(it).partition("=")
                if key in ("volsize", "volblocksize") or value == "-":
                    return 1, "", f"cannot receive: invalid property '{key}'"
                options[key] = value

        if "-I" in send_argv:
            base = send_argv[send_argv.index("-I") + 1]
            if base not in target.snapshots:
                return 1, "", f"cannot receive incremental stream: base {base} missing"

        source_props = self.datasets[dataset]
        received = {"type": source_props["type"], "origin": options.pop("origin", "-")}
        if source_props["type"] == "volume":
            received.update(volsize=source_props["volsize"], volblocksize=source_props["volblocksize"])
        received.update(options)
        target.datasets[dataset] = received
        target.snapshots.add(snapshot)
        target.received.append((dataset, send_argv, recv_argv))
        return 0, "", ""


class FakeNodeExecutor(CommandExecutor):
    def __init__(self, node: FakeNode):
        super().__init__(node.admin_address)
        self.node = node

    def build_argv(self, command: str) -> list[str]:
        return ["fake", command]

    async def run(self, command: str, input: str | None = None) -> CommandResult:
        returncode, stdout, stderr = self.node.handle(command, input)
        return CommandResult(command, returncode, stdout, stderr, self.host)


class FakeControlPlane(CommandExecutor):
    """Head node answering sdc-vmapi and sdc-cnapi from the cluster state."""

    def __init__(self, cluster: "FakeCluster"):
        super().__init__("headnode")
        self.cluster = cluster
        self.commands: list[str] = []

    def build_argv(self, command: str) -> list[str]:
        return ["fake", command]

    async def run(self, command: str, input: str | None = None) -> CommandResult:
        self.commands.append(command)
        tool, path = shlex.split(command)[:2]
        body: Any = {"code": "ResourceNotFound"}
        if tool == "sdc-vmapi":
            vm_uuid = path.rsplit("/", 1)[1]
            for node in self.cluster.nodes:
                vm = node.vms.get(vm_uuid)
                if vm and vm.flags.get("do_not_inventory") != "true" and vm.state != "configured":
                    body = {"uuid": vm.uuid, "alias": vm.alias, "state": vm.state, "server_uuid": node.uuid}
        elif tool == "sdc-cnapi":
            if path.startswith("/servers?hostname="):
                hostname = path.split("=", 1)[1].split("&")[0]
                body = [
                    {"uuid": n.uuid, "hostname": n.hostname, "sysinfo": n.sysinfo()}
                    for n in self.cluster.nodes
                    if n.hostname == hostname
                ]
            else:
                server_uuid = path.rsplit("/", 1)[1]
                for node in self.cluster.nodes:
                    if node.uuid == server_uuid:
                        body = {"uuid": node.uuid, "hostname": node.hostname, "sysinfo": node.sysinfo()}
        return CommandResult(command, 0, json.dumps(body), "", self.host)


class FakeCluster:
    """Executor factory over simulated nodes."""

    def __init__(self, *nodes: FakeNode, local: FakeNode | None = None):
        self.nodes = list(nodes)
        for node in self.nodes:
            node.cluster = self
        self.control_plane = FakeControlPlane(self)
        self.local_node = local

    def by_address(self, address: str) -> FakeNode:
        for node in self.nodes:
            if address in (node.admin_address, node.overlay_address, node.hostname):
                return node
        raise KeyError(address)

    def local(self) -> CommandExecutor:
        if self.local_node is not None:
            return FakeNodeExecutor(self.local_node)
        return self.control_plane

    def remote(self, address: str) -> CommandExecutor:
        return FakeNodeExecutor(self.by_address(address))


@pytest.fixture
def config(tmp_path) -> MigrationConfig:
    """Headnode-mode config writing state under a temp dir."""
    return MigrationConfig(
        mode="headnode",
        state_dir=str(tmp_path / "state"),
        log_dir=str(tmp_path / "logs"),
        restart_vm_agent=True,
    )


@pytest.fixture
def store(config) -> MigrationRecordStore:
    return MigrationRecordStore(config.state_dir)


@pytest.fixture
def node_a() -> FakeNode:
    node = FakeNode(
        uuid=NODE_A_UUID,
        hostname="A",
        admin_address="192.168.1.10",
        overlay_address="10.0.0.4",
        reachable={"10.0.0.5", "192.168.1.11"},
    )
    node.add_image(IMAGE_UUID)
    node.add_vm("v1", "web-1", image_uuid=IMAGE_UUID, delegate=True)
    return node


@pytest.fixture
def node_b() -> FakeNode:
    return FakeNode(
        uuid=NODE_B_UUID,
        hostname="B",
        admin_address="192.168.1.11",
        overlay_address="10.0.0.5",
        reachable={"10.0.0.4", "192.168.1.10"},
    )


@pytest.fixture
def cluster(node_a, node_b) -> FakeCluster:
    return FakeCluster(node_a, node_b)


@pytest.fixture
def out() -> StringIO:
    return StringIO()


@pytest.fixture
def orchestrator(config, cluster, store, out) -> MigrationOrchestrator:
    return MigrationOrchestrator(
        config, cluster, store, HeadnodeDirectory(config, cluster.local()), out=out
    )


@pytest.fixture
def cn_orchestrator(config, node_a, node_b, store, out) -> MigrationOrchestrator:
    """Orchestrator running on node A itself."""
    config.mode = "cn"
    cluster = FakeCluster(node_a, node_b, local=node_a)
    return MigrationOrchestrator(
        config, cluster, store, ComputeNodeDirectory(config, cluster), out=out
    )
