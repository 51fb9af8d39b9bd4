"""Dataset replication: copy a VM's dataset tree from source to target.

Each dataset is streamed with ``zfs send`` on the source, piped over an
encrypted SSH channel into ``zfs recv`` on the target. Datasets cloned from an
image are sent incrementally from the image's canonical snapshot after making
sure the image is installed on the target.
"""

import re
import shlex
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from ..constants import (
    DATASET_TYPE_VOLUME,
    FILESYSTEM_PRESERVED_PROPERTIES,
    VOLUME_PRESERVED_PROPERTIES,
    ZFS_UNSET,
)
from ..models.results import CommandResult
from .config_loader import MigrationConfig
from .exceptions import ReplicationError
from .executor import CommandExecutor, build_ssh_command
from .zfs import ZFSManager

logger = structlog.get_logger()

IMAGE_UUID_PATTERN = re.compile(r"^(?:[^@/]+/)?([0-9a-f][0-9a-f-]*)@.+$")


def preserved_property_names(dataset_type: str) -> tuple[str, ...]:
    """Properties carried over to the target for a dataset type."""
    if dataset_type == DATASET_TYPE_VOLUME:
        return VOLUME_PRESERVED_PROPERTIES
    return FILESYSTEM_PRESERVED_PROPERTIES


def receive_options(properties: dict[str, str]) -> list[str]:
    """Turn properties into ``zfs recv -o`` arguments, skipping unset values."""
    options: list[str] = []
    for name, value in properties.items():
        if value in (ZFS_UNSET, ""):
            continue
        options.extend(["-o", f"{name}={value}"])
    return options


def image_uuid_from_origin(origin: str) -> str:
    """Extract the image UUID from an origin like ``zones/<uuid>@<snap>``."""
    match = IMAGE_UUID_PATTERN.match(origin)
    if not match:
        raise ReplicationError(f"Origin {origin!r} does not reference an image snapshot")
    return match.group(1)


@dataclass
class DatasetPlan:
    """What to send for one dataset and how to receive it."""

    name: str
    dataset_type: str
    properties: dict[str, str] = field(default_factory=dict)
    origin: str | None = None
    image_uuid: str | None = None

    @property
    def incremental(self) -> bool:
        return self.image_uuid is not None


class DatasetReplicator:
    """Replicates every dataset under a VM's root container, one at a time."""

    def __init__(
        self,
        config: MigrationConfig,
        source: CommandExecutor,
        target: CommandExecutor,
        transfer_address: str,
    ):
        self.config = config
        self.source = source
        self.target = target
        self.transfer_address = transfer_address
        self.source_zfs = ZFSManager(source)
        self.logger = logger.bind(component="replication", target=transfer_address)

    def root_dataset(self, vm_uuid: str) -> str:
        return f"{self.config.zpool}/{vm_uuid}"

    async def plan_dataset(self, dataset: str, exclude: tuple[str, ...] = ()) -> DatasetPlan:
        dataset_type = await self.source_zfs.get_property(dataset, "type")
        names = tuple(
            name for name in preserved_property_names(dataset_type) if name not in exclude
        )
        properties = await self.source_zfs.get_properties(dataset, names) if names else {}
        # only what was asked for; never volsize/volblocksize on volumes
        properties = {name: value for name, value in properties.items() if name in names}

        origin = await self.source_zfs.get_property(dataset, "origin")
        if origin in (ZFS_UNSET, ""):
            return DatasetPlan(name=dataset, dataset_type=dataset_type, properties=properties)

        return DatasetPlan(
            name=dataset,
            dataset_type=dataset_type,
            properties=properties,
            origin=origin,
            image_uuid=image_uuid_from_origin(origin),
        )

    async def plan(self, vm_uuid: str, defer_root_quota: bool = False) -> list[DatasetPlan]:
        """Inspect every dataset of the VM.

        Args:
            vm_uuid: VM whose tree to inspect
            defer_root_quota: Leave ``quota`` off the root dataset's receive
        """
        root = self.root_dataset(vm_uuid)
        plans = []
        for dataset in await self.source_zfs.list_datasets(root):
            exclude = ("quota",) if defer_root_quota and dataset == root else ()
            plans.append(await self.plan_dataset(dataset, exclude))
        return plans

    async def ensure_image(self, image_uuid: str) -> CommandResult | None:
        """Import the image on the target unless it is already installed."""
        installed = await self.target.run(f"imgadm get {shlex.quote(image_uuid)} >/dev/null")
        if installed.ok:
            self.logger.info("Image already installed on target", image_uuid=image_uuid)
            return None
        result = await self.target.run(f"imgadm import -q {shlex.quote(image_uuid)}")
        return result.check(f"Failed to import image {image_uuid} on target: {result.output}")

    def build_transfer_command(self, plan: DatasetPlan, snapshot_name: str) -> str:
        """Build the send | ssh recv pipeline that runs on the source node."""
        snapshot = f"{plan.name}@{snapshot_name}"
        send_argv = ["zfs", "send"]
        if plan.incremental:
            base = f"{self.config.zpool}/{plan.image_uuid}@{self.config.image_snapshot}"
            send_argv.extend(["-I", base])
        send_argv.append(snapshot)

        recv_argv = ["zfs", "recv", *receive_options(plan.properties)]
        if plan.origin:
            recv_argv.extend(["-o", f"origin={plan.origin}"])
        recv_argv.extend(["-d", self.config.zpool])

        ssh_argv = build_ssh_command(
            self.transfer_address,
            identity_file=self.config.identity_file,
            user=self.config.ssh_user,
            port=self.config.ssh_port,
            cipher=self.config.transfer_cipher,
        )
        pipeline = f"{shlex.join(send_argv)} | {shlex.join(ssh_argv)} {shlex.quote(shlex.join(recv_argv))}"
        return f"bash -o pipefail -c {shlex.quote(pipeline)}"

    async def transfer(self, plan: DatasetPlan, snapshot_name: str) -> CommandResult:
        command = self.build_transfer_command(plan, snapshot_name)
        self.logger.info(
            "Sending dataset",
            dataset=plan.name,
            incremental=plan.incremental,
            image_uuid=plan.image_uuid,
            properties=plan.properties,
        )
        result = await self.source.run(command)
        return result.check(
            f"Failed to send {plan.name}@{snapshot_name} to {self.transfer_address}: {result.output}"
        )

    async def replicate(
        self,
        vm_uuid: str,
        snapshot_name: str,
        defer_root_quota: bool = False,
        report: Callable[[str], None] | None = None,
    ) -> list[DatasetPlan]:
        """Send every dataset of the VM; the first failure aborts the rest."""
        report = report or (lambda message: None)
        plans = await self.plan(vm_uuid, defer_root_quota)

        for plan in plans:
            if plan.incremental:
                imported = await self.ensure_image(plan.image_uuid)
                if imported is not None and imported.output:
                    report(imported.output)
                report(
                    f"Syncing {plan.name}@{snapshot_name} incrementally from "
                    f"{self.config.zpool}/{plan.image_uuid}@{self.config.image_snapshot}"
                )
            else:
                report(f"Syncing {plan.name}@{snapshot_name}")
            await self.transfer(plan, snapshot_name)

        return plans
