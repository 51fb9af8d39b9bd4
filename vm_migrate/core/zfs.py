"""ZFS dataset and snapshot control on a single node."""

import shlex

import structlog

from ..constants import ZFS_UNSET
from .executor import CommandExecutor

logger = structlog.get_logger()


class ZFSManager:
    """Issues zfs commands against one node's pool."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor
        self.logger = logger.bind(component="zfs", host=executor.host)

    async def exists(self, name: str) -> bool:
        """Whether a dataset or snapshot exists."""
        result = await self.executor.run(f"zfs list -H -o name {shlex.quote(name)}")
        return result.ok

    async def list_datasets(self, root: str) -> list[str]:
        """List ``root`` and every descendant filesystem/volume, parents first."""
        result = await self.executor.run(
            f"zfs list -r -H -o name -t filesystem,volume {shlex.quote(root)}"
        )
        result.check(f"Failed to list datasets under {root}: {result.output}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def get_property(self, dataset: str, name: str, parsable: bool = False) -> str:
        """Read one property value; ``-`` means unset."""
        flags = "-Hpo" if parsable else "-Ho"
        result = await self.executor.run(
            f"zfs get {flags} value {shlex.quote(name)} {shlex.quote(dataset)}"
        )
        result.check(f"Failed to read {name} of {dataset}: {result.output}")
        return result.stdout.strip()

    async def get_properties(self, dataset: str, names: tuple[str, ...]) -> dict[str, str]:
        """Read several properties at once, in the order zfs reports them."""
        result = await self.executor.run(
            f"zfs get -Ho property,value {shlex.quote(','.join(names))} {shlex.quote(dataset)}"
        )
        result.check(f"Failed to read properties of {dataset}: {result.output}")

        properties: dict[str, str] = {}
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            name, _, value = line.partition("\t")
            properties[name.strip()] = value.strip() if value else ZFS_UNSET
        return properties

    async def set_property(self, dataset: str, name: str, value: str) -> None:
        result = await self.executor.run(
            f"zfs set {shlex.quote(f'{name}={value}')} {shlex.quote(dataset)}"
        )
        result.check(f"Failed to set {name}={value} on {dataset}: {result.output}")

    async def snapshot(self, dataset: str, snapshot_name: str, recursive: bool = True) -> str:
        """Create ``dataset@snapshot_name``; fails if it already exists."""
        full_snapshot = f"{dataset}@{snapshot_name}"
        flags = "-r " if recursive else ""
        self.logger.info("Creating ZFS snapshot", snapshot=full_snapshot, recursive=recursive)
        result = await self.executor.run(f"zfs snapshot {flags}{shlex.quote(full_snapshot)}")
        result.check(f"Failed to create snapshot {full_snapshot}: {result.output}")
        return full_snapshot

    async def destroy_snapshot(
        self, dataset: str, snapshot_name: str, recursive: bool = True
    ) -> bool:
        """Destroy ``dataset@snapshot_name`` and its recursive children.

        Returns:
            False when the snapshot was already gone
        """
        full_snapshot = f"{dataset}@{snapshot_name}"
        if "@" in dataset or not snapshot_name:
            raise ValueError(f"Refusing to destroy malformed snapshot {full_snapshot}")

        if not await self.exists(full_snapshot):
            self.logger.info("Snapshot already absent", snapshot=full_snapshot)
            return False

        flags = "-r " if recursive else ""
        self.logger.info("Destroying ZFS snapshot", snapshot=full_snapshot, recursive=recursive)
        result = await self.executor.run(f"zfs destroy {flags}{shlex.quote(full_snapshot)}")
        result.check(f"Failed to destroy snapshot {full_snapshot}: {result.output}")
        return True
