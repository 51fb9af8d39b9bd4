"""Migration orchestrator: migrate, finalize, rollback and list.

Every operation is a fixed sequence of blocking steps run through a
``StepRunner``. The first failing step stops the operation; nothing is undone
automatically. Re-running the same subcommand resumes, since most steps skip
work that is already done.
"""

import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TextIO

import structlog

from ..models.node import NodeDescriptor
from ..models.record import MigrationRecord
from ..models.results import CommandResult, StepResult
from .config_loader import MigrationConfig
from .exceptions import (
    PreconditionError,
    RecordExistsError,
    RecordFormatError,
    RemoteCommandError,
    ResolutionError,
    StepFailedError,
    VMMigrateError,
)
from .executor import CommandExecutor, ExecutorFactory
from .records import MigrationRecordStore
from .replication import DatasetReplicator
from .resolver import NodeDirectory, choose_transfer_address
from .vmadm import VMManager
from .zfs import ZFSManager

logger = structlog.get_logger()

Reporter = Callable[[str], None]


@dataclass(frozen=True)
class MigrationContext:
    """Everything one invocation needs, resolved once up front."""

    vm_uuid: str
    vm_alias: str
    snapshot_name: str
    source: NodeDescriptor
    target: NodeDescriptor
    transfer_address: str
    has_delegate_dataset: bool
    quota: str | None = None

    @classmethod
    def from_record(cls, record: MigrationRecord, snapshot_name: str) -> "MigrationContext":
        return cls(
            vm_uuid=record.vm_uuid,
            vm_alias=record.vm_alias or record.vm_uuid,
            snapshot_name=snapshot_name,
            source=NodeDescriptor(
                uuid=record.source_cn_uuid or "",
                hostname=record.source_cn_hostname,
                admin_address=record.source_cn_address,
            ),
            target=NodeDescriptor(
                uuid=record.target_cn_uuid or "",
                hostname=record.target_cn_hostname,
                admin_address=record.target_cn_admin_address,
            ),
            transfer_address=record.target_cn_address,
            has_delegate_dataset=bool(record.has_delegate_dataset),
            quota=record.quota,
        )

    def to_record(self) -> MigrationRecord:
        return MigrationRecord(
            vm_uuid=self.vm_uuid,
            vm_alias=self.vm_alias,
            source_cn_uuid=self.source.uuid or None,
            source_cn_hostname=self.source.hostname,
            source_cn_address=self.source.admin_address,
            target_cn_uuid=self.target.uuid or None,
            target_cn_hostname=self.target.hostname,
            target_cn_admin_address=self.target.admin_address,
            target_cn_address=self.transfer_address,
            has_delegate_dataset=self.has_delegate_dataset,
            snapshot_name=self.snapshot_name,
        )


class StepRunner:
    """Runs steps in order, narrating each and collecting typed results."""

    def __init__(self, operation: str, vm_uuid: str, out: TextIO | None = None):
        self.operation = operation
        self.vm_uuid = vm_uuid
        self.out = out or sys.stdout
        self.results: list[StepResult] = []
        self.logger = logger.bind(component="step_runner", operation=operation, vm_uuid=vm_uuid)

    def _write(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()

    async def run(self, name: str, action: Callable[[Reporter], Awaitable[Any]]) -> Any:
        """Run one step.

        Args:
            name: Step narration, e.g. "Stopping source VM"
            action: Coroutine function taking a reporter for indented output

        Returns:
            Whatever the action returned

        Raises:
            PreconditionError: Re-raised unchanged; nothing was mutated
            StepFailedError: Any other failure, carrying the step result
        """
        step = StepResult(name=name, success=False)
        self.results.append(step)
        self._write(f"{name}...")

        def report(text: str) -> None:
            for line in text.splitlines():
                if not step.outputs:
                    self._write("\n")
                step.outputs.append(line)
                self._write(f"  {line}\n")

        self.logger.info("Step started", step=name)
        try:
            value = await action(report)
        except RemoteCommandError as e:
            # zero exit: the command ran but its output was unusable
            step.detail = str(e) if e.result.ok else (e.result.output or str(e))
            step.returncode = e.returncode
            self._fail(step, str(e))
            raise StepFailedError(step) from e
        except PreconditionError as e:
            step.detail = str(e)
            step.returncode = 1
            self._fail(step, str(e))
            raise
        except VMMigrateError as e:
            step.detail = str(e)
            step.returncode = 1
            self._fail(step, str(e))
            raise StepFailedError(step) from e

        if isinstance(value, CommandResult) and value.output:
            report(value.output)

        step.success = True
        self._write("  ... done\n" if step.outputs else " done\n")
        self.logger.info("Step completed", step=name)
        return value

    def _fail(self, step: StepResult, message: str) -> None:
        self._write(" failed\n" if not step.outputs else "  ... failed\n")
        self.logger.error(
            "Step failed", step=step.name, returncode=step.returncode, error=message
        )


class MigrationOrchestrator:
    """Sequences the remote operations that move a VM between nodes."""

    def __init__(
        self,
        config: MigrationConfig,
        executors: ExecutorFactory,
        store: MigrationRecordStore,
        directory: NodeDirectory,
        out: TextIO | None = None,
    ):
        self.config = config
        self.executors = executors
        self.store = store
        self.directory = directory
        self.out = out
        self.logger = logger.bind(component="orchestrator", mode=config.mode)

    def source_executor(self, source: NodeDescriptor) -> CommandExecutor:
        if self.config.mode == "cn":
            return self.executors.local()
        return self.executors.remote(source.admin_address)

    def target_executor(self, target: NodeDescriptor) -> CommandExecutor:
        return self.executors.remote(target.admin_address)

    def root_dataset(self, vm_uuid: str) -> str:
        return f"{self.config.zpool}/{vm_uuid}"

    def list_migrations(self) -> list[str]:
        return self.store.list_vms()

    def describe_migrations(self) -> list[MigrationRecord]:
        """Records for ``list --long``.

        Incomplete or unparsable records are still listed; a missing alias is
        taken from the metadata backup.
        """
        records = []
        for vm_uuid in self.store.list_vms():
            try:
                record = MigrationRecord.from_fields(vm_uuid, self.store.read(vm_uuid))
            except (RecordFormatError, ResolutionError) as e:
                self.logger.warning("Unreadable migration record", vm_uuid=vm_uuid, error=str(e))
                record = MigrationRecord(vm_uuid=vm_uuid, created_at=None)

            if not record.vm_alias:
                try:
                    backup = self.store.load_backup(vm_uuid) or {}
                except (RecordFormatError, ResolutionError) as e:
                    self.logger.warning("Unreadable metadata backup", vm_uuid=vm_uuid, error=str(e))
                    backup = {}
                if backup.get("alias"):
                    record = record.model_copy(update={"vm_alias": backup["alias"]})
            records.append(record)
        return records

    async def _prepare(
        self, vm_uuid: str, target_spec: str, snapshot_name: str
    ) -> MigrationContext:
        """Check every migrate precondition and resolve the context."""
        if self.store.exists(vm_uuid):
            raise RecordExistsError(vm_uuid)

        location = await self.directory.resolve_vm(vm_uuid)
        source = await self.directory.resolve_source(location)
        target = await self.directory.resolve_node(target_spec)

        same_uuid = bool(source.uuid) and source.uuid == target.uuid
        if same_uuid or source.admin_address == target.admin_address:
            raise PreconditionError(f"VM {vm_uuid} already lives on {target.hostname}")

        target_exec = self.target_executor(target)
        probe = await target_exec.run("exit 0")
        if not probe.ok:
            raise RemoteCommandError(
                probe, f"Failed to SSH to {target.admin_address}: {probe.output or 'no output'}"
            )

        source_exec = self.source_executor(source)
        source_zfs = ZFSManager(source_exec)
        root = self.root_dataset(vm_uuid)
        if await source_zfs.exists(f"{root}@{snapshot_name}"):
            raise PreconditionError(
                f"Snapshot {root}@{snapshot_name} already exists. "
                "Please destroy it and then try again."
            )

        has_delegate_dataset = await source_zfs.exists(f"{root}/data")
        transfer_address = await choose_transfer_address(source, target, source_exec)

        return MigrationContext(
            vm_uuid=vm_uuid,
            vm_alias=location.alias,
            snapshot_name=snapshot_name,
            source=source,
            target=target,
            transfer_address=transfer_address,
            has_delegate_dataset=has_delegate_dataset,
        )

    async def migrate(
        self, vm_uuid: str, target_spec: str, snapshot_name: str | None = None
    ) -> list[StepResult]:
        """Move a VM to another node, leaving the stopped source for finalize/rollback."""
        snapshot_name = snapshot_name or self.config.snapshot_name
        runner = StepRunner("migrate", vm_uuid, self.out)

        async def resolve(report: Reporter) -> MigrationContext:
            ctx = await self._prepare(vm_uuid, target_spec, snapshot_name)
            report(f"source: {ctx.source.label}")
            report(f"target: {ctx.target.label}, transfers via {ctx.transfer_address}")
            return ctx

        ctx: MigrationContext = await runner.run("Resolving source and target nodes", resolve)
        self.logger.info(
            "Migrating VM",
            vm_uuid=vm_uuid,
            alias=ctx.vm_alias,
            source=ctx.source.hostname,
            target=ctx.target.hostname,
            transfer_address=ctx.transfer_address,
        )

        source_exec = self.source_executor(ctx.source)
        target_exec = self.target_executor(ctx.target)
        source_vm, target_vm = VMManager(source_exec), VMManager(target_exec)
        source_zfs, target_zfs = ZFSManager(source_exec), ZFSManager(target_exec)
        root = self.root_dataset(vm_uuid)

        async def save_record(report: Reporter) -> None:
            path = self.store.create(ctx.to_record())
            report(str(path))

        async def save_backup(report: Reporter) -> None:
            metadata = await self.directory.vm_metadata(vm_uuid)
            report(str(self.store.save_backup(vm_uuid, metadata)))

        async def create_target_vm(report: Reporter) -> CommandResult:
            zone_config = await source_vm.export_config(vm_uuid)
            return await target_vm.import_config(vm_uuid, zone_config)

        async def sync_datasets(report: Reporter) -> None:
            if self.config.preserve_quota:
                quota = await source_zfs.get_property(root, "quota", parsable=True)
                self.store.append(vm_uuid, "quota", quota)
                report(f"Recorded {root} quota={quota}")
            replicator = DatasetReplicator(self.config, source_exec, target_exec, ctx.transfer_address)
            await replicator.replicate(
                vm_uuid,
                ctx.snapshot_name,
                defer_root_quota=self.config.preserve_quota,
                report=report,
            )

        async def restore_target_quota(report: Reporter) -> None:
            quota = self.store.read(vm_uuid).get("quota")
            if quota:
                await target_zfs.set_property(root, "quota", quota)

        async def hide_source(report: Reporter) -> CommandResult:
            result = await source_vm.set_inventory_flags(
                vm_uuid, hidden=True, protect=True, has_delegate_dataset=ctx.has_delegate_dataset
            )
            if self.config.restart_vm_agent:
                await source_vm.restart_agent()
            return result

        await runner.run("Saving migration record", save_record)
        await runner.run("Backing up VM metadata", save_backup)
        await runner.run("Creating target VM", create_target_vm)
        await runner.run("Stopping source VM", lambda report: source_vm.stop(vm_uuid))
        await runner.run(
            f"Creating recursive @{ctx.snapshot_name} snapshot",
            lambda report: source_zfs.snapshot(root, ctx.snapshot_name, recursive=True),
        )
        await runner.run("Syncing VM datasets", sync_datasets)
        if self.config.preserve_quota:
            await runner.run("Restoring dataset quota on target", restore_target_quota)
        await runner.run("Attaching target VM", lambda report: target_vm.attach(vm_uuid))
        await runner.run("Hiding source VM from inventory", hide_source)
        await runner.run(
            "Showing target VM to inventory",
            lambda report: target_vm.set_inventory_flags(vm_uuid, hidden=False),
        )
        await runner.run("Starting target VM", lambda report: target_vm.start(vm_uuid))

        self.logger.info("Migration complete, awaiting finalize or rollback", vm_uuid=vm_uuid)
        return runner.results

    def _load_context(self, vm_uuid: str, snapshot_name: str | None) -> MigrationContext:
        record = self.store.load(vm_uuid)
        return MigrationContext.from_record(
            record, snapshot_name or record.snapshot_name or self.config.snapshot_name
        )

    async def finalize(self, vm_uuid: str, snapshot_name: str | None = None) -> list[StepResult]:
        """Irreversibly remove the source VM and the migration snapshots."""
        ctx = self._load_context(vm_uuid, snapshot_name)
        runner = StepRunner("finalize", vm_uuid, self.out)
        source_exec = self.source_executor(ctx.source)
        target_exec = self.target_executor(ctx.target)
        source_vm = VMManager(source_exec)
        root = self.root_dataset(vm_uuid)

        async def delete_source(report: Reporter) -> CommandResult | None:
            if await source_vm.state(vm_uuid) is None:
                report("Source VM already deleted")
                return None
            # an indestructible zone cannot be deleted
            cleared = await source_vm.clear_protection(vm_uuid, ctx.has_delegate_dataset)
            if cleared.output:
                report(cleared.output)
            return await source_vm.delete(vm_uuid)

        await runner.run(
            f"Destroying source @{ctx.snapshot_name} snapshots",
            lambda report: ZFSManager(source_exec).destroy_snapshot(root, ctx.snapshot_name),
        )
        await runner.run(
            f"Destroying target @{ctx.snapshot_name} snapshots",
            lambda report: ZFSManager(target_exec).destroy_snapshot(root, ctx.snapshot_name),
        )
        await runner.run("Deleting source VM", delete_source)
        await runner.run("Removing migration record", self._remove_record(vm_uuid))

        self.logger.info("Migration finalized", vm_uuid=vm_uuid, target=ctx.target.hostname)
        return runner.results

    async def rollback(self, vm_uuid: str, snapshot_name: str | None = None) -> list[StepResult]:
        """Delete the target VM and bring the source VM back."""
        ctx = self._load_context(vm_uuid, snapshot_name)
        runner = StepRunner("rollback", vm_uuid, self.out)
        source_exec = self.source_executor(ctx.source)
        target_exec = self.target_executor(ctx.target)
        source_vm, target_vm = VMManager(source_exec), VMManager(target_exec)
        source_zfs = ZFSManager(source_exec)
        root = self.root_dataset(vm_uuid)

        async def hide_target(report: Reporter) -> CommandResult | None:
            if await target_vm.state(vm_uuid) is None:
                report("Target VM does not exist")
                return None
            result = await target_vm.set_inventory_flags(vm_uuid, hidden=True)
            if self.config.restart_vm_agent:
                await target_vm.restart_agent()
            return result

        async def show_source(report: Reporter) -> CommandResult:
            result = await source_vm.set_inventory_flags(
                vm_uuid, hidden=False, protect=False, has_delegate_dataset=ctx.has_delegate_dataset
            )
            if self.config.restart_vm_agent:
                await source_vm.restart_agent()
            return result

        async def stop_target(report: Reporter) -> CommandResult | None:
            if await target_vm.state(vm_uuid) in (None, "configured", "installed", "stopped"):
                report("Target VM is not running")
                return None
            return await target_vm.stop(vm_uuid)

        async def verify_source_quota(report: Reporter) -> None:
            current = await source_zfs.get_property(root, "quota", parsable=True)
            if current == ctx.quota:
                report(f"{root} quota unchanged ({current})")
                return
            await source_zfs.set_property(root, "quota", ctx.quota)
            report(f"{root} quota {current} -> {ctx.quota}")

        await runner.run("Hiding target VM from inventory", hide_target)
        await runner.run("Showing source VM to inventory", show_source)
        await runner.run("Stopping target VM", stop_target)
        await runner.run(
            f"Destroying target @{ctx.snapshot_name} snapshots",
            lambda report: ZFSManager(target_exec).destroy_snapshot(root, ctx.snapshot_name),
        )
        await runner.run(
            f"Destroying source @{ctx.snapshot_name} snapshots",
            lambda report: source_zfs.destroy_snapshot(root, ctx.snapshot_name),
        )
        await runner.run("Deleting target VM", lambda report: target_vm.delete(vm_uuid))
        if ctx.quota:
            await runner.run("Verifying source dataset quota", verify_source_quota)
        await runner.run("Starting source VM", lambda report: source_vm.start(vm_uuid))
        await runner.run("Removing migration record", self._remove_record(vm_uuid))

        self.logger.info("Migration rolled back", vm_uuid=vm_uuid, source=ctx.source.hostname)
        return runner.results

    def _remove_record(self, vm_uuid: str) -> Callable[[Reporter], Awaitable[None]]:
        async def remove(report: Reporter) -> None:
            self.store.delete(vm_uuid)

        return remove
