"""File-backed migration records and VM metadata backups.

Layout under the state directory, one pair per VM:

    .vm-migration.<vm_uuid>          flat key=value record
    .vm-migration.<vm_uuid>.backup   JSON snapshot of the VM descriptor

Records are parsed strictly and never executed. Creation is exclusive, so two
concurrent migrations of the same VM cannot both get past record creation.
"""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

import structlog

from ..constants import BACKUP_SUFFIX, RECORD_PREFIX
from ..models.record import RECORD_FIELDS, MigrationRecord
from .exceptions import (
    IncompleteRecordError,
    RecordExistsError,
    RecordFormatError,
    RecordNotFoundError,
    ResolutionError,
)

logger = structlog.get_logger()

KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
VM_UUID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def parse_record(text: str) -> dict[str, str]:
    """Parse ``key=value`` lines.

    Blank lines and ``#`` comments are allowed. Anything else that is not a
    known key followed by ``=`` is rejected, as are duplicate keys and
    non-boolean ``has_delegate_dataset`` values.
    """
    fields: dict[str, str] = {}
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not KEY_PATTERN.match(key):
            raise RecordFormatError(f"line {lineno}: expected key=value, got {raw_line!r}")
        if key not in RECORD_FIELDS:
            raise RecordFormatError(f"line {lineno}: unknown key {key!r}")
        if key in fields:
            raise RecordFormatError(f"line {lineno}: duplicate key {key!r}")

        value = value.strip()
        if key == "has_delegate_dataset" and value not in ("true", "false"):
            raise RecordFormatError(f"line {lineno}: {key} must be true or false, got {value!r}")
        if "\n" in value or "\r" in value:
            raise RecordFormatError(f"line {lineno}: value spans lines")
        fields[key] = value
    return fields


def format_record(fields: dict[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in fields.items())


class MigrationRecordStore:
    """Persists one record and one metadata backup per migrating VM."""

    def __init__(self, state_dir: Path | str):
        self.state_dir = Path(state_dir)
        self.logger = logger.bind(component="record_store", state_dir=str(self.state_dir))

    def record_path(self, vm_uuid: str) -> Path:
        if not VM_UUID_PATTERN.match(vm_uuid):
            raise ResolutionError(f"Invalid VM UUID: {vm_uuid}")
        return self.state_dir / f"{RECORD_PREFIX}{vm_uuid}"

    def backup_path(self, vm_uuid: str) -> Path:
        return self.record_path(vm_uuid).with_name(
            f"{RECORD_PREFIX}{vm_uuid}{BACKUP_SUFFIX}"
        )

    def exists(self, vm_uuid: str) -> bool:
        return self.record_path(vm_uuid).exists()

    def create(self, record: MigrationRecord) -> Path:
        """Write a new record; RecordExistsError if one is already there."""
        path = self.record_path(record.vm_uuid)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            raise RecordExistsError(record.vm_uuid) from None

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(format_record(record.to_fields()))

        self.logger.info("Migration record created", vm_uuid=record.vm_uuid, path=str(path))
        return path

    def append(self, vm_uuid: str, key: str, value: str) -> None:
        """Add or overwrite one field of an existing record."""
        if key not in RECORD_FIELDS:
            raise RecordFormatError(f"unknown key {key!r}")
        if "\n" in value or "\r" in value:
            raise RecordFormatError(f"value for {key!r} spans lines")

        fields = self.read(vm_uuid)
        fields[key] = value
        self._write_atomic(self.record_path(vm_uuid), format_record(fields))
        self.logger.info("Migration record updated", vm_uuid=vm_uuid, key=key, value=value)

    def read(self, vm_uuid: str) -> dict[str, str]:
        """Parse the record without checking for required fields."""
        path = self.record_path(vm_uuid)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise RecordNotFoundError(vm_uuid) from None
        try:
            return parse_record(text)
        except RecordFormatError as e:
            raise RecordFormatError(f"{path}: {e}") from e

    def load(self, vm_uuid: str) -> MigrationRecord:
        """Load a complete record; fails closed on missing required fields."""
        record = MigrationRecord.from_fields(vm_uuid, self.read(vm_uuid))
        missing = record.missing_fields()
        if missing:
            raise IncompleteRecordError(vm_uuid, missing)
        return record

    def delete(self, vm_uuid: str) -> None:
        """Remove the record and its metadata backup."""
        self.backup_path(vm_uuid).unlink(missing_ok=True)
        self.record_path(vm_uuid).unlink(missing_ok=True)
        self.logger.info("Migration record deleted", vm_uuid=vm_uuid)

    def list_vms(self) -> list[str]:
        """VM ids with an active record, oldest first."""
        if not self.state_dir.is_dir():
            return []
        records = [
            path
            for path in self.state_dir.glob(f"{RECORD_PREFIX}*")
            if path.is_file() and not path.name.endswith(BACKUP_SUFFIX)
        ]
        records.sort(key=lambda path: path.stat().st_mtime)
        return [path.name[len(RECORD_PREFIX):] for path in records]

    def save_backup(self, vm_uuid: str, metadata: dict[str, Any]) -> Path:
        path = self.backup_path(vm_uuid)
        self._write_atomic(path, json.dumps(metadata, indent=2, sort_keys=True) + "\n")
        self.logger.info("VM metadata backup saved", vm_uuid=vm_uuid, path=str(path))
        return path

    def load_backup(self, vm_uuid: str) -> dict[str, Any] | None:
        """The saved VM descriptor, or None when no backup was written."""
        path = self.backup_path(vm_uuid)
        if not path.exists():
            return None
        try:
            metadata = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise RecordFormatError(f"{path}: invalid JSON: {e}") from e
        if not isinstance(metadata, dict):
            raise RecordFormatError(f"{path}: expected a JSON object")
        return metadata

    def _write_atomic(self, path: Path, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=".tmp-vm-migration-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
