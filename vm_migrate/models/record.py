"""Migration record model.

A record is persisted as flat ``key=value`` text so operators can read and
repair it by hand. Values are kept as strings in the file; this model owns the
conversion of the few typed fields.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

REQUIRED_RECORD_FIELDS: tuple[str, ...] = (
    "vm_alias",
    "source_cn_hostname",
    "source_cn_address",
    "target_cn_hostname",
    "target_cn_admin_address",
    "target_cn_address",
    "has_delegate_dataset",
)

OPTIONAL_RECORD_FIELDS: tuple[str, ...] = (
    "source_cn_uuid",
    "target_cn_uuid",
    "snapshot_name",
    "quota",
    "created_at",
)

RECORD_FIELDS: tuple[str, ...] = REQUIRED_RECORD_FIELDS + OPTIONAL_RECORD_FIELDS


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class MigrationRecord(BaseModel):
    """Durable state of one in-flight migration."""

    vm_uuid: str
    vm_alias: str | None = None
    source_cn_uuid: str | None = None
    source_cn_hostname: str | None = None
    source_cn_address: str | None = None
    target_cn_uuid: str | None = None
    target_cn_hostname: str | None = None
    target_cn_admin_address: str | None = None
    # address the source streams datasets to (overlay when reachable)
    target_cn_address: str | None = None
    has_delegate_dataset: bool | None = None
    snapshot_name: str | None = None
    quota: str | None = None
    created_at: str | None = Field(default_factory=_now)

    def missing_fields(self) -> list[str]:
        """Required fields that are absent, in file order."""
        return [name for name in REQUIRED_RECORD_FIELDS if getattr(self, name) in (None, "")]

    def to_fields(self) -> dict[str, str]:
        """Serialize to the string key/value pairs written to disk."""
        fields: dict[str, str] = {}
        for name in RECORD_FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            fields[name] = str(value)
        return fields

    @classmethod
    def from_fields(cls, vm_uuid: str, fields: dict[str, str]) -> "MigrationRecord":
        data: dict[str, object] = {"vm_uuid": vm_uuid, "created_at": None}
        for name, value in fields.items():
            if name == "has_delegate_dataset":
                data[name] = value.strip().lower() == "true"
            else:
                data[name] = value
        return cls(**data)
