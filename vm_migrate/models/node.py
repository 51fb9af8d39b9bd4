"""Compute node models."""

from pydantic import BaseModel, ConfigDict


class NodeDescriptor(BaseModel):
    """A compute node as seen by the migration tooling."""

    model_config = ConfigDict(frozen=True)

    uuid: str = ""
    hostname: str
    admin_address: str
    overlay_address: str | None = None

    @property
    def label(self) -> str:
        return f"{self.hostname} ({self.admin_address})"
