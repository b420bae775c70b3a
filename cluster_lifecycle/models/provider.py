"""Data models for provider datacenter and machine configuration objects."""

from typing import Any

from pydantic import BaseModel, Field

from cluster_lifecycle.models.cluster import API_VERSION, PAUSED_ANNOTATION


class DatacenterConfig(BaseModel):
    """Provider datacenter configuration referenced by a cluster spec."""

    kind: str
    name: str
    spec: dict[str, Any] = Field(default_factory=dict)
    paused: bool = Field(default=False, exclude=True)

    def clear_pause_annotation(self) -> None:
        self.paused = False

    def to_manifest(self) -> dict:
        return {
            "apiVersion": API_VERSION,
            "kind": self.kind,
            "metadata": {"name": self.name},
            "spec": self.spec,
        }

    @classmethod
    def from_manifest(cls, obj: dict) -> "DatacenterConfig":
        metadata = obj.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        return cls(
            kind=obj.get("kind", ""),
            name=metadata.get("name", ""),
            spec=obj.get("spec") or {},
            paused=annotations.get(PAUSED_ANNOTATION) == "true",
        )


class MachineConfig(BaseModel):
    """Provider machine configuration shared by one or more machine groups."""

    kind: str
    name: str
    spec: dict[str, Any] = Field(default_factory=dict)

    def to_manifest(self) -> dict:
        return {
            "apiVersion": API_VERSION,
            "kind": self.kind,
            "metadata": {"name": self.name},
            "spec": self.spec,
        }

    @classmethod
    def from_manifest(cls, obj: dict) -> "MachineConfig":
        metadata = obj.get("metadata") or {}
        return cls(
            kind=obj.get("kind", ""), name=metadata.get("name", ""), spec=obj.get("spec") or {}
        )
