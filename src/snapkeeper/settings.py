#!/usr/bin/env python3
"""
Pydantic settings for snapshot and state-save tunables.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class SnapshotSettings(BaseModel):
    """Tunables for the snapshot controller and live state save driver."""

    poll_interval_seconds: float = Field(
        default=1.0, gt=0, description="Delay between query-savevm polls"
    )
    verbose_report_rounds: int = Field(
        default=60, ge=0, description="Polls reported individually before throttling"
    )
    report_every_rounds: int = Field(
        default=10, ge=1, description="Report interval (in polls) once throttled"
    )
    state_reserve_mb: int = Field(
        default=500, ge=0, description="Extra MB reserved in state volumes for device state"
    )
    legacy_machine: str = Field(
        default="pc-i440fx-1.4", description="Machine assumed for snapshots without one"
    )
    fallback_storage: str = Field(
        default="local", description="State storage used when the VM has no volumes"
    )
    stop_timeout_seconds: int = Field(
        default=5, ge=0, description="Grace period when stopping a VM for rollback"
    )
    max_unused_volumes: int = Field(
        default=256, ge=1, description="Capacity of a config's unused volume list"
    )

    @field_validator("legacy_machine", "fallback_storage")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v.strip()

    @classmethod
    def load(cls, path: Path) -> "SnapshotSettings":
        """Load settings from a YAML file."""
        import yaml

        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        data = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(data)

    def save(self, path: Path) -> None:
        """Save settings to a YAML file."""
        import yaml

        path.write_text(yaml.dump(self.model_dump(), default_flow_style=False, sort_keys=False))
