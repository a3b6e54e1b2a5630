#!/usr/bin/env python3
"""
Pydantic models for VM configurations, snapshot records and their volumes.
"""

import re
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from snapkeeper.exceptions import BlockedError, NotFoundError, StorageError

# Bus prefix and number of units, in the order volumes are processed.
DRIVE_BUSES: Tuple[Tuple[str, int], ...] = (
    ("ide", 4),
    ("sata", 6),
    ("scsi", 31),
    ("virtio", 16),
)
SINGLE_DRIVES: Tuple[str, ...] = ("efidisk0", "tpmstate0")

_VOLUME_ID_RE = re.compile(r"^([a-z][a-z0-9\-_.]*[a-z0-9]):(.+)$", re.IGNORECASE)
_CLOUDINIT_RE = re.compile(r"vm-\d+-cloudinit")
_LIST_SPLIT_RE = re.compile(r"[,;\s]+")


def valid_volume_keys(reverse: bool = False) -> List[str]:
    """All slot names a volume can be attached to, in processing order."""
    keys = [f"{bus}{i}" for bus, count in DRIVE_BUSES for i in range(count)]
    keys.extend(SINGLE_DRIVES)
    return list(reversed(keys)) if reverse else keys


_VALID_KEYS = frozenset(valid_volume_keys())


def parse_volume_id(volid: str, noerr: bool = False) -> Tuple[Optional[str], Optional[str]]:
    """Split ``storage:volume`` into its parts.

    Raw paths and other unparsable ids return ``(None, None)`` with *noerr*,
    otherwise raise StorageError.
    """
    match = _VOLUME_ID_RE.match(volid or "")
    if match:
        return match.group(1), match.group(2)
    if noerr:
        return None, None
    raise StorageError(f"unable to parse volume ID '{volid}'")


def is_raw_path(volid: str) -> bool:
    """True for volumes given as a plain filesystem path or device."""
    return volid.startswith("/")


def is_cloudinit_volume(volid: str) -> bool:
    return bool(_CLOUDINIT_RE.search(volid))


def split_list(value: Optional[str]) -> List[str]:
    """Split a comma/semicolon/whitespace separated list, dropping empty items."""
    if not value:
        return []
    return [item for item in _LIST_SPLIT_RE.split(value) if item]


def parse_machine(value: Optional[str]) -> Dict[str, str]:
    """Parse a machine string such as ``pc-q35-8.1,viommu=virtio``.

    The first positional item (or an explicit ``type=``) becomes ``type``.
    """
    result: Dict[str, str] = {}
    if not value:
        return result
    for index, part in enumerate(value.split(",")):
        part = part.strip()
        if not part:
            continue
        if "=" in part:
            key, val = part.split("=", 1)
            result[key.strip()] = val.strip()
        elif index == 0:
            result["type"] = part
    return result


class Drive(BaseModel):
    """A volume attached to a slot of a VM."""

    volume: str = Field(description="Storage volume id or raw path")
    media: Literal["disk", "cdrom"] = Field(default="disk")
    backup: Optional[bool] = Field(default=None, description="Include in backups; None = default")
    replicate: bool = Field(default=True, description="Include in storage replication")
    size: Optional[str] = Field(default=None)

    @field_validator("volume")
    @classmethod
    def volume_must_be_set(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Drive volume cannot be empty")
        return v.strip()

    @property
    def is_cloudinit(self) -> bool:
        return self.media == "cdrom" and is_cloudinit_volume(self.volume)

    def is_cdrom(self, exclude_cloudinit: bool = False) -> bool:
        """Removable medium check; cloud-init disks count unless excluded."""
        if exclude_cloudinit and self.is_cloudinit:
            return False
        return self.media == "cdrom"


class GuestConfig(BaseModel):
    """Settings shared by the live config and every snapshot of it."""

    drives: Dict[str, Drive] = Field(default_factory=dict)
    memory: int = Field(default=512, ge=16, description="Current memory in MB")
    machine: Optional[str] = None
    bios: str = Field(default="seabios")
    vmgenid: Optional[str] = None
    agent: bool = Field(default=False, description="Guest agent enabled")
    cpu: Optional[str] = None
    sockets: int = Field(default=1, ge=1)
    cores: int = Field(default=1, ge=1)
    vcpus: Optional[int] = Field(default=None, ge=1)
    vmstatestorage: Optional[str] = None
    vmstate: Optional[str] = None
    runningmachine: Optional[str] = None
    runningcpu: Optional[str] = None
    description: Optional[str] = None
    parent: Optional[str] = None

    @field_validator("drives")
    @classmethod
    def drive_keys_must_be_valid(cls, v: Dict[str, Drive]) -> Dict[str, Drive]:
        for key in v:
            if key not in _VALID_KEYS:
                raise ValueError(f"invalid drive slot '{key}'")
        return v

    def foreach_volume(self, include_vmstate: bool = False) -> Iterator[Tuple[str, Drive]]:
        """Yield ``(slot, drive)`` in bus order, optionally followed by vmstate."""
        for key in valid_volume_keys():
            drive = self.drives.get(key)
            if drive is not None:
                yield key, drive
        if include_vmstate and self.vmstate:
            yield "vmstate", Drive(volume=self.vmstate)

    def has_cloudinit(self, skip: Optional[str] = None) -> Optional[str]:
        """Slot of the first cloud-init drive, ignoring *skip*."""
        for key, drive in self.foreach_volume():
            if key != skip and drive.is_cloudinit:
                return key
        return None

    def derived_property(self, name: str) -> int:
        if name == "max-cpu":
            return self.vcpus or self.sockets * self.cores
        elif name == "max-memory":  # current usage maximum, not maximum hotpluggable
            return self.memory * 1024 * 1024
        raise ValueError(f"unknown derived property - {name}")


GUEST_FIELDS = frozenset(GuestConfig.model_fields)


class SnapshotRecord(GuestConfig):
    """Immutable copy of a config's guest settings at snapshot time."""

    snaptime: int = Field(default=0, ge=0)


class FleecingSection(BaseModel):
    """Ephemeral images created by a backup run that still need removal."""

    model_config = ConfigDict(populate_by_name=True)

    fleecing_images: Optional[str] = Field(default=None, alias="fleecing-images")

    def volume_ids(self) -> List[str]:
        return split_list(self.fleecing_images)


class SpecialSections(BaseModel):
    """Auxiliary persisted state outside the normal config schema."""

    fleecing: Optional[FleecingSection] = None

    def is_empty(self) -> bool:
        return self.fleecing is None


class VMConfig(GuestConfig):
    """Complete configuration of one VM, including its snapshots."""

    model_config = ConfigDict(populate_by_name=True)

    vmid: int = Field(ge=1)
    lock: Optional[str] = Field(default=None, description="Foreign operation in progress")
    unused: List[str] = Field(default_factory=list)
    snapshots: Dict[str, SnapshotRecord] = Field(default_factory=dict)
    special_sections: SpecialSections = Field(
        default_factory=SpecialSections, alias="special-sections"
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMConfig":
        return cls.model_validate(data)

    def current_view(self) -> "VMConfig":
        """Copy of the config without special sections."""
        return self.model_copy(update={"special_sections": SpecialSections()}, deep=True)

    def assert_unlocked(self) -> None:
        if self.lock:
            raise BlockedError(f"VM {self.vmid} is locked ({self.lock})")

    def get_snapshot(self, snapname: str) -> SnapshotRecord:
        snap = self.snapshots.get(snapname)
        if snap is None:
            raise NotFoundError(f"snapshot '{snapname}' does not exist for VM {self.vmid}")
        return snap

    def snapshot_copy(self, snaptime: int, description: Optional[str] = None) -> SnapshotRecord:
        """Capture the current guest settings as a new snapshot record."""
        data = self.model_dump(include=set(GUEST_FIELDS))
        for key in ("vmstate", "runningmachine", "runningcpu"):
            data.pop(key, None)
        data["description"] = description
        data["snaptime"] = snaptime
        return SnapshotRecord.model_validate(data)

    def restored_from(self, snap: SnapshotRecord) -> "VMConfig":
        """New live config carrying *snap*'s guest settings and this config's bookkeeping."""
        data = snap.model_dump(include=set(GUEST_FIELDS))
        data.pop("vmstate", None)
        restored = VMConfig.model_validate(data | {"vmid": self.vmid})
        restored.unused = list(self.unused)
        restored.snapshots = {name: s.model_copy(deep=True) for name, s in self.snapshots.items()}
        restored.special_sections = self.special_sections.model_copy(deep=True)
        return restored

    def is_volume_referenced(self, volid: str) -> bool:
        """True if the live config or any snapshot still uses *volid*."""
        for owner in [self, *self.snapshots.values()]:
            if owner.vmstate == volid:
                return True
            for _key, drive in owner.foreach_volume():
                if drive.volume == volid:
                    return True
        return False

    def add_unused_volume(self, volid: str, max_unused: int = 256) -> bool:
        """Append *volid* to the unused list; returns False for duplicates."""
        if volid in self.unused:
            return False
        if len(self.unused) >= max_unused:
            raise StorageError(
                f"Too many unused volumes on VM {self.vmid} - please delete them first."
            )
        self.unused.append(volid)
        return True

    # ── fleecing bookkeeping ─────────────────────────────────────────────────

    def pending_fleecing_images(self) -> List[str]:
        fleecing = self.special_sections.fleecing
        return fleecing.volume_ids() if fleecing else []

    def take_fleecing_images(self) -> List[str]:
        """Return and clear the fleecing list, dropping the section once empty."""
        fleecing = self.special_sections.fleecing
        if fleecing is None:
            return []
        volids = fleecing.volume_ids()
        fleecing.fleecing_images = None
        if not fleecing.model_dump(exclude_none=True):
            self.special_sections.fleecing = None
        return volids

    def append_fleecing_images(self, volids: List[str]) -> None:
        current = self.pending_fleecing_images()
        merged = current + [v for v in volids if v not in current]
        if self.special_sections.fleecing is None:
            self.special_sections.fleecing = FleecingSection()
        self.special_sections.fleecing.fleecing_images = ",".join(merged)
