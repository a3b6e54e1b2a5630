"""
Per-volume eligibility for replication, backup and storage features.

Every function here is pure over the config and the storage backend's
answers; errors are raised to the caller, never logged.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .exceptions import PolicyViolationError
from .interfaces.storage import StorageBackend
from .models import Drive, GuestConfig, VMConfig, is_raw_path, parse_volume_id

VM_DISK_CONTENT = "images"
UEFI_BIOS = "ovmf"


@dataclass
class VolumeAttributes:
    """Attributes of one volume merged over every place it is referenced."""

    cdrom: bool = True
    replicate: bool = False


@dataclass
class BackupVolume:
    """Backup decision for one attached volume."""

    key: str
    included: bool
    reason: str
    drive: Drive


def _merge(attrs: Dict[str, VolumeAttributes], drive: Drive) -> None:
    entry = attrs.setdefault(drive.volume, VolumeAttributes())
    if not drive.is_cdrom():
        entry.cdrom = False
    if drive.replicate:
        entry.replicate = True


def collect_volume_attributes(config: VMConfig) -> Dict[str, VolumeAttributes]:
    """Every volume referenced by the config, its snapshots and unused list.

    A volume counts as removable media only if all references are, and
    requests replication if any reference does.
    """
    attrs: Dict[str, VolumeAttributes] = {}
    owners: List[GuestConfig] = [config, *config.snapshots.values()]
    for owner in owners:
        for _key, drive in owner.foreach_volume(include_vmstate=True):
            _merge(attrs, drive)
    for volid in config.unused:
        _merge(attrs, Drive(volume=volid))
    return attrs


def is_replicable(
    storage: StorageBackend,
    vmid: int,
    volid: str,
    attrs: VolumeAttributes,
    cleanup: bool = False,
    noerr: bool = False,
) -> bool:
    """Decide whether *volid* takes part in replication of VM *vmid*.

    ``cleanup`` and ``noerr`` both turn policy errors into a plain exclusion.
    """
    relaxed = cleanup or noerr

    if attrs.cdrom:
        return False

    if not cleanup and not attrs.replicate:
        return False

    if is_raw_path(volid):
        if not attrs.replicate or relaxed:
            return False
        raise PolicyViolationError(f"unable to replicate local file/device '{volid}'")

    storage_id, _volname = parse_volume_id(volid, noerr=noerr)
    if not storage_id:
        return False

    if storage.storage_config(storage_id).shared:
        return False

    owner = storage.resolve_owner(volid)
    if owner is None or owner != vmid:
        return False

    caps = storage.capabilities(volid)
    if caps.content_type != VM_DISK_CONTENT:
        if relaxed:
            return False
        raise PolicyViolationError(
            f"unable to replicate volume '{volid}', type '{caps.content_type}'"
        )

    if not caps.supports_replicate:
        if relaxed:
            return False
        raise PolicyViolationError(f"missing replicate feature on volume '{volid}'")

    return True


def replicatable_volumes(
    storage: StorageBackend,
    vmid: int,
    config: VMConfig,
    cleanup: bool = False,
    noerr: bool = False,
) -> List[str]:
    """Sorted ids of every volume of *config* that must be replicated."""
    result = []
    for volid, attrs in collect_volume_attributes(config).items():
        if is_replicable(storage, vmid, volid, attrs, cleanup=cleanup, noerr=noerr):
            result.append(volid)
    return sorted(result)


def backup_eligibility(key: str, drive: Drive, bios: Optional[str]) -> Tuple[bool, str]:
    """Default backup inclusion of one non-removable volume and the reason for it."""
    included = True if drive.backup is None else drive.backup
    reason = "backup=yes" if included else "backup=no"

    if key.startswith("efidisk") and bios != UEFI_BIOS:
        return False, "efidisk but no OVMF BIOS"

    return included, reason


def backup_volumes(config: GuestConfig) -> List[BackupVolume]:
    volumes = []
    for key, drive in config.foreach_volume():
        if drive.is_cdrom():
            continue
        included, reason = backup_eligibility(key, drive, config.bios)
        volumes.append(BackupVolume(key=key, included=included, reason=reason, drive=drive))
    return volumes


def has_feature(
    storage: StorageBackend,
    feature: str,
    config: GuestConfig,
    snapname: Optional[str] = None,
    running: bool = False,
    backup_only: bool = False,
) -> bool:
    """True if every relevant volume of *config* supports *feature*."""
    for _key, drive in config.foreach_volume():
        if drive.is_cdrom():
            continue
        if backup_only and drive.backup is False:
            continue
        if not storage.volume_has_feature(feature, drive.volume, snapname, running):
            return False
    return True
