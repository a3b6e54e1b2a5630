#!/usr/bin/env python3
"""Snapshot create / delete / rollback for QEMU VMs."""

import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from ..eligibility import has_feature
from ..exceptions import BlockedError, NotFoundError, StorageError
from ..interfaces.agent import GuestAgent
from ..interfaces.config_store import ConfigStore
from ..interfaces.hypervisor import HypervisorControl
from ..interfaces.monitor import ControlChannel
from ..interfaces.storage import StorageBackend
from ..logging import get_logger, log_operation
from ..models import (
    GuestConfig,
    SnapshotRecord,
    VMConfig,
    is_cloudinit_volume,
    parse_machine,
    parse_volume_id,
)
from ..placement import find_vmstate_storage, storages_used_by_vm
from ..savevm import LiveStateSaver, state_volume_size_mb
from ..settings import SnapshotSettings
from ..transaction import RollbackContext

log = get_logger(__name__)

RESERVED_SNAPSHOT_NAMES = frozenset({"current"})


@dataclass
class RollbackPinning:
    """Machine and CPU the VM must be resumed with after a rollback."""

    old_machine: Optional[str] = None
    force_machine: Optional[str] = None
    force_cpu: Optional[str] = None


class SnapshotController:
    """Create, delete and roll back VM snapshots.

    Every operation holds the VM's config lock from start to finish.
    """

    def __init__(
        self,
        store: ConfigStore,
        storage: StorageBackend,
        channel: ControlChannel,
        hypervisor: HypervisorControl,
        agent: GuestAgent,
        settings: Optional[SnapshotSettings] = None,
        saver: Optional[LiveStateSaver] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.storage = storage
        self.channel = channel
        self.hypervisor = hypervisor
        self.agent = agent
        self.settings = settings or SnapshotSettings()
        self.saver = saver or LiveStateSaver(channel, storage, self.settings)
        self._clock = clock

    # ── create ───────────────────────────────────────────────────────────────

    def create(
        self,
        vmid: int,
        snapname: str,
        save_vmstate: bool = False,
        description: Optional[str] = None,
        state_storage: Optional[str] = None,
    ) -> SnapshotRecord:
        """Take a snapshot of every non-removable volume of VM *vmid*.

        Args:
            vmid: VM to snapshot
            snapname: Name of the new snapshot
            save_vmstate: Also save RAM and device state (running VMs only)
            description: Optional description stored with the snapshot
            state_storage: Storage for the state volume; chosen automatically if unset

        Raises:
            BlockedError: Name already used, config locked or VM state not saveable
            ChannelError: Saving the VM state failed
            StorageError: A volume snapshot failed
        """
        with log_operation(log, "snapshot_create", vmid=vmid, snapname=snapname) as oplog:
            with self.store.lock(vmid):
                config = self.store.load(vmid)
                config.assert_unlocked()
                self._assert_new_snapshot_name(config, snapname)

                running = self.hypervisor.is_running(vmid)
                save_vmstate = save_vmstate and running
                if save_vmstate:
                    self.hypervisor.check_non_migratable_resources(config, True)

                freeze = self._freeze_needed(vmid, config, running, save_vmstate)

                snap = config.snapshot_copy(int(self._clock()), description)
                snap.parent = config.parent

                with RollbackContext(f"snapshot '{snapname}' of VM {vmid}") as ctx:
                    if save_vmstate:
                        volid = self._save_vmstate(vmid, config, snap, snapname, state_storage)
                        ctx.add_action(
                            f"free state volume {volid}", lambda: self.storage.free(volid)
                        )

                    self._activate_storages(snap)
                    self._snapshot_volumes(vmid, snap, snapname, running, freeze, ctx)

                    config.snapshots[snapname] = snap
                    config.parent = snapname
                    self.store.write(vmid, config)
                    ctx.commit()

            oplog.info("snapshot_created", vmstate=snap.vmstate)
            return snap

    def _assert_new_snapshot_name(self, config: VMConfig, snapname: str) -> None:
        if not snapname or not snapname.strip():
            raise BlockedError("snapshot name cannot be empty")
        if snapname in RESERVED_SNAPSHOT_NAMES:
            raise BlockedError(f"invalid snapshot name '{snapname}'")
        if snapname in config.snapshots:
            raise BlockedError(f"snapshot name '{snapname}' already used on VM {config.vmid}")

    def _freeze_needed(
        self, vmid: int, config: VMConfig, running: bool, save_vmstate: bool
    ) -> bool:
        if save_vmstate or not running or not config.agent:
            return False
        return self.agent.is_agent_reachable(vmid, config)

    def _snapshot_volumes(
        self,
        vmid: int,
        snap: SnapshotRecord,
        snapname: str,
        running: bool,
        freeze: bool,
        ctx: RollbackContext,
    ) -> None:
        try:
            if freeze:
                self._fsfreeze(vmid, "guest-fsfreeze-freeze")
            if running:
                self.saver.begin(vmid, snap.vmstate)

            for key, drive in snap.foreach_volume():
                if drive.is_cdrom():
                    continue
                log.info("snapshotting_volume", vmid=vmid, drive=key, volume=drive.volume)
                self.storage.snapshot_volume(drive.volume, snapname)
                ctx.add_action(
                    f"delete snapshot '{snapname}' of {drive.volume}",
                    lambda volid=drive.volume: self.storage.delete_volume_snapshot(volid, snapname),
                )
        finally:
            if running:
                self.saver.end(vmid, snap.vmstate)
            if freeze:
                self._fsfreeze(vmid, "guest-fsfreeze-thaw")

        if freeze:
            self.saver.wait_after_freeze(vmid)

    def _fsfreeze(self, vmid: int, command: str) -> None:
        try:
            self.channel.send(vmid, command)
        except Exception as e:
            log.warning("fsfreeze_failed", vmid=vmid, command=command, error=str(e))

    def _save_vmstate(
        self,
        vmid: int,
        config: VMConfig,
        target: GuestConfig,
        name: str,
        state_storage: Optional[str],
    ) -> str:
        """Allocate a state volume and pin machine and CPU on *target*."""
        storage_id = state_storage or find_vmstate_storage(
            config, self.storage, self.settings.fallback_storage
        )
        self.storage.activate_storages([storage_id])

        size_mb = state_volume_size_mb(config.memory, self.settings.state_reserve_mb)
        volname = f"vm-{vmid}-state-{name}"
        if self.storage.storage_config(storage_id).path_based:
            volname += ".raw"

        volid = self.storage.allocate(storage_id, vmid, "raw", volname, size_mb * 1024)
        log.info("state_volume_allocated", vmid=vmid, volume=volid, size_mb=size_mb)

        target.vmstate = volid
        target.runningmachine = self.hypervisor.current_machine(vmid)
        # exact -cpu argument, so custom CPU models survive a config change
        target.runningcpu = self.hypervisor.running_cpu(vmid)
        return volid

    def _activate_storages(self, snap: SnapshotRecord) -> None:
        storage_ids = set(storages_used_by_vm(snap))
        if snap.vmstate:
            storage_id, _volname = parse_volume_id(snap.vmstate, noerr=True)
            if storage_id:
                storage_ids.add(storage_id)
        if storage_ids:
            self.storage.activate_storages(sorted(storage_ids))

    def save_suspend_state(self, vmid: int, state_storage: Optional[str] = None) -> str:
        """Allocate a state volume for suspend-to-disk and record it on the live config.

        Only allocates and records; the volume stays empty until the caller
        runs ``LiveStateSaver.begin(vmid, volid)`` with the returned id.
        """
        with self.store.lock(vmid):
            config = self.store.load(vmid)
            config.assert_unlocked()
            if not self.hypervisor.is_running(vmid):
                raise BlockedError(f"VM {vmid} is not running")
            self.hypervisor.check_non_migratable_resources(config, True)

            name = f"suspend-{datetime.fromtimestamp(self._clock()).strftime('%Y-%m-%d')}"
            volid = self._save_vmstate(vmid, config, config, name, state_storage)
            self.store.write(vmid, config)
            return volid

    # ── delete ───────────────────────────────────────────────────────────────

    def delete(self, vmid: int, snapname: str, force: bool = False) -> None:
        """Delete snapshot *snapname* and its volume snapshots.

        With *force* storage failures are logged and deletion continues;
        without it the first failure aborts and is raised.
        """
        with log_operation(log, "snapshot_delete", vmid=vmid, snapname=snapname, force=force):
            with self.store.lock(vmid):
                config = self.store.load(vmid)
                if not force:
                    config.assert_unlocked()

                snap = config.snapshots.get(snapname)
                if snap is None:
                    if force:
                        log.warning("snapshot_missing", vmid=vmid, snapname=snapname)
                        return
                    raise NotFoundError(f"snapshot '{snapname}' does not exist for VM {vmid}")

                if snap.vmstate:
                    self._free_vmstate(vmid, snap, force)

                removed = []
                for key, drive in list(snap.foreach_volume()):
                    if drive.is_cdrom():
                        continue
                    try:
                        self.storage.delete_volume_snapshot(drive.volume, snapname)
                    except Exception as e:
                        if not force:
                            # keep what was already removed so a retry does not repeat it
                            self.store.write(vmid, config)
                            raise StorageError(
                                f"unable to delete snapshot '{snapname}' of volume "
                                f"'{drive.volume}' on VM {vmid} - {e}"
                            ) from e
                        log.warning(
                            "volume_snapshot_delete_failed",
                            vmid=vmid,
                            volume=drive.volume,
                            error=str(e),
                        )
                    del snap.drives[key]
                    removed.append(drive.volume)

                for other in config.snapshots.values():
                    if other.parent == snapname:
                        other.parent = snap.parent
                if config.parent == snapname:
                    config.parent = snap.parent
                del config.snapshots[snapname]

                for volid in removed:
                    if not config.is_volume_referenced(volid):
                        self.add_unused_volume(config, volid)

                self.store.write(vmid, config)

    def _free_vmstate(self, vmid: int, snap: SnapshotRecord, force: bool) -> None:
        try:
            self.storage.free(snap.vmstate)
        except Exception as e:
            if not force:
                raise
            log.warning("vmstate_free_failed", vmid=vmid, volume=snap.vmstate, error=str(e))
        snap.vmstate = None

    def add_unused_volume(self, config: VMConfig, volid: str) -> bool:
        """Mark *volid* unused; cloud-init disks are freed right away instead."""
        if is_cloudinit_volume(volid):
            log.info("unused_cloudinit_removed", vmid=config.vmid, volume=volid)
            self.storage.free(volid)
            return False
        return config.add_unused_volume(volid, self.settings.max_unused_volumes)

    # ── rollback ─────────────────────────────────────────────────────────────

    def rollback(self, vmid: int, snapname: str) -> VMConfig:
        """Roll VM *vmid* back to *snapname*.

        The VM is stopped first. If the snapshot carries a saved state the VM
        is resumed from it with the recorded machine and CPU, otherwise it is
        left stopped. Once volumes start rolling back failures are fatal.

        Raises:
            NotFoundError: Unknown snapshot
            BlockedError: Config locked or a volume cannot be rolled back
        """
        with log_operation(log, "snapshot_rollback", vmid=vmid, snapname=snapname):
            with self.store.lock(vmid):
                config = self.store.load(vmid)
                config.assert_unlocked()
                snap = config.get_snapshot(snapname)

                pinning = RollbackPinning(old_machine=config.machine)

                blockers: List[str] = []
                for _key, drive in snap.foreach_volume():
                    if drive.is_cdrom():
                        continue
                    blockers.extend(self.storage.rollback_possible(drive.volume, snapname))
                if blockers:
                    raise BlockedError(
                        f"can't rollback VM {vmid} to snapshot '{snapname}', "
                        f"blocked by: {', '.join(blockers)}"
                    )

                if self.hypervisor.is_running(vmid):
                    self.hypervisor.stop_vm(vmid, self.settings.stop_timeout_seconds)

                for key, drive in snap.foreach_volume():
                    if drive.is_cdrom():
                        continue
                    log.info("rolling_back_volume", vmid=vmid, drive=key, volume=drive.volume)
                    self.storage.rollback_volume_snapshot(drive.volume, snapname)

                unused = rollback_unused_volumes(config, snap)

                restored = config.restored_from(snap)
                self._apply_pinning(restored, snap, pinning)
                restored.parent = snapname
                for volid in unused:
                    self.add_unused_volume(restored, volid)
                self.store.write(vmid, restored)

                if snap.vmstate:
                    self.hypervisor.start_vm(
                        vmid,
                        statefile=snap.vmstate,
                        force_machine=pinning.force_machine,
                        force_cpu=pinning.force_cpu,
                    )
                return restored

    def _apply_pinning(
        self, restored: VMConfig, snap: SnapshotRecord, pinning: RollbackPinning
    ) -> None:
        if restored.runningmachine is not None:
            pinning.force_machine = restored.runningmachine
            restored.runningmachine = None
            if restored.runningcpu is not None:
                pinning.force_cpu = restored.runningcpu
                restored.runningcpu = None
        else:
            # snapshots from before machine pinning was recorded
            machine = parse_machine(restored.machine)
            pinning.force_machine = machine.get("type") or self.settings.legacy_machine
            if snap.vmstate and pinning.old_machine is None:
                restored.machine = None

        if restored.vmgenid:
            restored.vmgenid = str(uuid.uuid4())

    # ── queries ──────────────────────────────────────────────────────────────

    def has_feature(
        self,
        vmid: int,
        feature: str,
        snapname: Optional[str] = None,
        backup_only: bool = False,
    ) -> bool:
        """Check *feature* against the live config or, with *snapname*, a snapshot."""
        config = self.store.load(vmid)
        target: GuestConfig = config.get_snapshot(snapname) if snapname else config
        running = self.hypervisor.is_running(vmid)
        return has_feature(self.storage, feature, target, snapname, running, backup_only)


def rollback_unused_volumes(config: VMConfig, snap: SnapshotRecord) -> List[str]:
    """Volumes the live config uses that the snapshot does not, de-duplicated."""
    snap_volumes = {
        drive.volume
        for _key, drive in snap.foreach_volume()
        if not drive.is_cdrom(exclude_cloudinit=True)
    }
    unused: List[str] = []
    for _key, drive in config.foreach_volume():
        if drive.is_cdrom(exclude_cloudinit=True):
            continue
        if drive.volume not in snap_volumes and drive.volume not in unused:
            unused.append(drive.volume)
    return unused
