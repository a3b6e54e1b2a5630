#!/usr/bin/env python3
"""
Live state save driver.

Drives QEMU's asynchronous ``savevm-start`` / ``query-savevm`` /
``savevm-end`` protocol. The save streams RAM while the guest keeps running
until the space left in the state volume equals the remaining RAM, then
pauses the guest to copy the rest. State volumes are therefore sized at
twice the current memory plus a reserve for device state.
"""

import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from .exceptions import ChannelError
from .interfaces.monitor import ControlChannel
from .interfaces.storage import StorageBackend
from .models import parse_volume_id
from .settings import SnapshotSettings

log = structlog.get_logger(__name__)

_BYTE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")


class SaveState(Enum):
    """Progress of a single state save."""

    IDLE = "idle"
    REQUESTED = "requested"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"


def state_volume_size_mb(memory_mb: int, reserve_mb: int = 500) -> int:
    """Size of a state volume for a VM currently using *memory_mb*."""
    return memory_mb * 2 + reserve_mb


def render_bytes(value: Optional[int]) -> str:
    size = float(value or 0)
    for unit in _BYTE_UNITS:
        if size < 1024 or unit == _BYTE_UNITS[-1]:
            break
        size /= 1024
    if unit == "B":
        return f"{int(size)} B"
    return f"{size:.2f} {unit}"


def render_duration(seconds: float) -> str:
    seconds = max(seconds, 0)
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"


class LiveStateSaver:
    """Save a running VM's RAM and device state into a pre-allocated volume."""

    def __init__(
        self,
        channel: ControlChannel,
        storage: StorageBackend,
        settings: Optional[SnapshotSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.channel = channel
        self.storage = storage
        self.settings = settings or SnapshotSettings()
        self._sleep = sleep
        self._states: Dict[int, SaveState] = {}

    def state(self, vmid: int) -> SaveState:
        """Progress of the most recent save of VM *vmid*."""
        return self._states.get(vmid, SaveState.IDLE)

    def begin(self, vmid: int, volid: Optional[str] = None) -> Optional[str]:
        """Start the save and block until it completes.

        Without *volid* only device state is captured and the call returns
        as soon as QEMU accepts the request.

        Raises:
            ChannelError: QEMU reported a failure or an unexpected status
        """
        self._states[vmid] = SaveState.REQUESTED

        if volid is None:
            try:
                self.channel.send(vmid, "savevm-start")
            except Exception:
                self._states[vmid] = SaveState.FAILED
                raise
            self._states[vmid] = SaveState.COMPLETED
            return None

        try:
            path = self.storage.path(volid)
            self.storage.activate_volumes([volid])
            storage_id, _volname = parse_volume_id(volid, noerr=True)

            self.channel.send(vmid, "savevm-start", {"statefile": path})
            log.info("saving_vm_state", vmid=vmid, storage=storage_id, volume=volid)

            self._states[vmid] = SaveState.POLLING
            self._poll(vmid)
        except Exception:
            self._states[vmid] = SaveState.FAILED
            raise

        self._states[vmid] = SaveState.COMPLETED
        return volid

    def _poll(self, vmid: int) -> Dict[str, Any]:
        verbose_rounds = self.settings.verbose_report_rounds
        every = self.settings.report_every_rounds
        rounds = 0

        while True:
            rounds += 1
            stat = self.channel.send(vmid, "query-savevm") or {}
            status = stat.get("status")

            if not status:
                raise ChannelError(f"savevm not active on VM {vmid}")

            if status == "active":
                if rounds < verbose_rounds or rounds % every == 0:
                    log.info("savevm_progress", vmid=vmid, **self._render(stat))
                if rounds == verbose_rounds:
                    log.info("savevm_progress_throttled", vmid=vmid, every_rounds=every)
                self._sleep(self.settings.poll_interval_seconds)
                continue

            if status == "completed":
                log.info("savevm_completed", vmid=vmid, **self._render(stat))
                return stat

            if status == "failed":
                err = stat.get("error") or "unknown error"
                raise ChannelError(f"unable to save VM {vmid} state and RAM - {err}")

            raise ChannelError(f"query-savevm on VM {vmid} returned unexpected status '{status}'")

    @staticmethod
    def _render(stat: Dict[str, Any]) -> Dict[str, str]:
        return {
            "saved": render_bytes(stat.get("bytes")),
            "duration": render_duration((stat.get("total-time") or 0) / 1000),
        }

    def end(self, vmid: int, volid: Optional[str] = None) -> None:
        """Finish a save (or abandon it). Failures are logged, never raised."""
        try:
            self.channel.send(vmid, "savevm-end")
            if volid:
                self.storage.deactivate_volumes([volid])
        except Exception as e:
            log.warning("savevm_end_failed", vmid=vmid, volume=volid, error=str(e))

    def wait_after_freeze(self, vmid: int) -> None:
        """Wait for the asynchronous ``savevm-end`` to drain pending bytes."""
        while True:
            stat = self.channel.send(vmid, "query-savevm") or {}
            if not stat.get("bytes"):
                return
            log.info("savevm_not_finished", vmid=vmid, pending=render_bytes(stat.get("bytes")))
            self._sleep(self.settings.poll_interval_seconds)
