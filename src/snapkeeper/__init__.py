"""
snapkeeper - snapshot, live-state and fleecing image lifecycle for QEMU VMs.

Orchestrates a VM config store, a storage backend, the QEMU control channel
and the guest agent to create, delete and roll back snapshots, and to keep
track of the ephemeral images backups leave behind.
"""

__version__ = "0.1.0"

from snapkeeper.fleecing import FleecingManager
from snapkeeper.models import Drive, SnapshotRecord, VMConfig
from snapkeeper.savevm import LiveStateSaver
from snapkeeper.settings import SnapshotSettings
from snapkeeper.snapshots import SnapshotController

__all__ = [
    "Drive",
    "FleecingManager",
    "LiveStateSaver",
    "SnapshotController",
    "SnapshotRecord",
    "SnapshotSettings",
    "VMConfig",
    "__version__",
]
