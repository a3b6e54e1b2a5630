"""Snapshot lifecycle management for snapkeeper VMs."""

from .controller import RollbackPinning, SnapshotController, rollback_unused_volumes

__all__ = [
    "RollbackPinning",
    "SnapshotController",
    "rollback_unused_volumes",
]
