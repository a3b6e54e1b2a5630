"""Abstract collaborators the orchestration core depends on."""

from .agent import GuestAgent
from .config_store import ConfigStore
from .hypervisor import HypervisorControl
from .monitor import ControlChannel
from .storage import StorageBackend, StoragePool, VolumeCapabilities

__all__ = [
    "ConfigStore",
    "ControlChannel",
    "GuestAgent",
    "HypervisorControl",
    "StorageBackend",
    "StoragePool",
    "VolumeCapabilities",
]
