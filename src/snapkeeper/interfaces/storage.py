"""Interface for the storage backend that owns VM volumes."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class StoragePool:
    """Storage pool metadata relevant to placement decisions."""

    storage_id: str
    shared: bool = False
    path_based: bool = False


@dataclass
class VolumeCapabilities:
    """Storage-reported properties of a single volume."""

    shared: bool = False
    path_based: bool = False
    content_type: str = "images"
    supports_replicate: bool = False


class StorageBackend(ABC):
    """Abstract interface for volume operations."""

    @abstractmethod
    def storage_config(self, storage_id: str) -> StoragePool:
        """Pool metadata. Raises NotFoundError for unknown pools."""
        pass

    @abstractmethod
    def activate_storages(self, storage_ids: List[str]) -> None:
        pass

    @abstractmethod
    def allocate(
        self, storage_id: str, vmid: int, fmt: str, name: str, size_kb: int
    ) -> str:
        """Allocate a volume and return its id."""
        pass

    @abstractmethod
    def free(self, volid: str) -> None:
        pass

    @abstractmethod
    def path(self, volid: str) -> str:
        """Filesystem or device path of a volume."""
        pass

    @abstractmethod
    def activate_volumes(self, volids: List[str]) -> None:
        pass

    @abstractmethod
    def deactivate_volumes(self, volids: List[str]) -> None:
        pass

    @abstractmethod
    def snapshot_volume(self, volid: str, snapname: str) -> None:
        pass

    @abstractmethod
    def delete_volume_snapshot(self, volid: str, snapname: str) -> None:
        pass

    @abstractmethod
    def rollback_volume_snapshot(self, volid: str, snapname: str) -> None:
        pass

    @abstractmethod
    def rollback_possible(self, volid: str, snapname: str) -> List[str]:
        """Reasons rolling *volid* back to *snapname* is impossible (empty if possible)."""
        pass

    @abstractmethod
    def capabilities(self, volid: str) -> VolumeCapabilities:
        pass

    @abstractmethod
    def resolve_owner(self, volid: str) -> Optional[int]:
        """VM id owning *volid*, or None for unowned volumes."""
        pass

    @abstractmethod
    def volume_has_feature(
        self,
        feature: str,
        volid: str,
        snapname: Optional[str] = None,
        running: bool = False,
    ) -> bool:
        pass
