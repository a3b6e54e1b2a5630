"""Storage selection for ephemeral state volumes and fleecing images."""

from typing import List, Optional

from .interfaces.storage import StorageBackend
from .models import VMConfig, parse_volume_id

DEFAULT_FALLBACK_STORAGE = "local"


def storages_used_by_vm(config: VMConfig) -> List[str]:
    """Sorted storage ids backing the VM's non-removable volumes."""
    storage_ids = set()
    for _key, drive in config.foreach_volume():
        if drive.is_cdrom():
            continue
        storage_id, _volname = parse_volume_id(drive.volume, noerr=True)
        if storage_id:
            storage_ids.add(storage_id)
    return sorted(storage_ids)


def find_vmstate_storage(
    config: VMConfig,
    storage: StorageBackend,
    fallback: str = DEFAULT_FALLBACK_STORAGE,
) -> str:
    """Pick the storage that should hold a VM's state volume.

    Order: the configured ``vmstatestorage``, then a shared storage the VM
    already uses, then a local one, then *fallback*. Within each class a
    path-based storage is preferred over a block-based one.
    """
    if config.vmstatestorage:
        return config.vmstatestorage

    shared: Optional[str] = None
    local: Optional[str] = None

    for storage_id in storages_used_by_vm(config):
        pool = storage.storage_config(storage_id)
        if pool.shared:
            if shared is None or pool.path_based:
                shared = storage_id
        else:
            if local is None or pool.path_based:
                local = storage_id

    if shared is not None:
        return shared
    if local is not None:
        return local
    return fallback
