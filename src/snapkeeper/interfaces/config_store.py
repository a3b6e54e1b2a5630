"""Interface for the per-VM configuration store."""

from abc import ABC, abstractmethod
from typing import Callable, ContextManager, Optional

from ..models import VMConfig


class ConfigStore(ABC):
    """Loads and writes VM configs; all writes happen under ``lock(vmid)``."""

    @abstractmethod
    def lock(self, vmid: int) -> ContextManager[None]:
        """Exclusive, blocking lock for one VM. Re-entrant for the holding thread."""
        pass

    @abstractmethod
    def load(self, vmid: int) -> VMConfig:
        """Load a config. Raises NotFoundError if none exists."""
        pass

    @abstractmethod
    def write(self, vmid: int, config: VMConfig) -> None:
        """Persist a config. Callers must hold ``lock(vmid)``."""
        pass

    def locked_update(
        self, vmid: int, fn: Callable[[VMConfig], Optional[VMConfig]]
    ) -> VMConfig:
        """Load, transform and write back a config while holding its lock.

        *fn* may mutate the config in place and return None.
        """
        with self.lock(vmid):
            config = self.load(vmid)
            updated = fn(config)
            if updated is None:
                updated = config
            self.write(vmid, updated)
            return updated
