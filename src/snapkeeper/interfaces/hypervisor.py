"""Interface for VM process control."""

from abc import ABC, abstractmethod
from typing import Optional

from ..models import VMConfig


class HypervisorControl(ABC):
    """Start/stop and runtime inspection of a VM's QEMU process."""

    @abstractmethod
    def is_running(self, vmid: int) -> bool:
        pass

    @abstractmethod
    def current_machine(self, vmid: int) -> Optional[str]:
        """Machine type the running process was started with."""
        pass

    @abstractmethod
    def running_cpu(self, vmid: int) -> Optional[str]:
        """The ``-cpu`` argument of the running process."""
        pass

    @abstractmethod
    def stop_vm(self, vmid: int, timeout: int) -> None:
        pass

    @abstractmethod
    def start_vm(
        self,
        vmid: int,
        statefile: Optional[str] = None,
        force_machine: Optional[str] = None,
        force_cpu: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    def check_non_migratable_resources(self, config: VMConfig, with_state: bool) -> None:
        """Raise BlockedError if a resource prevents saving the VM state."""
        pass
