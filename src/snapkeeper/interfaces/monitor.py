"""Interface for the hypervisor control channel (QMP and guest agent)."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class ControlChannel(ABC):
    """Request/response channel into a running VM's QEMU process."""

    @abstractmethod
    def send(self, vmid: int, command: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Execute *command* and return its result.

        Commands prefixed with ``guest-`` are routed to the guest agent.
        Raises ChannelError when the command fails.
        """
        pass
