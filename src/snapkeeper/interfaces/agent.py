"""Interface for guest agent availability checks."""

from abc import ABC, abstractmethod

from ..models import VMConfig


class GuestAgent(ABC):
    """Reports whether the in-guest agent can service requests."""

    @abstractmethod
    def is_agent_reachable(self, vmid: int, config: VMConfig) -> bool:
        pass
