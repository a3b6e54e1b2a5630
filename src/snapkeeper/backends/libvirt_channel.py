"""QEMU monitor and guest agent access through libvirt."""

import json
from typing import Any, Callable, Dict, Optional

import structlog

try:
    import libvirt
    import libvirt_qemu
except ImportError:
    libvirt = None
    libvirt_qemu = None

from ..exceptions import ChannelError
from ..interfaces.agent import GuestAgent
from ..interfaces.monitor import ControlChannel
from ..models import VMConfig

log = structlog.get_logger(__name__)


class LibvirtChannel(ControlChannel, GuestAgent):
    """Send QMP commands via libvirt's monitor passthrough.

    Commands starting with ``guest-`` go to the guest agent instead.
    """

    def __init__(
        self,
        uri: str = "qemu:///system",
        domain_name: Callable[[int], str] = str,
        agent_timeout: int = 10,
    ):
        self.uri = uri
        self.domain_name = domain_name
        self.agent_timeout = agent_timeout
        self._conn = None

    @property
    def conn(self):
        if self._conn is None:
            if libvirt is None:
                raise RuntimeError("libvirt-python not installed")
            try:
                self._conn = libvirt.open(self.uri)
            except libvirt.libvirtError as e:
                raise ConnectionError(f"Failed to connect to libvirt at {self.uri}: {e}")
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def send(self, vmid: int, command: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        payload: Dict[str, Any] = {"execute": command}
        if arguments:
            payload["arguments"] = arguments

        conn = self.conn
        try:
            domain = conn.lookupByName(self.domain_name(vmid))
            if command.startswith("guest-"):
                raw = libvirt_qemu.qemuAgentCommand(
                    domain, json.dumps(payload), self.agent_timeout, 0
                )
            else:
                raw = libvirt_qemu.qemuMonitorCommand(domain, json.dumps(payload), 0)
        except libvirt.libvirtError as e:
            raise ChannelError(f"VM {vmid}: '{command}' failed - {e}") from e

        reply = json.loads(raw) if raw else {}
        if "error" in reply:
            error = reply["error"]
            desc = error.get("desc") if isinstance(error, dict) else error
            raise ChannelError(f"VM {vmid}: '{command}' failed - {desc}")
        return reply.get("return")

    def is_agent_reachable(self, vmid: int, config: VMConfig) -> bool:
        if not config.agent:
            return False
        try:
            self.send(vmid, "guest-ping")
        except ChannelError as e:
            log.debug("guest_agent_unreachable", vmid=vmid, error=str(e))
            return False
        return True
