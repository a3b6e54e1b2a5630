"""Inspection of a VM's running QEMU process via its pid file."""

from typing import List, Optional

import psutil
import structlog

from ..models import parse_machine
from ..paths import Paths

log = structlog.get_logger(__name__)


def _option_value(cmdline: List[str], option: str) -> Optional[str]:
    try:
        index = cmdline.index(option)
    except ValueError:
        return None
    if index + 1 < len(cmdline):
        return cmdline[index + 1]
    return None


class QemuProcessInspector:
    """Find a VM's QEMU process and read the arguments it was started with."""

    def __init__(self, paths: Paths):
        self.paths = paths

    def cmdline(self, vmid: int) -> Optional[List[str]]:
        """Command line of the live QEMU process of *vmid*, or None."""
        pid_file = self.paths.pid_file(vmid)
        try:
            pid = int(pid_file.read_text().strip())
        except (OSError, ValueError) as exc:
            log.debug("pid_file_unreadable", vmid=vmid, path=str(pid_file), error=str(exc))
            return None

        try:
            cmdline = psutil.Process(pid).cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

        # a recycled pid belongs to some other process
        if _option_value(cmdline, "-id") != str(vmid):
            return None
        return cmdline

    def is_running(self, vmid: int) -> bool:
        return self.cmdline(vmid) is not None

    def running_cpu(self, vmid: int) -> Optional[str]:
        cmdline = self.cmdline(vmid)
        return _option_value(cmdline, "-cpu") if cmdline else None

    def current_machine(self, vmid: int) -> Optional[str]:
        cmdline = self.cmdline(vmid)
        if not cmdline:
            return None
        return parse_machine(_option_value(cmdline, "-machine")).get("type")
