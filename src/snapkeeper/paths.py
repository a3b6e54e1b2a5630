"""
Filesystem locations used by the config-store and process backends.

The orchestration core never touches these paths; a ``Paths`` value is built
once and injected into the backends that need it.
"""

import os
from dataclasses import dataclass
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Paths:
    """Directory roots for VM configs, lock files and QEMU pid files."""

    config_dir: Path
    lock_dir: Path
    run_dir: Path

    @classmethod
    def from_env(cls) -> "Paths":
        """Build from ``SNAPKEEPER_*_DIR`` variables, falling back to system defaults."""
        paths = cls(
            config_dir=Path(os.getenv("SNAPKEEPER_CONFIG_DIR", "/etc/snapkeeper/qemu-server")),
            lock_dir=Path(os.getenv("SNAPKEEPER_LOCK_DIR", "/var/lock/snapkeeper")),
            run_dir=Path(os.getenv("SNAPKEEPER_RUN_DIR", "/run/qemu-server")),
        )
        log.debug("paths_resolved", config_dir=str(paths.config_dir), lock_dir=str(paths.lock_dir))
        return paths

    # ── per-VM files ─────────────────────────────────────────────────────────

    def config_file(self, vmid: int) -> Path:
        """YAML config for *vmid*."""
        return self.config_dir / f"{vmid}.yaml"

    def lock_file(self, vmid: int) -> Path:
        """Lock file guarding every config mutation of *vmid*."""
        return self.lock_dir / f"lock-{vmid}.conf"

    def pid_file(self, vmid: int) -> Path:
        """Pid file written by the QEMU process of *vmid*."""
        return self.run_dir / f"{vmid}.pid"

    def ensure_dirs(self) -> None:
        """Create the config and lock directories if missing."""
        for d in (self.config_dir, self.lock_dir):
            d.mkdir(parents=True, exist_ok=True)
