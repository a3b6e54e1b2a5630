"""YAML file config store with per-VM lock files."""

import fcntl
import os
import threading
from contextlib import contextmanager
from typing import IO, Dict, Iterator

import structlog
import yaml

from ..exceptions import NotFoundError
from ..interfaces.config_store import ConfigStore
from ..models import VMConfig
from ..paths import Paths

log = structlog.get_logger(__name__)


class YamlConfigStore(ConfigStore):
    """Store each VM config as ``<config_dir>/<vmid>.yaml``.

    ``lock(vmid)`` takes a thread lock and an exclusive ``flock`` on the VM's
    lock file, so it serializes both threads and processes. Nested use by
    the holding thread is allowed.
    """

    def __init__(self, paths: Paths):
        self.paths = paths
        self._guard = threading.Lock()
        self._thread_locks: Dict[int, threading.RLock] = {}
        self._depth: Dict[int, int] = {}
        self._handles: Dict[int, IO[str]] = {}

    def _thread_lock(self, vmid: int) -> threading.RLock:
        with self._guard:
            return self._thread_locks.setdefault(vmid, threading.RLock())

    @contextmanager
    def lock(self, vmid: int) -> Iterator[None]:
        with self._thread_lock(vmid):
            depth = self._depth.get(vmid, 0)
            if depth == 0:
                self.paths.lock_dir.mkdir(parents=True, exist_ok=True)
                handle = open(self.paths.lock_file(vmid), "a+")
                fcntl.flock(handle, fcntl.LOCK_EX)
                self._handles[vmid] = handle
                log.debug("config_locked", vmid=vmid)
            self._depth[vmid] = depth + 1
            try:
                yield
            finally:
                self._depth[vmid] -= 1
                if self._depth[vmid] == 0:
                    handle = self._handles.pop(vmid)
                    fcntl.flock(handle, fcntl.LOCK_UN)
                    handle.close()
                    log.debug("config_unlocked", vmid=vmid)

    def exists(self, vmid: int) -> bool:
        return self.paths.config_file(vmid).is_file()

    def load(self, vmid: int) -> VMConfig:
        path = self.paths.config_file(vmid)
        if not path.is_file():
            raise NotFoundError(f"unable to find configuration file for VM {vmid}")
        data = yaml.safe_load(path.read_text()) or {}
        data.setdefault("vmid", vmid)
        return VMConfig.from_dict(data)

    def write(self, vmid: int, config: VMConfig) -> None:
        path = self.paths.config_file(vmid)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False))
        os.replace(tmp, path)
