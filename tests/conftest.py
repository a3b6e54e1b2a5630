"""
Pytest fixtures and in-memory collaborators for snapkeeper tests.
"""
import copy
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import pytest

from snapkeeper.exceptions import NotFoundError
from snapkeeper.interfaces import (
    ConfigStore,
    ControlChannel,
    GuestAgent,
    HypervisorControl,
    StorageBackend,
    StoragePool,
    VolumeCapabilities,
)
from snapkeeper.models import VMConfig, parse_volume_id
from snapkeeper.settings import SnapshotSettings


class InMemoryConfigStore(ConfigStore):
    """Config store keeping serialized configs in a dict."""

    def __init__(self, *configs: VMConfig):
        self.configs: Dict[int, Dict[str, Any]] = {c.vmid: c.to_dict() for c in configs}
        self.writes: List[int] = []
        self._locks: Dict[int, threading.RLock] = defaultdict(threading.RLock)
        self._depth: Dict[int, int] = defaultdict(int)

    @contextmanager
    def lock(self, vmid: int):
        with self._locks[vmid]:
            self._depth[vmid] += 1
            try:
                yield
            finally:
                self._depth[vmid] -= 1

    def is_locked(self, vmid: int) -> bool:
        return self._depth[vmid] > 0

    def load(self, vmid: int) -> VMConfig:
        if vmid not in self.configs:
            raise NotFoundError(f"unable to find configuration file for VM {vmid}")
        return VMConfig.from_dict(copy.deepcopy(self.configs[vmid]))

    def write(self, vmid: int, config: VMConfig) -> None:
        assert self.is_locked(vmid), "config written without holding its lock"
        self.configs[vmid] = config.to_dict()
        self.writes.append(vmid)

    def get(self, vmid: int) -> VMConfig:
        return VMConfig.from_dict(copy.deepcopy(self.configs[vmid]))


class FakeStorage(StorageBackend):
    """Storage backend recording every call; failures injected per (method, volid)."""

    def __init__(self, pools: Optional[Dict[str, StoragePool]] = None):
        self.pools = pools or {
            "local": StoragePool("local", shared=False, path_based=True),
            "local-lvm": StoragePool("local-lvm", shared=False, path_based=False),
            "ceph": StoragePool("ceph", shared=True, path_based=False),
            "nfs": StoragePool("nfs", shared=True, path_based=True),
        }
        self.calls: List[tuple] = []
        self.volume_snapshots = set()
        self.allocated: List[str] = []
        self.freed: List[str] = []
        self.failures: Dict[tuple, Exception] = {}
        self.owners: Dict[str, Optional[int]] = {}
        self.caps: Dict[str, VolumeCapabilities] = {}
        self.blockers: Dict[str, List[str]] = {}
        self.features: Dict[tuple, bool] = {}

    def _call(self, method: str, *args):
        self.calls.append((method, *args))
        first = args[0] if args else None
        key = (method, tuple(first) if isinstance(first, list) else first)
        if key in self.failures:
            raise self.failures[key]

    def called(self, method: str) -> List[tuple]:
        return [c[1:] for c in self.calls if c[0] == method]

    def storage_config(self, storage_id):
        if storage_id not in self.pools:
            raise NotFoundError(f"storage '{storage_id}' does not exist")
        return self.pools[storage_id]

    def activate_storages(self, storage_ids):
        self._call("activate_storages", list(storage_ids))

    def allocate(self, storage_id, vmid, fmt, name, size_kb):
        self._call("allocate", storage_id, vmid, fmt, name, size_kb)
        volid = f"{storage_id}:{name}"
        self.allocated.append(volid)
        return volid

    def free(self, volid):
        self._call("free", volid)
        self.freed.append(volid)

    def path(self, volid):
        storage_id, volname = parse_volume_id(volid)
        return f"/dev/{storage_id}/{volname}"

    def activate_volumes(self, volids):
        self._call("activate_volumes", list(volids))

    def deactivate_volumes(self, volids):
        self._call("deactivate_volumes", list(volids))

    def snapshot_volume(self, volid, snapname):
        self._call("snapshot_volume", volid, snapname)
        self.volume_snapshots.add((volid, snapname))

    def delete_volume_snapshot(self, volid, snapname):
        self._call("delete_volume_snapshot", volid, snapname)
        self.volume_snapshots.discard((volid, snapname))

    def rollback_volume_snapshot(self, volid, snapname):
        self._call("rollback_volume_snapshot", volid, snapname)

    def rollback_possible(self, volid, snapname):
        self._call("rollback_possible", volid, snapname)
        return list(self.blockers.get(volid, []))

    def capabilities(self, volid):
        storage_id, _ = parse_volume_id(volid)
        pool = self.pools[storage_id]
        return self.caps.get(
            volid,
            VolumeCapabilities(
                shared=pool.shared,
                path_based=pool.path_based,
                content_type="images",
                supports_replicate=True,
            ),
        )

    def resolve_owner(self, volid):
        if volid in self.owners:
            return self.owners[volid]
        _, volname = parse_volume_id(volid)
        parts = volname.split("-")
        if len(parts) > 1 and parts[0] == "vm" and parts[1].isdigit():
            return int(parts[1])
        return None

    def volume_has_feature(self, feature, volid, snapname=None, running=False):
        return self.features.get((feature, volid), True)


class FakeChannel(ControlChannel):
    """Control channel replaying scripted responses per command.

    A list response is consumed one item per call, repeating its last item;
    exceptions in the script are raised.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses: Dict[str, Any] = dict(responses or {})
        self.calls: List[tuple] = []

    def send(self, vmid, command, arguments=None):
        self.calls.append((vmid, command, arguments))
        response = self.responses.get(command)
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(vmid, arguments)
        return copy.deepcopy(response)

    @property
    def commands(self) -> List[str]:
        return [c[1] for c in self.calls]


class FakeHypervisor(HypervisorControl):
    def __init__(self, running: bool = True, machine: str = "pc-q35-8.1+pve0", cpu: str = "host,+aes"):
        self.running = running
        self.machine = machine
        self.cpu = cpu
        self.blocker: Optional[Exception] = None
        self.stopped: List[tuple] = []
        self.started: List[dict] = []

    def is_running(self, vmid):
        return self.running

    def current_machine(self, vmid):
        return self.machine

    def running_cpu(self, vmid):
        return self.cpu if self.running else None

    def stop_vm(self, vmid, timeout):
        self.stopped.append((vmid, timeout))
        self.running = False

    def start_vm(self, vmid, statefile=None, force_machine=None, force_cpu=None):
        self.started.append(
            {"vmid": vmid, "statefile": statefile, "force_machine": force_machine, "force_cpu": force_cpu}
        )
        self.running = True

    def check_non_migratable_resources(self, config, with_state):
        if self.blocker is not None:
            raise self.blocker


class FakeAgent(GuestAgent):
    def __init__(self, reachable: bool = True):
        self.reachable = reachable
        self.checked: List[int] = []

    def is_agent_reachable(self, vmid, config):
        self.checked.append(vmid)
        return self.reachable


def make_config(vmid: int = 100, **overrides) -> VMConfig:
    """A running-VM style config with local, shared, cdrom and EFI volumes."""
    data: Dict[str, Any] = {
        "vmid": vmid,
        "memory": 2048,
        "machine": "pc-q35-8.1",
        "bios": "ovmf",
        "vmgenid": "c0ffee00-0000-4000-8000-000000000001",
        "agent": True,
        "drives": {
            "scsi0": {"volume": f"local-lvm:vm-{vmid}-disk-0"},
            "scsi1": {"volume": f"ceph:vm-{vmid}-disk-1"},
            "ide2": {"volume": "local:iso/debian-12.iso", "media": "cdrom"},
            "efidisk0": {"volume": f"local-lvm:vm-{vmid}-disk-2"},
        },
    }
    data.update(overrides)
    return VMConfig.from_dict(data)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def store(config):
    return InMemoryConfigStore(config)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def hypervisor():
    return FakeHypervisor()


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def sleeps():
    """Recorded sleep calls; use ``sleeps.append`` as the sleep function."""
    return []


@pytest.fixture
def settings():
    return SnapshotSettings()
