#!/usr/bin/env python3
"""Tests for replication, backup and feature eligibility."""

import pytest

from conftest import FakeStorage, make_config
from snapkeeper.eligibility import (
    VolumeAttributes,
    backup_eligibility,
    backup_volumes,
    collect_volume_attributes,
    has_feature,
    is_replicable,
    replicatable_volumes,
)
from snapkeeper.exceptions import PolicyViolationError
from snapkeeper.interfaces import VolumeCapabilities
from snapkeeper.models import Drive, SnapshotRecord


@pytest.fixture
def storage():
    return FakeStorage()


class TestCollectVolumeAttributes:
    def test_merges_config_snapshots_unused_and_vmstate(self):
        config = make_config(unused=["local-lvm:vm-100-disk-9"])
        config.snapshots["a"] = SnapshotRecord(
            drives={
                "scsi0": {"volume": "local-lvm:vm-100-disk-0", "replicate": False},
                "ide3": {"volume": "local-lvm:vm-100-disk-5", "media": "cdrom"},
            },
            vmstate="local-lvm:vm-100-state-a",
        )
        attrs = collect_volume_attributes(config)

        assert attrs["local-lvm:vm-100-disk-0"] == VolumeAttributes(cdrom=False, replicate=True)
        assert attrs["local-lvm:vm-100-disk-5"] == VolumeAttributes(cdrom=True, replicate=True)
        assert attrs["local-lvm:vm-100-disk-9"].cdrom is False
        assert attrs["local-lvm:vm-100-state-a"].cdrom is False
        assert attrs["local:iso/debian-12.iso"].cdrom is True

    def test_cdrom_only_if_every_reference_is(self):
        config = make_config(drives={"ide2": {"volume": "local-lvm:vm-100-disk-3", "media": "cdrom"}})
        config.snapshots["a"] = SnapshotRecord(drives={"scsi0": {"volume": "local-lvm:vm-100-disk-3"}})
        assert collect_volume_attributes(config)["local-lvm:vm-100-disk-3"].cdrom is False


class TestIsReplicable:
    def test_removable_media_never_replicated(self, storage):
        attrs = VolumeAttributes(cdrom=True, replicate=True)
        assert not is_replicable(storage, 100, "local-lvm:vm-100-disk-0", attrs)
        assert not is_replicable(storage, 100, "local-lvm:vm-100-disk-0", attrs, cleanup=True)

    def test_replicate_off_skipped_unless_cleanup(self, storage):
        attrs = VolumeAttributes(cdrom=False, replicate=False)
        assert not is_replicable(storage, 100, "local-lvm:vm-100-disk-0", attrs)
        assert is_replicable(storage, 100, "local-lvm:vm-100-disk-0", attrs, cleanup=True)

    def test_raw_path_raises(self, storage):
        attrs = VolumeAttributes(cdrom=False, replicate=True)
        with pytest.raises(PolicyViolationError, match="unable to replicate local file/device"):
            is_replicable(storage, 100, "/dev/sdb", attrs)
        assert not is_replicable(storage, 100, "/dev/sdb", attrs, noerr=True)

    def test_shared_and_foreign_volumes_skipped(self, storage):
        attrs = VolumeAttributes(cdrom=False, replicate=True)
        assert not is_replicable(storage, 100, "ceph:vm-100-disk-1", attrs)
        assert not is_replicable(storage, 100, "local-lvm:vm-101-disk-0", attrs)
        assert not is_replicable(storage, 100, "local-lvm:base-image", attrs)

    def test_wrong_content_type(self, storage):
        volid = "local:100/vm-100-disk-0.qcow2"
        storage.owners[volid] = 100
        storage.caps[volid] = VolumeCapabilities(content_type="rootdir", supports_replicate=True)
        attrs = VolumeAttributes(cdrom=False, replicate=True)
        with pytest.raises(PolicyViolationError, match="type 'rootdir'"):
            is_replicable(storage, 100, volid, attrs)
        assert not is_replicable(storage, 100, volid, attrs, cleanup=True)

    def test_missing_replicate_feature(self, storage):
        volid = "local:100/vm-100-disk-0.raw"
        storage.owners[volid] = 100
        storage.caps[volid] = VolumeCapabilities(supports_replicate=False)
        attrs = VolumeAttributes(cdrom=False, replicate=True)
        with pytest.raises(PolicyViolationError, match="missing replicate feature"):
            is_replicable(storage, 100, volid, attrs)
        assert not is_replicable(storage, 100, volid, attrs, noerr=True)


class TestReplicatableVolumes:
    def test_sorted_local_owned_volumes(self, storage):
        config = make_config(unused=["local-lvm:vm-100-disk-7"])
        config.snapshots["a"] = SnapshotRecord(vmstate="local-lvm:vm-100-state-a")
        assert replicatable_volumes(storage, 100, config) == [
            "local-lvm:vm-100-disk-0",
            "local-lvm:vm-100-disk-2",
            "local-lvm:vm-100-disk-7",
            "local-lvm:vm-100-state-a",
        ]

    def test_any_reference_requesting_replication_wins(self, storage):
        config = make_config(drives={"scsi0": {"volume": "local-lvm:vm-100-disk-0", "replicate": False}})
        assert replicatable_volumes(storage, 100, config) == []
        config.snapshots["a"] = SnapshotRecord(drives={"scsi0": {"volume": "local-lvm:vm-100-disk-0"}})
        assert replicatable_volumes(storage, 100, config) == ["local-lvm:vm-100-disk-0"]


class TestBackupEligibility:
    def test_default_included(self):
        assert backup_eligibility("scsi0", Drive(volume="local:vm-100-disk-0"), "seabios") == (
            True,
            "backup=yes",
        )

    def test_explicit_exclusion(self):
        drive = Drive(volume="local:vm-100-disk-1", backup=False)
        assert backup_eligibility("scsi1", drive, "seabios") == (False, "backup=no")

    def test_efidisk_needs_ovmf(self):
        drive = Drive(volume="local:vm-100-disk-2")
        assert backup_eligibility("efidisk0", drive, "seabios") == (False, "efidisk but no OVMF BIOS")
        assert backup_eligibility("efidisk0", drive, "ovmf") == (True, "backup=yes")

    def test_backup_volumes_with_seabios(self):
        config = make_config(
            bios="seabios",
            drives={
                "scsi0": {"volume": "local-lvm:vm-100-disk-0"},
                "scsi1": {"volume": "local-lvm:vm-100-disk-1", "backup": False},
                "ide2": {"volume": "local:iso/debian.iso", "media": "cdrom"},
                "efidisk0": {"volume": "local-lvm:vm-100-disk-2"},
            },
        )
        result = [(v.key, v.included, v.reason) for v in backup_volumes(config)]
        assert result == [
            ("scsi0", True, "backup=yes"),
            ("scsi1", False, "backup=no"),
            ("efidisk0", False, "efidisk but no OVMF BIOS"),
        ]


class TestHasFeature:
    def test_all_volumes_must_support(self, storage):
        config = make_config()
        assert has_feature(storage, "snapshot", config)
        storage.features[("snapshot", "ceph:vm-100-disk-1")] = False
        assert not has_feature(storage, "snapshot", config)

    def test_cdrom_ignored(self, storage):
        storage.features[("clone", "local:iso/debian-12.iso")] = False
        assert has_feature(storage, "clone", make_config())

    def test_backup_only_skips_excluded_volumes(self, storage):
        config = make_config()
        config.drives["scsi1"].backup = False
        storage.features[("snapshot", "ceph:vm-100-disk-1")] = False
        assert not has_feature(storage, "snapshot", config)
        assert has_feature(storage, "snapshot", config, backup_only=True)
