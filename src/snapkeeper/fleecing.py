#!/usr/bin/env python3
"""
Crash-safe tracking and cleanup of backup fleecing images.

A backup run records the fleecing images it allocates in the VM config's
special sections. Cleanup clears that record under the config lock before
freeing anything, and re-records whatever could not be freed, so a later
attempt always finds exactly the residue left behind.
"""

import re
from typing import List, Optional

import structlog

from .interfaces.config_store import ConfigStore
from .interfaces.hypervisor import HypervisorControl
from .interfaces.monitor import ControlChannel
from .interfaces.storage import StorageBackend
from .logging import get_logger, log_operation

log = get_logger(__name__)

FLEECING_NODE_RE = re.compile(r"-fleecing$")


class FleecingManager:
    """Record and remove ephemeral fleecing images of a VM."""

    def __init__(
        self,
        store: ConfigStore,
        storage: StorageBackend,
        channel: ControlChannel,
        hypervisor: HypervisorControl,
    ):
        self.store = store
        self.storage = storage
        self.channel = channel
        self.hypervisor = hypervisor

    def pending_fleecing_images(self, vmid: int) -> List[str]:
        return self.store.load(vmid).pending_fleecing_images()

    def record_fleecing_images(self, vmid: int, volids: List[str]) -> None:
        """Add *volids* to the VM's pending fleecing images."""
        if not volids:
            return

        def _append(config):
            config.append_fleecing_images(list(volids))

        self.store.locked_update(vmid, _append)
        log.debug("fleecing_images_recorded", vmid=vmid, volumes=list(volids))

    def cleanup_fleecing_images(
        self, vmid: int, logger: Optional[structlog.stdlib.BoundLogger] = None
    ) -> List[str]:
        """Remove every recorded fleecing image of VM *vmid*.

        A left-over backup job is canceled first, since detaching a fleecing
        image from a running job can deadlock. Never raises for per-image
        failures; returns the volumes that had to be re-recorded.
        """
        logger = (logger or log).bind(vmid=vmid)

        with log_operation(logger, "fleecing_cleanup") as oplog:
            if self.hypervisor.is_running(vmid):
                self._cancel_backup_job(vmid, oplog)
                self._detach_fleecing_block_nodes(vmid, oplog)

            volids: List[str] = []
            with self.store.lock(vmid):
                config = self.store.load(vmid)
                if config.special_sections.fleecing is not None:
                    volids = config.take_fleecing_images()
                    self.store.write(vmid, config)

            failed = []
            for volid in volids:
                oplog.info("fleecing_image_removing", volume=volid)
                try:
                    self.storage.free(volid)
                except Exception as e:
                    oplog.warning("fleecing_image_remove_failed", volume=volid, error=str(e))
                    failed.append(volid)

            self.record_fleecing_images(vmid, failed)
            return failed

    def _cancel_backup_job(self, vmid: int, logger) -> None:
        try:
            status = self.channel.send(vmid, "query-backup")
            if status and status.get("status") == "active":
                logger.warning("backup_job_left_over", detail="canceling left-over backup job")
                self.channel.send(vmid, "backup-cancel")
        except Exception as e:
            logger.warning("backup_job_cancel_failed", error=str(e))

    def _detach_fleecing_block_nodes(self, vmid: int, logger) -> None:
        try:
            nodes = self.channel.send(vmid, "query-named-block-nodes", {"flat": True}) or []
        except Exception as e:
            logger.warning("fleecing_node_query_failed", error=str(e))
            return

        for node in nodes:
            name: Optional[str] = node.get("node-name")
            if not name or not FLEECING_NODE_RE.search(name):
                continue
            try:
                self.channel.send(vmid, "blockdev-del", {"node-name": name})
                logger.info("fleecing_node_detached", node=name)
            except Exception as e:
                logger.warning("fleecing_node_detach_failed", node=name, error=str(e))
