"""
Error types raised by snapkeeper.

Pure evaluators raise these to their caller without logging; the snapshot
controller and fleecing manager log and continue only for best-effort steps.
"""


class SnapkeeperError(Exception):
    """Base class for all snapkeeper errors."""


class NotFoundError(SnapkeeperError, LookupError):
    """A VM config, snapshot or volume does not exist."""


class BlockedError(SnapkeeperError):
    """An operation is blocked by an incompatible resource or a config lock."""


class ChannelError(SnapkeeperError):
    """The hypervisor control channel reported a failure or an unexpected status."""


class StorageError(SnapkeeperError):
    """The storage backend failed to allocate, free or snapshot a volume."""


class PolicyViolationError(SnapkeeperError, PermissionError):
    """A volume fails eligibility rules while running in strict mode."""
