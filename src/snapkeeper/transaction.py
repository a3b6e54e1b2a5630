"""
Compensating actions for multi-step operations that must not leave residue.
"""

from dataclasses import dataclass, field
from typing import Callable, List

import structlog

log = structlog.get_logger(__name__)


@dataclass
class RollbackAction:
    """A single rollback action."""

    description: str
    action: Callable[[], None]
    critical: bool = False  # If True, failure stops rollback chain


@dataclass
class RollbackContext:
    """
    Context manager that undoes registered steps when the block raises.

    Usage:
        with RollbackContext("snapshot 'pre-upgrade' of VM 100") as ctx:
            storage.snapshot_volume(volid, "pre-upgrade")
            ctx.add_action(f"delete snapshot of {volid}",
                           lambda: storage.delete_volume_snapshot(volid, "pre-upgrade"))
            ...
            ctx.commit()

    Actions run in reverse registration order. Their errors are collected
    and logged, never raised; the original exception always propagates.
    """

    operation_name: str
    _actions: List[RollbackAction] = field(default_factory=list)
    _committed: bool = False
    errors: List[str] = field(default_factory=list)

    def add_action(
        self, description: str, action: Callable[[], None], critical: bool = False
    ) -> None:
        """Register a compensating action."""
        self._actions.append(
            RollbackAction(description=description, action=action, critical=critical)
        )
        log.debug("rollback_action_registered", operation=self.operation_name, action=description)

    def commit(self) -> None:
        """Mark operation as successful, preventing rollback."""
        self._committed = True
        log.debug("operation_committed", operation=self.operation_name)

    def rollback(self) -> List[str]:
        """Execute rollback actions. Returns list of errors."""
        errors = []
        log.warning("rollback_started", operation=self.operation_name, actions=len(self._actions))

        for action in reversed(self._actions):
            try:
                log.info("rollback_action", operation=self.operation_name, action=action.description)
                action.action()
            except Exception as e:
                error_msg = f"Rollback action '{action.description}' failed: {e}"
                errors.append(error_msg)
                log.error("rollback_action_failed", operation=self.operation_name, error=error_msg)
                if action.critical:
                    break

        self.errors.extend(errors)
        return errors

    def __enter__(self) -> "RollbackContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None and not self._committed:
            self.rollback()
        return False  # Don't suppress the exception
