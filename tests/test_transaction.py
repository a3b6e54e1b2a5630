#!/usr/bin/env python3
"""Tests for compensating actions."""

import pytest

from snapkeeper.transaction import RollbackContext


class TestRollbackContext:
    def test_actions_run_in_reverse_on_error(self):
        done = []
        with pytest.raises(RuntimeError, match="boom"):
            with RollbackContext("test") as ctx:
                ctx.add_action("first", lambda: done.append(1))
                ctx.add_action("second", lambda: done.append(2))
                raise RuntimeError("boom")
        assert done == [2, 1]

    def test_commit_prevents_rollback(self):
        done = []
        with RollbackContext("test") as ctx:
            ctx.add_action("first", lambda: done.append(1))
            ctx.commit()
        assert done == []

    def test_failing_action_is_collected(self):
        done = []

        def broken():
            raise OSError("volume busy")

        with pytest.raises(ValueError):
            with RollbackContext("test") as ctx:
                ctx.add_action("first", lambda: done.append(1))
                ctx.add_action("broken", broken)
                raise ValueError("original")

        assert done == [1]
        assert ctx.errors == ["Rollback action 'broken' failed: volume busy"]

    def test_critical_failure_stops_chain(self):
        done = []

        def broken():
            raise OSError("gone")

        with RollbackContext("test") as ctx:
            ctx.add_action("first", lambda: done.append(1))
            ctx.add_action("broken", broken, critical=True)
            errors = ctx.rollback()
            ctx.commit()

        assert done == []
        assert len(errors) == 1
