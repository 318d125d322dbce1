"""
Tests for the undo log behind track and lifecycle rollback.
"""

from dataclasses import dataclass

import pytest

from vio_backend.utils.undo_log import UndoLog


@dataclass
class Record:
    state: str = "pending"


class TestUndoLog:
    """Test checkpoint and rollback of logged changes."""

    def setup_method(self):
        self.log = UndoLog()

    def test_changes_before_checkpoint_are_kept(self):
        mapping = {}
        self.log.setitem(mapping, "a", 1)
        checkpoint = self.log.checkpoint()
        self.log.setitem(mapping, "b", 2)

        self.log.rollback(checkpoint)

        assert mapping == {"a": 1}
        assert len(self.log) == 0

    def test_rollback_restores_every_kind_of_change(self):
        mapping = {"kept": 1, "gone": 2}
        sequence = ["x", "y", "z"]
        members = {1, 2}
        record = Record()
        checkpoint = self.log.checkpoint()

        self.log.setitem(mapping, "kept", 10)
        self.log.setitem(mapping, "new", 3)
        assert self.log.pop(mapping, "gone") == 2
        self.log.append(sequence, "w")
        self.log.remove(sequence, "y")
        self.log.add(members, 3)
        self.log.discard(members, 1)
        self.log.setattr(record, "state", "live")
        assert mapping == {"kept": 10, "new": 3}
        assert sequence == ["x", "z", "w"]

        self.log.rollback(checkpoint)

        assert mapping == {"kept": 1, "gone": 2}
        assert sequence == ["x", "y", "z"]
        assert members == {1, 2}
        assert record.state == "pending"

    def test_overwrites_unwind_in_reverse(self):
        record = Record()
        checkpoint = self.log.checkpoint()
        for state in ("in_flight", "live", "retired"):
            self.log.setattr(record, "state", state)

        self.log.rollback(checkpoint)
        assert record.state == "pending"

    def test_noop_set_changes_are_not_logged(self):
        members = {1}
        self.log.checkpoint()
        self.log.add(members, 1)
        self.log.discard(members, 2)
        assert len(self.log) == 0

    def test_pop_missing(self):
        self.log.checkpoint()
        assert self.log.pop({}, "a", None) is None
        with pytest.raises(KeyError):
            self.log.pop({}, "a")
        assert len(self.log) == 0

    def test_checkpoint_can_be_reused(self):
        sequence = []
        checkpoint = self.log.checkpoint()
        self.log.append(sequence, 1)
        self.log.rollback(checkpoint)
        self.log.append(sequence, 2)
        self.log.rollback(checkpoint)
        assert sequence == []

    def test_older_checkpoint_expires(self):
        old = self.log.checkpoint()
        self.log.checkpoint()
        with pytest.raises(ValueError):
            self.log.rollback(old)

    def test_log_only_holds_changes_since_checkpoint(self):
        mapping = {}
        for step in range(100):
            self.log.checkpoint()
            self.log.setitem(mapping, step, step)
            assert len(self.log) == 1
        assert len(mapping) == 100
