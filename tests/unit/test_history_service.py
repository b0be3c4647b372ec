"""Unit tests for HistoryManager.

Tests bounded undo/redo behavior including:
- Undo/redo round trips
- Capacity eviction of the oldest snapshot
- Redo invalidation on new actions
- Rollback of a snapshot whose action failed
"""

import pytest

from modivis.errors import EmptyHistoryError, EmptyRedoError
from modivis.models.edit_state import EditState
from modivis.services.history_service import HistoryManager


@pytest.fixture
def base_state(image_ref):
    return EditState.initial(image_ref)


def brightness_states(base_state, count):
    return [base_state.with_changes(brightness=value) for value in range(count)]


class TestUndoRedo:
    """Test undo/redo round trips."""

    def test_undo_then_redo_restores_state(self, base_state):
        history = HistoryManager()
        after = base_state.with_changes(contrast=150)

        history.snapshot(base_state)
        restored = history.undo(after)
        assert restored == base_state

        replayed = history.redo(restored)
        assert replayed == after
        assert history.undo_depth == 1
        assert history.redo_depth == 0

    def test_undo_empty_raises(self, base_state):
        history = HistoryManager()
        with pytest.raises(EmptyHistoryError):
            history.undo(base_state)

    def test_redo_empty_raises(self, base_state):
        history = HistoryManager()
        with pytest.raises(EmptyRedoError):
            history.redo(base_state)

    def test_multiple_undos_walk_back_in_order(self, base_state):
        history = HistoryManager()
        states = brightness_states(base_state, 4)
        for state in states[:-1]:
            history.snapshot(state)

        current = states[-1]
        for expected in reversed(states[:-1]):
            current = history.undo(current)
            assert current == expected

        assert not history.can_undo
        assert history.redo_depth == 3


class TestCapacity:
    """Test the bounded undo stack."""

    def test_keeps_most_recent_twenty(self, base_state):
        history = HistoryManager(20)
        states = brightness_states(base_state, 25)
        for state in states:
            history.snapshot(state)

        assert history.undo_depth == 20
        assert history.undo_states() == states[5:]

    def test_undo_redo_at_capacity(self, base_state):
        history = HistoryManager(3)
        states = brightness_states(base_state, 3)
        for state in states:
            history.snapshot(state)

        latest = base_state.with_changes(brightness=99)
        previous = history.undo(latest)
        assert history.undo_depth == 2

        assert history.redo(previous) == latest
        assert history.undo_states() == states

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            HistoryManager(0)


class TestRedoInvalidation:

    def test_new_snapshot_clears_redo(self, base_state):
        history = HistoryManager()
        history.snapshot(base_state)
        history.undo(base_state.with_changes(blur=3))
        assert history.can_redo

        history.snapshot(base_state)
        assert not history.can_redo
        with pytest.raises(EmptyRedoError):
            history.redo(base_state)


class TestDiscardLast:
    """Test rollback of a snapshot taken for a failed action."""

    def test_discard_restores_cleared_redo(self, base_state):
        history = HistoryManager()
        after = base_state.with_changes(saturation=20)
        history.snapshot(base_state)
        history.undo(after)

        history.snapshot(base_state)
        assert history.discard_last() == base_state

        assert history.undo_depth == 0
        assert history.redo_states() == [after]

    def test_discard_on_empty_history(self):
        assert HistoryManager().discard_last() is None

    def test_reset_clears_everything(self, base_state):
        history = HistoryManager()
        history.snapshot(base_state)
        history.undo(base_state)
        history.reset()

        assert history.undo_depth == 0
        assert history.redo_depth == 0
        assert history.discard_last() is None
