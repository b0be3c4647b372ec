"""History Service for bounded undo/redo of edit states.

This service handles:
- Snapshotting the pre-mutation EditState (bounded, oldest evicted first)
- Undo/redo as atomic swaps between the two stacks
- Clearing history on full reset
"""

import logging
from collections import deque
from typing import Deque, List, Optional

from modivis.errors import EmptyHistoryError, EmptyRedoError
from modivis.models.edit_state import EditState


logger = logging.getLogger(__name__)


class HistoryManager:
    """
    Bounded undo/redo stacks of EditState snapshots.

    The undo stack holds at most ``capacity`` entries (20 by default); the
    redo stack is only bounded by session length and is cleared whenever a
    new mutating action is snapshotted.
    """

    # Maximum undo entries per editor session
    DEFAULT_CAPACITY = 20

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("History capacity must be positive")
        self.capacity = capacity
        self._undo: Deque[EditState] = deque(maxlen=capacity)
        self._redo: List[EditState] = []
        # Redo entries cleared by the latest snapshot, kept so it can be rolled back
        self._cleared_redo: List[EditState] = []

    @property
    def can_undo(self) -> bool:
        return len(self._undo) > 0

    @property
    def can_redo(self) -> bool:
        return len(self._redo) > 0

    @property
    def undo_depth(self) -> int:
        return len(self._undo)

    @property
    def redo_depth(self) -> int:
        return len(self._redo)

    def undo_states(self) -> List[EditState]:
        """Undo stack contents, oldest first."""
        return list(self._undo)

    def redo_states(self) -> List[EditState]:
        """Redo stack contents, oldest first."""
        return list(self._redo)

    def snapshot(self, state: EditState) -> None:
        """
        Record the state that precedes a mutating action.

        EditState is immutable, so the reference itself is the copy.
        """
        if len(self._undo) == self.capacity:
            logger.debug(f"History full ({self.capacity}), evicting oldest snapshot")
        # deque(maxlen) drops the leftmost (oldest) entry on overflow
        self._undo.append(state)
        if self._redo:
            logger.debug(f"Clearing {len(self._redo)} redo entries after new action")
        self._cleared_redo = self._redo
        self._redo = []

    def discard_last(self) -> Optional[EditState]:
        """
        Roll back the most recent snapshot.

        Used when the action that followed the snapshot failed: the snapshot
        is dropped and the redo entries it cleared come back. An entry evicted
        by that snapshot stays evicted.
        """
        if not self._undo:
            return None
        dropped = self._undo.pop()
        self._redo = self._cleared_redo
        self._cleared_redo = []
        return dropped

    def undo(self, current: EditState) -> EditState:
        """
        Step back one action.

        Args:
            current: State being replaced; moves onto the redo stack

        Returns:
            EditState: The most recent snapshot

        Raises:
            EmptyHistoryError: If there is nothing to undo
        """
        if not self._undo:
            raise EmptyHistoryError("Nothing to undo")
        previous = self._undo.pop()
        self._cleared_redo = []
        self._redo.append(current)
        logger.info(f"Undo: {len(self._undo)} undo / {len(self._redo)} redo entries left")
        return previous

    def redo(self, current: EditState) -> EditState:
        """
        Re-apply the most recently undone action.

        Raises:
            EmptyRedoError: If there is nothing to redo
        """
        if not self._redo:
            raise EmptyRedoError("Nothing to redo")
        following = self._redo.pop()
        self._cleared_redo = []
        # Goes through the bounded deque, so a full stack evicts its oldest entry
        self._undo.append(current)
        logger.info(f"Redo: {len(self._undo)} undo / {len(self._redo)} redo entries left")
        return following

    def reset(self) -> None:
        """Clear both stacks."""
        logger.info("Resetting edit history")
        self._undo.clear()
        self._redo = []
        self._cleared_redo = []
