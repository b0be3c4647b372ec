"""Stroke capture for the masking (magic eraser) tool.

Pointer input is collected while the tool is active and handed on only
once a stroke is committed:

    IDLE --begin--> CAPTURING --end--> COMMITTED --take_committed--> IDLE
"""

import enum
import logging
from typing import List, Optional, Tuple

from modivis.models.edit_state import EraserStroke


logger = logging.getLogger(__name__)


BRUSH_SIZE_RANGE = (5, 100)
DEFAULT_BRUSH_SIZE = 20


class CaptureState(str, enum.Enum):
    """Stroke capture states."""
    IDLE = "idle"
    CAPTURING = "capturing"
    COMMITTED = "committed"


class StrokeCapture:
    """Collects pointer points into EraserStrokes."""

    def __init__(self, brush_size: int = DEFAULT_BRUSH_SIZE):
        self.active = False
        self.brush_size = clamp_brush_size(brush_size)
        self.state = CaptureState.IDLE
        self._points: List[Tuple[float, float]] = []
        self._committed: List[EraserStroke] = []

    def activate(self) -> None:
        self.active = True

    def deactivate(self) -> None:
        """Turn the tool off, dropping anything not yet processed."""
        self.active = False
        self.discard()

    def toggle(self) -> bool:
        if self.active:
            self.deactivate()
        else:
            self.activate()
        return self.active

    def set_brush_size(self, size: int) -> int:
        self.brush_size = clamp_brush_size(size)
        return self.brush_size

    @property
    def in_progress(self) -> Optional[EraserStroke]:
        """The stroke being drawn, for the overlay preview."""
        if self.state is not CaptureState.CAPTURING:
            return None
        return EraserStroke(points=tuple(self._points), brush_size=self.brush_size)

    def begin(self, x: float, y: float) -> bool:
        """
        Pointer down.

        Returns:
            bool: True if a stroke started; False when the tool is inactive
            or a previous stroke is still waiting to be taken
        """
        if not self.active or self.state is not CaptureState.IDLE:
            return False
        self._points = [(float(x), float(y))]
        self.state = CaptureState.CAPTURING
        return True

    def extend(self, x: float, y: float) -> bool:
        """Pointer move. Ignored unless a stroke is being captured."""
        if self.state is not CaptureState.CAPTURING:
            return False
        self._points.append((float(x), float(y)))
        return True

    def end(self) -> Optional[EraserStroke]:
        """Pointer up. Commits the stroke being captured."""
        if self.state is not CaptureState.CAPTURING:
            return None
        stroke = EraserStroke(points=tuple(self._points), brush_size=self.brush_size)
        self._points = []
        self._committed.append(stroke)
        self.state = CaptureState.COMMITTED
        logger.debug(f"Committed stroke with {len(stroke)} points (brush {stroke.brush_size}px)")
        return stroke

    def take_committed(self) -> Tuple[EraserStroke, ...]:
        """Hand over committed strokes and return to IDLE."""
        strokes = tuple(self._committed)
        self._committed = []
        if self.state is CaptureState.COMMITTED:
            self.state = CaptureState.IDLE
        return strokes

    def discard(self) -> None:
        """Drop in-progress and committed strokes."""
        self._points = []
        self._committed = []
        self.state = CaptureState.IDLE


def clamp_brush_size(size: int) -> int:
    low, high = BRUSH_SIZE_RANGE
    return max(low, min(high, int(size)))
