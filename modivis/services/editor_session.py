"""Editor Session orchestrating one image's editing.

This service handles:
- Dispatching user actions onto the immutable EditState
- Snapshotting history before every mutating action, and undo/redo
- Running AI tools, eraser strokes, upscale and export under one permit
- Full reset back to the loaded source
"""

import asyncio
import enum
import logging
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from modivis.errors import EditorError, InvalidEditError, SessionBusyError
from modivis.models.edit_state import EditState, EraserStroke, ImageRef
from modivis.services.ai_service import UPSCALE_TARGETS, AIToolGateway, ToolPath, ToolResult
from modivis.services.history_service import HistoryManager
from modivis.services.image_loader_service import ImageLoaderService
from modivis.services.raster_service import RasterCompositor, RenderResult
from modivis.services.stroke_capture import StrokeCapture
from modivis.services.transform_pipeline import EffectDescriptor, compose


logger = logging.getLogger(__name__)


ROTATION_STEP = 90


class ActionType(str, enum.Enum):
    """Synchronous edit actions."""
    SET_BRIGHTNESS = "set_brightness"
    SET_CONTRAST = "set_contrast"
    SET_SATURATION = "set_saturation"
    SET_BLUR = "set_blur"
    ROTATE_LEFT = "rotate_left"
    ROTATE_RIGHT = "rotate_right"
    FLIP_HORIZONTAL = "flip_horizontal"
    FLIP_VERTICAL = "flip_vertical"
    SET_CROP_RATIO = "set_crop_ratio"
    SET_FILTER = "set_filter"


@dataclass(frozen=True)
class EditAction:
    """A user action with its optional value."""
    type: ActionType
    value: Any = None


_ADJUSTMENT_FIELDS = {
    ActionType.SET_BRIGHTNESS: "brightness",
    ActionType.SET_CONTRAST: "contrast",
    ActionType.SET_SATURATION: "saturation",
    ActionType.SET_BLUR: "blur",
}


def apply_action(state: EditState, action: EditAction) -> EditState:
    """
    Pure reducer: the state that ``action`` produces from ``state``.

    Raises:
        InvalidEditError: If the action value is outside its domain
    """
    kind = action.type
    if kind in _ADJUSTMENT_FIELDS:
        value = action.value
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return state.with_changes(**{_ADJUSTMENT_FIELDS[kind]: value})
    if kind is ActionType.ROTATE_LEFT:
        return state.with_changes(rotation=state.rotation - ROTATION_STEP)
    if kind is ActionType.ROTATE_RIGHT:
        return state.with_changes(rotation=state.rotation + ROTATION_STEP)
    if kind is ActionType.FLIP_HORIZONTAL:
        return state.with_changes(flip_horizontal=not state.flip_horizontal)
    if kind is ActionType.FLIP_VERTICAL:
        return state.with_changes(flip_vertical=not state.flip_vertical)
    if kind is ActionType.SET_CROP_RATIO:
        return state.with_changes(crop_ratio=action.value)
    if kind is ActionType.SET_FILTER:
        return state.with_changes(active_filter_preset=action.value)
    raise InvalidEditError(f"Unsupported action: {kind}")


class ProcessingPermit:
    """
    Session-wide permit for asynchronous operations.

    Acquisition never waits: while one operation holds the permit any other
    attempt is rejected with SessionBusyError.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self.operation: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def hold(self, operation: str):
        if self._lock.locked():
            raise SessionBusyError(
                f"Cannot start {operation}: {self.operation} is still in progress"
            )
        await self._lock.acquire()
        self.operation = operation
        try:
            yield
        finally:
            self.operation = None
            self._lock.release()


class EditorSession:
    """
    One editing session over one source image.

    EditorSession exclusively owns the current EditState; every transition
    goes through it, and history is snapshotted synchronously before any
    mutation begins.
    """

    # Status messages kept for clients that poll
    STATUS_LOG_SIZE = 50

    def __init__(
        self,
        source: ImageRef,
        gateway: Optional[AIToolGateway] = None,
        compositor: Optional[RasterCompositor] = None,
        loader: Optional[ImageLoaderService] = None,
        history_capacity: int = HistoryManager.DEFAULT_CAPACITY,
        notifier: Optional[Callable[[str], Any]] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.original_ref = source
        self.loader = loader or ImageLoaderService()
        self.gateway = gateway or AIToolGateway(loader=self.loader)
        self.compositor = compositor or RasterCompositor()
        self.history = HistoryManager(history_capacity)
        self.strokes = StrokeCapture()
        self.permit = ProcessingPermit()
        self.notifier = notifier
        self.status_messages: Deque[str] = deque(maxlen=self.STATUS_LOG_SIZE)

        self._state = EditState.initial(source)
        # Background-removed image -> image it was produced from
        self._pre_removal: Dict[ImageRef, ImageRef] = {}

        self.created_at = datetime.now(timezone.utc)
        self.last_modified_at = self.created_at

        logger.info(f"Created editor session {self.session_id} for image {source.ref_id}")

    @property
    def state(self) -> EditState:
        return self._state

    @property
    def processing(self) -> bool:
        return self.permit.held

    @property
    def is_modified(self) -> bool:
        return self._state != EditState.initial(self.original_ref)

    def descriptor(self) -> EffectDescriptor:
        """Effect descriptor for rendering the current state."""
        return compose(self._state)

    def pre_removal_ref(self) -> Optional[ImageRef]:
        """Cached source of the current background-removed image, if any."""
        return self._pre_removal.get(self._state.image_ref)

    # ==================== Synchronous actions ====================

    def dispatch(self, action: EditAction, record: bool = True) -> EditState:
        """
        Apply a synchronous action.

        Args:
            action: Action to apply
            record: Snapshot history first. Continuous gestures (slider drags)
                record on the first update only.

        Raises:
            InvalidEditError: If the action is invalid; nothing changes
            SessionBusyError: If an asynchronous operation is in progress
        """
        self._require_idle(action.type.value)
        new_state = apply_action(self._state, action)
        if record:
            self._commit(new_state)
        else:
            self._replace(new_state)
        logger.debug(f"Session {self.session_id}: {action.type.value}={action.value!r}")
        return self._state

    def set_brightness(self, value: int, record: bool = True) -> EditState:
        return self.dispatch(EditAction(ActionType.SET_BRIGHTNESS, value), record)

    def set_contrast(self, value: int, record: bool = True) -> EditState:
        return self.dispatch(EditAction(ActionType.SET_CONTRAST, value), record)

    def set_saturation(self, value: int, record: bool = True) -> EditState:
        return self.dispatch(EditAction(ActionType.SET_SATURATION, value), record)

    def set_blur(self, value: int, record: bool = True) -> EditState:
        return self.dispatch(EditAction(ActionType.SET_BLUR, value), record)

    def rotate(self, direction: str) -> EditState:
        if direction not in ("left", "right"):
            raise InvalidEditError(f"Rotate direction must be 'left' or 'right', got {direction!r}")
        kind = ActionType.ROTATE_LEFT if direction == "left" else ActionType.ROTATE_RIGHT
        return self.dispatch(EditAction(kind))

    def flip(self, axis: str) -> EditState:
        if axis not in ("h", "v"):
            raise InvalidEditError(f"Flip axis must be 'h' or 'v', got {axis!r}")
        kind = ActionType.FLIP_HORIZONTAL if axis == "h" else ActionType.FLIP_VERTICAL
        return self.dispatch(EditAction(kind))

    def set_crop_ratio(self, ratio) -> EditState:
        return self.dispatch(EditAction(ActionType.SET_CROP_RATIO, ratio))

    def set_filter(self, preset) -> EditState:
        return self.dispatch(EditAction(ActionType.SET_FILTER, preset))

    def undo(self) -> EditState:
        """
        Raises:
            EmptyHistoryError: If there is nothing to undo
            SessionBusyError: If an asynchronous operation is in progress
        """
        self._require_idle("undo")
        self._replace(self.history.undo(self._state))
        self.strokes.discard()
        return self._state

    def redo(self) -> EditState:
        """
        Raises:
            EmptyRedoError: If there is nothing to redo
            SessionBusyError: If an asynchronous operation is in progress
        """
        self._require_idle("redo")
        self._replace(self.history.redo(self._state))
        self.strokes.discard()
        return self._state

    def reset(self) -> EditState:
        """
        Discard every edit and return to the loaded source.

        Raises:
            SessionBusyError: If an asynchronous operation is in progress
        """
        self._require_idle("reset")
        logger.info(f"Resetting session {self.session_id}")
        self.history.reset()
        self.strokes.deactivate()
        self._pre_removal.clear()
        self._replace(EditState.initial(self.original_ref))
        return self._state

    # ==================== Background removal ====================

    async def remove_background(self) -> ToolResult:
        """
        Remove the background, or restore it when already removed.

        Raises:
            SessionBusyError: If another asynchronous operation is in progress
            EncodingError: If the source cannot be read; nothing changes
        """
        if self.processing:
            raise SessionBusyError(
                f"Cannot remove background while {self.permit.operation} is in progress"
            )
        if self._state.background_removed:
            return self.restore_background()

        async with self.permit.hold("background removal"):
            before = self._state
            self.history.snapshot(before)
            self._notify("Removing background with AI...")
            try:
                result = await self.gateway.remove_background(before.image_ref, on_status=self._notify)
            except Exception:
                self.history.discard_last()
                raise

            self._pre_removal[result.image_ref] = before.image_ref
            self._replace(self._state.with_changes(
                image_ref=result.image_ref,
                background_removed=True,
            ))
            if result.path is ToolPath.SERVICE:
                self._notify(result.message)
            logger.info(
                f"Session {self.session_id}: background removed via {result.path.value}"
            )
            return result

    def restore_background(self) -> ToolResult:
        """
        Bring back the image from before background removal. No service call.

        Raises:
            InvalidEditError: If the background is not removed
            SessionBusyError: If an asynchronous operation is in progress
        """
        self._require_idle("background restore")
        current = self._state
        if not current.background_removed:
            raise InvalidEditError("Background is not removed; nothing to restore")
        cached = self._pre_removal.get(current.image_ref)
        self.history.snapshot(current)
        if cached is None:
            logger.warning(
                f"Session {self.session_id}: no cached pre-removal image, clearing flag only"
            )
            cached = current.image_ref
        self._replace(current.with_changes(image_ref=cached, background_removed=False))
        self._notify("Background restored.")
        return ToolResult(image_ref=cached, path=ToolPath.RESTORE, message="Background restored.")

    # ==================== Magic eraser ====================

    def toggle_eraser(self) -> bool:
        return self.strokes.toggle()

    def set_brush_size(self, size: int) -> int:
        return self.strokes.set_brush_size(size)

    def begin_stroke(self, x: float, y: float) -> bool:
        if self.processing:
            return False
        return self.strokes.begin(x, y)

    def extend_stroke(self, x: float, y: float) -> bool:
        return self.strokes.extend(x, y)

    async def end_stroke(
        self,
        display_size: Optional[Tuple[float, float]] = None,
    ) -> Optional[ToolResult]:
        """Pointer up: commit the stroke and erase under it."""
        if self.strokes.end() is None:
            return None
        committed = self.strokes.take_committed()
        return await self.erase(committed, display_size)

    async def erase(
        self,
        strokes: Sequence[EraserStroke],
        display_size: Optional[Tuple[float, float]] = None,
    ) -> Optional[ToolResult]:
        """
        Run the clone-stamp eraser over committed strokes.

        Raises:
            SessionBusyError: If another asynchronous operation is in progress
            EncodingError: If the image cannot be decoded; nothing changes
        """
        strokes = [stroke for stroke in strokes if len(stroke) > 0]
        if not strokes:
            return None

        async with self.permit.hold("object removal"):
            before = self._state
            self.history.snapshot(before)
            self._notify("Erasing object...")
            try:
                result = await self.gateway.erase_region(before.image_ref, strokes, display_size)
            except Exception:
                self.history.discard_last()
                raise

            # An erased cut-out still restores to the image from before removal
            pre_removal = self._pre_removal.get(before.image_ref)
            if pre_removal is not None:
                self._pre_removal[result.image_ref] = pre_removal
            self._replace(self._state.with_changes(image_ref=result.image_ref))
            return result

    # ==================== Upscale ====================

    async def upscale(self, level: int) -> EditState:
        """
        Record an upscale level after the simulated delay.

        Raises:
            InvalidEditError: If level is not 2 or 4
            SessionBusyError: If another asynchronous operation is in progress
        """
        if level not in UPSCALE_TARGETS:
            raise InvalidEditError(f"Upscale level must be one of {UPSCALE_TARGETS}, got {level}")

        async with self.permit.hold("upscale"):
            self.history.snapshot(self._state)
            self._notify(f"Upscaling image to {level}x...")
            try:
                recorded = await self.gateway.upscale(level)
            except Exception:
                self.history.discard_last()
                raise
            self._replace(self._state.with_changes(upscale_level=recorded))
            return self._state

    # ==================== Export ====================

    async def render(self) -> RenderResult:
        """
        Composite the current state into PNG bytes.

        Raises:
            SessionBusyError: If another asynchronous operation is in progress
            EncodingError: If the source cannot be read or the output encoded
        """
        async with self.permit.hold("export"):
            state = self._state
            self._notify("Rendering final image...")
            source = await self.loader.resolve(state.image_ref)
            return await self.compositor.render_async(source, compose(state))

    # ==================== Internals ====================

    def _require_idle(self, operation: str) -> None:
        # Synchronous transitions never interleave with a held permit
        if self.processing:
            raise SessionBusyError(
                f"Cannot {operation.replace('_', ' ')} while {self.permit.operation} is in progress"
            )

    def _commit(self, new_state: EditState) -> None:
        self.history.snapshot(self._state)
        self._replace(new_state)

    def _replace(self, new_state: EditState) -> None:
        self._state = new_state
        self.last_modified_at = datetime.now(timezone.utc)

    def _notify(self, message: str) -> None:
        self.status_messages.append(message)
        if self.notifier is not None:
            self.notifier(message)

    def to_dict(self) -> Dict[str, Any]:
        """Session summary for API responses."""
        return {
            "session_id": self.session_id,
            "state": self._state.to_dict(),
            "effects": self.descriptor().to_dict(),
            "history": {
                "undo_depth": self.history.undo_depth,
                "redo_depth": self.history.redo_depth,
                "can_undo": self.history.can_undo,
                "can_redo": self.history.can_redo,
            },
            "eraser": {
                "active": self.strokes.active,
                "brush_size": self.strokes.brush_size,
                "capture_state": self.strokes.state.value,
            },
            "processing": self.processing,
            "processing_operation": self.permit.operation,
            "is_modified": self.is_modified,
            "status": list(self.status_messages)[-1] if self.status_messages else None,
            "created_at": self.created_at.isoformat(),
            "last_modified_at": self.last_modified_at.isoformat(),
        }


class SessionNotFoundError(EditorError):
    """Raised when session is not found."""
    pass


class SessionRegistry:
    """In-memory registry of live editor sessions."""

    def __init__(self):
        self._sessions: Dict[str, EditorSession] = {}

    def add(self, session: EditorSession) -> EditorSession:
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> EditorSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Editor session not found: {session_id}")
        return session

    def remove(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is None:
            raise SessionNotFoundError(f"Editor session not found: {session_id}")
        logger.info(f"Ended editor session {session_id}")

    def list_ids(self) -> List[str]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)
