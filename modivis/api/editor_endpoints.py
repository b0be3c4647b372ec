"""Editor REST API endpoints.

This module provides HTTP endpoints for editing sessions including:
- Creating sessions from a URL, file path or base64 image data
- Dispatching adjustment, rotate, flip, crop and filter actions
- Undo/redo and full reset
- Background removal, magic eraser and upscale
- Rendering, exporting and export history
"""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Body, Depends, HTTPException, Path, status
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from modivis.config import settings
from modivis.database.base import get_db
from modivis.errors import (
    EditorError,
    EmptyHistoryError,
    EmptyRedoError,
    EncodingError,
    InvalidEditError,
    SessionBusyError,
)
from modivis.models.edit_state import EraserStroke, ImageRef
from modivis.services.ai_service import AIToolGateway
from modivis.services.editor_session import (
    ActionType,
    EditAction,
    EditorSession,
    SessionNotFoundError,
    SessionRegistry,
)
from modivis.services.export_service import ExportService, get_export_service
from modivis.services.image_loader_service import ImageLoaderService
from modivis.services.raster_service import PillowSurface
from modivis.services.stroke_capture import clamp_brush_size


logger = logging.getLogger(__name__)


# Initialize router
router = APIRouter(prefix="/api/v1/editor", tags=["Editor"])


# Initialize services (singletons)
session_registry = SessionRegistry()
image_loader_service = ImageLoaderService(
    max_size=settings.SOURCE_MAX_SIZE,
    timeout=settings.SOURCE_FETCH_TIMEOUT,
)
_tool_gateway: Optional[AIToolGateway] = None


def get_registry() -> SessionRegistry:
    return session_registry


def get_loader() -> ImageLoaderService:
    return image_loader_service


def get_tool_gateway() -> AIToolGateway:
    """Get or create the shared AI tool gateway."""
    global _tool_gateway
    if _tool_gateway is None:
        _tool_gateway = AIToolGateway(
            config=settings.get_gateway_config(),
            loader=image_loader_service,
        )
    return _tool_gateway


# ==================== Request/Response Models ====================


class CreateSessionRequest(BaseModel):
    """Request model for opening an editing session."""
    source_url: Optional[str] = Field(None, description="HTTP/HTTPS image URL")
    source_path: Optional[str] = Field(None, description="Local image file path")
    image_data: Optional[str] = Field(None, description="Base64 image data or data URL")
    mime_type: str = Field("image/png", description="MIME type of image_data")


class SessionResponse(BaseModel):
    """Response model for session state."""
    session_id: str
    state: Dict[str, Any]
    effects: Dict[str, Any]
    history: Dict[str, Any]
    eraser: Dict[str, Any]
    processing: bool
    processing_operation: Optional[str] = None
    is_modified: bool
    status: Optional[str] = None
    created_at: str
    last_modified_at: str


class ActionRequest(BaseModel):
    """Request model for a synchronous edit action."""
    type: ActionType = Field(..., description="Action type")
    value: Optional[Any] = Field(None, description="Action value (adjustments, crop ratio, filter)")
    record: bool = Field(True, description="Snapshot history; false for continued slider drags")


class ToolResponse(BaseModel):
    """Response model for background removal and erase."""
    session: SessionResponse
    path: str
    attempts: int = 0
    message: str = ""
    error: Optional[str] = None


class StrokeModel(BaseModel):
    points: List[Tuple[float, float]] = Field(..., min_length=1)
    brush_size: Optional[int] = Field(None, description="Brush size in display pixels")


class EraseRequest(BaseModel):
    """Request model for magic eraser strokes."""
    strokes: List[StrokeModel] = Field(..., min_length=1)
    display_width: Optional[float] = Field(None, gt=0)
    display_height: Optional[float] = Field(None, gt=0)


class UpscaleRequest(BaseModel):
    level: int = Field(..., description="Upscale level: 2 or 4")


class ExportResponse(BaseModel):
    """Response model for an export record."""
    id: str
    session_id: str
    filename: str
    file_path: str
    size_bytes: int
    width: int
    height: int
    upscale_level: int
    background_removed: bool
    created_at: Optional[str] = None


class ExportListResponse(BaseModel):
    exports: List[ExportResponse]
    total: int


# ==================== Helpers ====================


def _http_error(error: Exception, action: str) -> HTTPException:
    """Map editor errors onto HTTP status codes."""
    if isinstance(error, SessionNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InvalidEditError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
    if isinstance(error, (EmptyHistoryError, EmptyRedoError, SessionBusyError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, EncodingError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    logger.error(f"Error during {action}: {str(error)}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(error)}"
    )


def _source_ref(request: CreateSessionRequest) -> ImageRef:
    provided = [v for v in (request.source_url, request.source_path, request.image_data) if v]
    if len(provided) != 1:
        raise InvalidEditError("Exactly one of source_url, source_path or image_data is required")

    if request.source_url:
        return ImageRef.from_url(request.source_url)
    if request.source_path:
        return ImageRef.from_path(request.source_path)
    if request.image_data.startswith("data:"):
        return ImageRef.from_data_url(request.image_data)
    try:
        data = base64.b64decode(request.image_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidEditError(f"Invalid image_data encoding: {str(e)}")
    return ImageRef.from_bytes(data, request.mime_type)


def _session_response(session: EditorSession) -> SessionResponse:
    return SessionResponse(**session.to_dict())


# ==================== Endpoints ====================


@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    request: CreateSessionRequest,
    registry: SessionRegistry = Depends(get_registry),
    loader: ImageLoaderService = Depends(get_loader),
    gateway: AIToolGateway = Depends(get_tool_gateway),
):
    """
    Open an editing session.

    The source is resolved and decoded once up front so a broken image is
    rejected before any session exists.
    """
    try:
        ref = _source_ref(request)
        source = await loader.resolve(ref)
        PillowSurface().decode(source)

        session = registry.add(EditorSession(
            ref,
            gateway=gateway,
            loader=loader,
            history_capacity=settings.HISTORY_CAPACITY,
        ))
        return _session_response(session)

    except EditorError as e:
        raise _http_error(e, "create session")


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str = Path(..., description="Editor session ID"),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        return _session_response(registry.get(session_id))
    except EditorError as e:
        raise _http_error(e, "get session")


@router.post("/sessions/{session_id}/actions", response_model=SessionResponse)
async def dispatch_action(
    session_id: str = Path(..., description="Editor session ID"),
    request: ActionRequest = Body(...),
    registry: SessionRegistry = Depends(get_registry),
):
    """Apply one synchronous action (adjustment, rotate, flip, crop, filter)."""
    logger.info(f"Action on session {session_id}: {request.type.value}={request.value!r}")
    try:
        session = registry.get(session_id)
        session.dispatch(EditAction(request.type, request.value), record=request.record)
        return _session_response(session)
    except EditorError as e:
        raise _http_error(e, "apply action")


@router.post("/sessions/{session_id}/undo", response_model=SessionResponse)
async def undo(
    session_id: str = Path(..., description="Editor session ID"),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        session = registry.get(session_id)
        session.undo()
        return _session_response(session)
    except EditorError as e:
        raise _http_error(e, "undo")


@router.post("/sessions/{session_id}/redo", response_model=SessionResponse)
async def redo(
    session_id: str = Path(..., description="Editor session ID"),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        session = registry.get(session_id)
        session.redo()
        return _session_response(session)
    except EditorError as e:
        raise _http_error(e, "redo")


@router.post("/sessions/{session_id}/reset", response_model=SessionResponse)
async def reset(
    session_id: str = Path(..., description="Editor session ID"),
    registry: SessionRegistry = Depends(get_registry),
):
    """Discard every edit and return to the loaded source."""
    try:
        session = registry.get(session_id)
        session.reset()
        return _session_response(session)
    except EditorError as e:
        raise _http_error(e, "reset session")


@router.post("/sessions/{session_id}/remove-background", response_model=ToolResponse)
async def remove_background(
    session_id: str = Path(..., description="Editor session ID"),
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Toggle background removal.

    ``path`` reports whether the service, the local fallback or the cached
    pre-removal image (restore) produced the result.
    """
    try:
        session = registry.get(session_id)
        result = await session.remove_background()
        return ToolResponse(
            session=_session_response(session),
            path=result.path.value,
            attempts=result.attempts,
            message=result.message,
            error=result.error,
        )
    except EditorError as e:
        raise _http_error(e, "remove background")


@router.post("/sessions/{session_id}/erase", response_model=ToolResponse)
async def erase(
    session_id: str = Path(..., description="Editor session ID"),
    request: EraseRequest = Body(...),
    registry: SessionRegistry = Depends(get_registry),
):
    """Run the magic eraser over committed strokes."""
    try:
        session = registry.get(session_id)
        strokes = [
            EraserStroke(
                points=tuple((float(x), float(y)) for x, y in stroke.points),
                brush_size=clamp_brush_size(stroke.brush_size or session.strokes.brush_size),
            )
            for stroke in request.strokes
        ]
        display_size = None
        if request.display_width and request.display_height:
            display_size = (request.display_width, request.display_height)

        result = await session.erase(strokes, display_size)
        return ToolResponse(
            session=_session_response(session),
            path=result.path.value,
            attempts=result.attempts,
            message=result.message,
        )
    except EditorError as e:
        raise _http_error(e, "erase object")


@router.post("/sessions/{session_id}/upscale", response_model=SessionResponse)
async def upscale(
    session_id: str = Path(..., description="Editor session ID"),
    request: UpscaleRequest = Body(...),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        session = registry.get(session_id)
        await session.upscale(request.level)
        return _session_response(session)
    except EditorError as e:
        raise _http_error(e, "upscale image")


@router.post(
    "/sessions/{session_id}/export",
    response_model=ExportResponse,
    status_code=status.HTTP_201_CREATED,
)
async def export_session(
    session_id: str = Path(..., description="Editor session ID"),
    registry: SessionRegistry = Depends(get_registry),
    export_service: ExportService = Depends(get_export_service),
    db: AsyncSession = Depends(get_db),
):
    """Render the current state to PNG and record the export."""
    try:
        record = await export_service.export(registry.get(session_id), db=db)
        return ExportResponse(**record.to_dict())
    except EditorError as e:
        raise _http_error(e, "export image")


@router.get("/sessions/{session_id}/exports", response_model=ExportListResponse)
async def list_exports(
    session_id: str = Path(..., description="Editor session ID"),
    registry: SessionRegistry = Depends(get_registry),
    export_service: ExportService = Depends(get_export_service),
    db: AsyncSession = Depends(get_db),
):
    try:
        registry.get(session_id)
        records = await export_service.list_exports(session_id, db=db)
        return ExportListResponse(
            exports=[ExportResponse(**record.to_dict()) for record in records],
            total=len(records),
        )
    except EditorError as e:
        raise _http_error(e, "list exports")


@router.get("/sessions/{session_id}/image")
async def get_image(
    session_id: str = Path(..., description="Editor session ID"),
    registry: SessionRegistry = Depends(get_registry),
):
    """Current image with every edit applied, as PNG."""
    try:
        rendered = await registry.get(session_id).render()
        return Response(content=rendered.data, media_type=rendered.mime_type)
    except EditorError as e:
        raise _http_error(e, "render image")


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def end_session(
    session_id: str = Path(..., description="Editor session ID"),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        registry.remove(session_id)
    except EditorError as e:
        raise _http_error(e, "end session")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
