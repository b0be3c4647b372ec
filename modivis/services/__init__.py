"""MODIVIS editing services."""

from .history_service import HistoryManager
from .transform_pipeline import EffectDescriptor, compose
from .raster_service import PillowSurface, RasterCompositor, RasterSurface
from .stroke_capture import StrokeCapture
from .retry import RetryPolicy, retry_async
from .image_loader_service import ImageLoaderService
from .ai_service import AIToolGateway, GeminiImageProvider
from .editor_session import EditorSession, SessionRegistry
from .export_service import ExportService, get_export_service

__all__ = [
    "HistoryManager",
    "EffectDescriptor",
    "compose",
    "PillowSurface",
    "RasterCompositor",
    "RasterSurface",
    "StrokeCapture",
    "RetryPolicy",
    "retry_async",
    "ImageLoaderService",
    "AIToolGateway",
    "GeminiImageProvider",
    "EditorSession",
    "SessionRegistry",
    "ExportService",
    "get_export_service",
]
