"""MODIVIS data models."""

from .edit_state import EditState, ImageRef, FilterPreset, CropRatio, EraserStroke
from .export_record import ExportRecord

__all__ = [
    "EditState",
    "ImageRef",
    "FilterPreset",
    "CropRatio",
    "EraserStroke",
    "ExportRecord",
]
