"""MODIVIS image editor core."""

__version__ = "1.0.0"
