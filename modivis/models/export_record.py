"""Export record SQLAlchemy model."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, DateTime, Boolean, Integer,
    CheckConstraint, Index
)
from sqlalchemy.orm import validates

from modivis.database.base import Base


class ExportRecord(Base):
    """
    Export Record model for rendered images handed to delivery.

    One row per successful export. The image itself lives on disk at
    ``file_path``; the row keeps what was rendered and when.
    """
    __tablename__ = "export_records"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Unique export identifier"
    )
    session_id = Column(
        String(36),
        nullable=False,
        index=True,
        comment="Editor session that produced the export"
    )
    filename = Column(
        String(255),
        nullable=False,
        comment="Delivered filename (timestamped)"
    )
    file_path = Column(
        String(1024),
        nullable=False,
        comment="Absolute path of the written PNG"
    )
    size_bytes = Column(
        Integer,
        nullable=False,
        comment="Encoded size in bytes"
    )
    width = Column(Integer, nullable=False, comment="Output width in pixels")
    height = Column(Integer, nullable=False, comment="Output height in pixels")
    upscale_level = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Upscale level label (metadata only)"
    )
    background_removed = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether background removal was active"
    )
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="Export timestamp"
    )

    __table_args__ = (
        CheckConstraint('upscale_level IN (1, 2, 4)', name='valid_upscale_level'),
        CheckConstraint('width > 0 AND height > 0', name='valid_dimensions'),
        Index('idx_export_session_created', 'session_id', 'created_at'),
    )

    @validates('width', 'height')
    def validate_dimensions(self, key, value):
        """Validate output dimensions are positive."""
        if value <= 0:
            raise ValueError(f"{key} must be positive")
        return value

    @validates('file_path')
    def validate_file_path(self, key, file_path):
        if not file_path:
            raise ValueError("Export file path cannot be empty")
        if '..' in file_path:
            raise ValueError("Path traversal detected in file_path")
        return file_path

    def __repr__(self):
        return (
            f"<ExportRecord(id={self.id}, session_id={self.session_id}, "
            f"filename={self.filename}, dimensions={self.width}x{self.height})>"
        )

    def to_dict(self) -> dict:
        """Convert model to dictionary for API responses."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "filename": self.filename,
            "file_path": self.file_path,
            "size_bytes": self.size_bytes,
            "width": self.width,
            "height": self.height,
            "upscale_level": self.upscale_level,
            "background_removed": self.background_removed,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
