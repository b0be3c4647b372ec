"""Export Service for delivering rendered edits.

This service handles:
- Rendering the session's current state to PNG
- Writing the file under the export storage directory
- Recording each export in the database
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from modivis.config import settings
from modivis.database.base import AsyncSessionLocal
from modivis.errors import EncodingError
from modivis.models.export_record import ExportRecord
from modivis.services.editor_session import EditorSession


logger = logging.getLogger(__name__)


EXPORT_PREFIX = "MODIVIS_Export_"


class ExportPathError(EncodingError):
    """Raised when an export location is unsafe."""
    pass


def export_filename(timestamp_ms: int, upscale_level: int = 1) -> str:
    """Timestamped delivery name, tagged with the upscale label when set."""
    suffix = f"_{upscale_level}x" if upscale_level > 1 else ""
    return f"{EXPORT_PREFIX}{timestamp_ms}{suffix}.png"


class ExportService:
    """Renders sessions to PNG files and keeps an export log."""

    def __init__(
        self,
        storage_path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        if storage_path is None:
            storage_path = settings.EXPORT_STORAGE_PATH
        self.storage_path = self.validate_storage_path(storage_path)
        self.clock = clock

    @staticmethod
    def validate_storage_path(storage_path: str) -> Path:
        """
        Validate the export directory.

        Security checks:
        - Block null bytes
        - Block path traversal (../ sequences)
        - Block home directory expansion (~)

        Raises:
            ExportPathError: If path is unsafe
        """
        if not storage_path or not isinstance(storage_path, str):
            raise ExportPathError("Export path must be a non-empty string")
        if '\x00' in storage_path:
            raise ExportPathError("Invalid export path: null byte detected")
        if '..' in Path(storage_path).parts:
            raise ExportPathError("Path traversal detected: '..' not allowed in export path")
        if '~' in storage_path:
            raise ExportPathError("Home directory expansion not allowed: '~' detected")
        return Path(storage_path).resolve()

    async def export(self, session: EditorSession, db: Optional[AsyncSession] = None) -> ExportRecord:
        """
        Render ``session`` and deliver it as a PNG file.

        Args:
            session: Editor session to export
            db: Optional database session (will create if not provided)

        Returns:
            ExportRecord for the written file

        Raises:
            SessionBusyError: If the session is processing
            EncodingError: If rendering or writing fails
        """
        state = session.state
        rendered = await session.render()

        filename = export_filename(int(self.clock() * 1000), state.upscale_level)
        target = self.storage_path / filename
        try:
            await asyncio.to_thread(self._write, target, rendered.data)
        except OSError as e:
            logger.error(f"Failed to write export {target}: {e}")
            raise EncodingError(f"Failed to write export: {str(e)}")

        record = ExportRecord(
            id=str(uuid.uuid4()),
            session_id=session.session_id,
            filename=filename,
            file_path=str(target),
            size_bytes=len(rendered.data),
            width=rendered.width,
            height=rendered.height,
            upscale_level=state.upscale_level,
            background_removed=state.background_removed,
            created_at=datetime.now(timezone.utc),
        )

        close_session = False
        if db is None:
            db = AsyncSessionLocal()
            close_session = True

        try:
            db.add(record)
            await db.commit()
            await db.refresh(record)
        finally:
            if close_session:
                await db.close()

        logger.info(
            f"Exported session {session.session_id} to {filename} "
            f"({rendered.width}x{rendered.height}, {len(rendered.data)} bytes)"
        )
        return record

    def _write(self, target: Path, data: bytes) -> None:
        self.storage_path.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def list_exports(self, session_id: str, db: Optional[AsyncSession] = None) -> List[ExportRecord]:
        """Exports of one session, newest first."""
        close_session = False
        if db is None:
            db = AsyncSessionLocal()
            close_session = True

        try:
            query = (
                select(ExportRecord)
                .where(ExportRecord.session_id == session_id)
                .order_by(ExportRecord.created_at.desc())
            )
            result = await db.execute(query)
            return list(result.scalars().all())
        finally:
            if close_session:
                await db.close()


# Global service instance
_export_service: Optional[ExportService] = None


def get_export_service() -> ExportService:
    """Get or create global export service instance."""
    global _export_service
    if _export_service is None:
        _export_service = ExportService()
    return _export_service
