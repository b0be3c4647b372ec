"""
Integration test for a complete editing workflow.

Load image -> adjust -> remove background (service busy twice) -> erase ->
upscale -> export twice -> list exports from a real SQLite database.
"""

import itertools

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from modivis.database.base import create_tables
from modivis.models.edit_state import ImageRef
from modivis.services.ai_service import ImageGenerationResponse, ToolPath
from modivis.services.editor_session import EditorSession
from modivis.services.export_service import ExportService


@pytest.fixture
async def db_session(tmp_path):
    """Real aiosqlite database with the export table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'modivis.db'}")
    await create_tables(engine)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest.mark.asyncio
async def test_editing_workflow(
    tmp_path,
    db_session,
    make_gateway,
    scripted_provider,
    rate_limit,
    recording_sleep,
    png_factory,
    png_decoder,
):
    source = png_factory(600, 400, (120, 160, 200, 255))
    cutout = png_factory(600, 400, (120, 160, 200, 128))
    provider = scripted_provider([
        rate_limit(),
        rate_limit(),
        ImageGenerationResponse(image_bytes=cutout),
    ])
    statuses = []
    session = EditorSession(
        ImageRef.from_bytes(source),
        gateway=make_gateway(provider),
        notifier=statuses.append,
    )

    # Step 1: adjustments and geometry
    session.set_brightness(130)
    session.set_filter("warm")
    session.rotate("right")
    session.flip("v")
    assert session.history.undo_depth == 4

    # Step 2: background removal succeeds on the third attempt
    result = await session.remove_background()
    assert result.path is ToolPath.SERVICE
    assert recording_sleep.delays == [2.0, 4.0]
    assert "AI busy. Retrying (1/3)..." in statuses
    assert "AI busy. Retrying (2/3)..." in statuses
    assert session.state.background_removed is True
    assert session.state.brightness == 130

    # Step 3: erase an object drawn on a half-size display
    session.toggle_eraser()
    session.set_brush_size(16)
    assert session.begin_stroke(100, 100)
    session.extend_stroke(110, 100)
    erased = await session.end_stroke(display_size=(300, 200))
    assert erased.path is ToolPath.LOCAL
    assert session.state.background_removed is True

    # Step 4: upscale label
    await session.upscale(2)
    assert session.history.undo_depth == 7

    # Step 5: export twice, one second apart
    ticks = itertools.count(1700000000)
    service = ExportService(storage_path=str(tmp_path / "exports"), clock=lambda: float(next(ticks)))

    first = await service.export(session, db=db_session)
    session.undo()
    second = await service.export(session, db=db_session)

    assert first.filename == "MODIVIS_Export_1700000000000_2x.png"
    assert second.filename == "MODIVIS_Export_1700000001000.png"
    assert (first.width, first.height) == (400, 600)
    assert png_decoder((service.storage_path / first.filename).read_bytes()).size == (400, 600)

    exports = await service.list_exports(session.session_id, db=db_session)
    assert [record.id for record in exports] == [second.id, first.id]
    assert exports[0].upscale_level == 1
    assert exports[1].background_removed is True

    # Step 6: reset brings back the original source
    session.reset()
    assert session.state.image_ref.data == source
    assert session.history.undo_depth == 0
