"""FastAPI main application for MODIVIS."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from modivis import __version__
from modivis.config import settings
from modivis.database.base import create_tables, engine
from modivis.middleware.logging import RequestLoggingMiddleware
from modivis.api.editor_endpoints import router as editor_router, session_registry


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("MODIVIS starting up...")

    try:
        await create_tables()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if not settings.GEMINI_API_KEY:
        logger.warning("GEMINI_API_KEY not set, background removal will use the local fallback")

    yield

    logger.info(f"MODIVIS shutting down ({len(session_registry)} open sessions)...")
    await engine.dispose()


# Create FastAPI app
app = FastAPI(
    title="MODIVIS",
    description="Image editing sessions with adjustments, history and AI-assisted tools",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware, exclude_paths=["/health"])


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "message": "MODIVIS is running", "sessions": len(session_registry)}


app.include_router(editor_router)
