"""Application configuration loaded from environment variables."""

import os
from typing import Optional
from functools import lru_cache

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Settings:
    """Application settings loaded from environment variables."""

    # Core settings
    MODIVIS_DEBUG: bool = os.getenv("MODIVIS_DEBUG", "false").lower() == "true"
    MODIVIS_HOST: str = os.getenv("MODIVIS_HOST", "0.0.0.0")
    MODIVIS_PORT: int = int(os.getenv("MODIVIS_PORT", "8000"))

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./modivis.db")

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:8000,http://127.0.0.1:8000")

    # Generative image service (Gemini)
    GEMINI_API_KEY: Optional[str] = os.getenv("GEMINI_API_KEY")
    GEMINI_ENDPOINT: str = os.getenv("GEMINI_ENDPOINT", "https://generativelanguage.googleapis.com")
    GEMINI_IMAGE_MODEL: str = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image")
    AI_REQUEST_TIMEOUT: float = float(os.getenv("AI_REQUEST_TIMEOUT", "60"))

    # Editing history
    HISTORY_CAPACITY: int = int(os.getenv("HISTORY_CAPACITY", "20"))

    # Retry policy for the generative service
    RETRY_MAX_ATTEMPTS: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    RETRY_BASE_DELAY_MS: int = int(os.getenv("RETRY_BASE_DELAY_MS", "2000"))
    RETRY_MULTIPLIER: float = float(os.getenv("RETRY_MULTIPLIER", "2"))

    # Simulated tool latency
    UPSCALE_DELAY_MS: int = int(os.getenv("UPSCALE_DELAY_MS", "1500"))
    ERASER_DELAY_MS: int = int(os.getenv("ERASER_DELAY_MS", "800"))

    # Export & source limits
    EXPORT_STORAGE_PATH: str = os.getenv("EXPORT_STORAGE_PATH", "./exports")
    SOURCE_MAX_SIZE: int = int(os.getenv("SOURCE_MAX_SIZE", "52428800"))  # 50MB
    SOURCE_FETCH_TIMEOUT: float = float(os.getenv("SOURCE_FETCH_TIMEOUT", "30"))

    def get_retry_policy(self):
        """Get the retry policy for generative service calls."""
        from modivis.services.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.RETRY_MAX_ATTEMPTS,
            base_delay=self.RETRY_BASE_DELAY_MS / 1000.0,
            multiplier=self.RETRY_MULTIPLIER,
        )

    def get_gateway_config(self):
        """Get AI gateway configuration."""
        from modivis.services.ai_service import GatewayConfig

        return GatewayConfig(
            api_key=self.GEMINI_API_KEY,
            endpoint=self.GEMINI_ENDPOINT,
            model=self.GEMINI_IMAGE_MODEL,
            timeout=self.AI_REQUEST_TIMEOUT,
            upscale_delay=self.UPSCALE_DELAY_MS / 1000.0,
            eraser_delay=self.ERASER_DELAY_MS / 1000.0,
            retry_policy=self.get_retry_policy(),
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
