"""Shared fixtures for MODIVIS tests."""

import io
from typing import List

import pytest
from PIL import Image

from modivis.errors import RateLimitError
from modivis.models.edit_state import ImageRef
from modivis.services.ai_service import (
    AIToolGateway,
    BaseImageProvider,
    GatewayConfig,
    ImageGenerationRequest,
    ImageGenerationResponse,
)
from modivis.services.retry import RetryPolicy


def make_png(width: int = 60, height: int = 40, color=(200, 80, 40, 255)) -> bytes:
    """Encode a solid RGBA image as PNG."""
    buffer = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def decode_png(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


class RecordingSleep:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedProvider(BaseImageProvider):
    """Provider that replays a script of exceptions and responses."""

    def __init__(self, script):
        super().__init__(GatewayConfig(api_key="test-key"))
        self.script = list(script)
        self.calls: List[ImageGenerationRequest] = []

    async def generate_image(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        self.calls.append(request)
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    async def validate_connection(self) -> bool:
        return True


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def image_ref(png_bytes):
    return ImageRef.from_bytes(png_bytes)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def gateway_config():
    """Gateway config with production retry timing and no simulated latency."""
    return GatewayConfig(
        upscale_delay=0,
        eraser_delay=0,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=2.0, multiplier=2.0),
    )


@pytest.fixture
def make_gateway(gateway_config, recording_sleep):
    """Build a gateway around an optional scripted provider."""

    def _make(provider=None) -> AIToolGateway:
        return AIToolGateway(config=gateway_config, provider=provider, sleep=recording_sleep)

    return _make


@pytest.fixture
def rate_limit():
    def _make(message: str = "Resource has been exhausted (e.g. check quota).") -> RateLimitError:
        return RateLimitError(message, "RESOURCE_EXHAUSTED")

    return _make


@pytest.fixture
def png_factory():
    """make_png as a fixture, for tests that need several sizes."""
    return make_png


@pytest.fixture
def png_decoder():
    return decode_png


@pytest.fixture
def scripted_provider():
    return ScriptedProvider
