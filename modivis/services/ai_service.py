"""AI tool gateway with provider abstraction, retry and local fallback.

This service runs the premium editing tools:
- Background removal through an external generative image service, retried
  on rate limits and backed by a deterministic radial-mask fallback
- Object removal ("magic eraser") through a local clone-stamp heuristic
- Upscaling, which only records a level after a simulated delay
"""

import asyncio
import base64
import enum
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import aiohttp

from modivis.errors import (
    AIServiceError,
    EncodingError,
    InvalidEditError,
    NetworkError,
    RateLimitError,
    UnknownServiceError,
)
from modivis.models.edit_state import EraserStroke, ImageRef
from modivis.services.image_loader_service import ImageLoaderService
from modivis.services.raster_service import PillowSurface, RasterSurface
from modivis.services.retry import RetryPolicy, RetryStatus, retry_async


logger = logging.getLogger(__name__)


BACKGROUND_REMOVAL_INSTRUCTION = (
    "Remove the background from this image. Keep the main subject exactly as is, "
    "but make the background transparent. Return only the image."
)

# Fallback mask geometry, as fractions of the shorter side
FALLBACK_RADIUS_FACTOR = 0.45
FALLBACK_INNER_FACTOR = 0.5
FALLBACK_OUTER_FACTOR = 1.5

# Clone source sits this many brush radii to the right of the stamp
CLONE_OFFSET_FACTOR = 3

UPSCALE_TARGETS = (2, 4)

RATE_LIMIT_MARKERS = ("429", "quota", "RESOURCE_EXHAUSTED")


class ToolPath(str, enum.Enum):
    """Which path produced a tool result."""
    SERVICE = "service"
    FALLBACK = "fallback"
    RESTORE = "restore"
    LOCAL = "local"


@dataclass
class GatewayConfig:
    """AI gateway configuration."""
    api_key: Optional[str] = None
    endpoint: str = "https://generativelanguage.googleapis.com"
    model: str = "gemini-2.5-flash-image"
    timeout: float = 60.0
    upscale_delay: float = 1.5  # seconds
    eraser_delay: float = 0.8  # seconds
    instruction: str = BACKGROUND_REMOVAL_INSTRUCTION
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class ImageGenerationRequest:
    """Request sent to the generative image service."""
    image_bytes: bytes
    mime_type: str
    instruction_text: str


@dataclass
class ImageGenerationResponse:
    """Successful service response."""
    image_bytes: bytes
    mime_type: str = "image/png"
    processing_time: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Outcome of a gateway tool."""
    image_ref: ImageRef
    path: ToolPath
    attempts: int = 0
    message: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path.value,
            "attempts": self.attempts,
            "message": self.message,
            "error": self.error,
            "image": self.image_ref.to_dict(),
        }


def classify_service_error(status: Optional[int], error_code: str, message: str) -> AIServiceError:
    """Map a service failure to the retryable / non-retryable taxonomy."""
    text = f"{status or ''} {error_code} {message}"
    if status == 429 or any(marker.lower() in text.lower() for marker in RATE_LIMIT_MARKERS):
        return RateLimitError(message or "Rate limit exceeded", error_code or "RESOURCE_EXHAUSTED")
    return UnknownServiceError(message or "Unknown service error", error_code or str(status or "UNKNOWN"))


def user_message_for(error: Optional[BaseException]) -> str:
    """Friendly status shown when the fallback takes over."""
    if isinstance(error, RateLimitError):
        return "Daily AI Quota Reached. Switching to manual mode automatically."
    if isinstance(error, NetworkError):
        return "Network error connecting to AI. Switching to manual mode."
    return "An error occurred with the AI service. Switching to manual mode."


class BaseImageProvider(ABC):
    """Abstract base class for generative image providers."""

    def __init__(self, config: GatewayConfig):
        self.config = config

    @abstractmethod
    async def generate_image(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        """Run one instruction against one image.

        Raises:
            RateLimitError: On rate-limit / quota failures
            NetworkError: When the service is unreachable
            UnknownServiceError: For anything else, including empty responses
        """
        pass

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Validate provider connection and credentials."""
        pass


class GeminiImageProvider(BaseImageProvider):
    """Gemini image model provider over the generateContent REST API."""

    def __init__(self, config: GatewayConfig):
        super().__init__(config)
        if not config.api_key:
            raise AIServiceError("Gemini API key not provided", "MISSING_API_KEY")
        self.endpoint = config.endpoint.rstrip("/")

    @property
    def url(self) -> str:
        return f"{self.endpoint}/v1beta/models/{self.config.model}:generateContent"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key,
        }

    def build_payload(self, request: ImageGenerationRequest) -> Dict[str, Any]:
        return {
            "contents": [{
                "parts": [
                    {
                        "inline_data": {
                            "mime_type": request.mime_type,
                            "data": base64.b64encode(request.image_bytes).decode("ascii"),
                        }
                    },
                    {"text": request.instruction_text},
                ]
            }]
        }

    async def generate_image(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        """Generate an edited image using the Gemini API."""
        start_time = time.time()

        try:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self.url,
                    json=self.build_payload(request),
                    headers=self._headers(),
                ) as response:
                    body = await response.text()
                    if response.status != 200:
                        error_code, message = _parse_error_body(body)
                        raise classify_service_error(response.status, error_code, message)
                    data = json.loads(body)

        except asyncio.TimeoutError:
            raise NetworkError("Gemini request timed out", "TIMEOUT")
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error contacting Gemini: {e}", "NETWORK")
        except json.JSONDecodeError as e:
            raise UnknownServiceError(f"Malformed Gemini response: {e}", "BAD_RESPONSE")

        return self.parse_response(data, time.time() - start_time)

    def parse_response(self, data: Dict[str, Any], processing_time: float = 0.0) -> ImageGenerationResponse:
        """Pull the first inline image out of a generateContent response."""
        candidates = data.get("candidates") or []
        parts = []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []

        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return ImageGenerationResponse(
                    image_bytes=base64.b64decode(inline["data"]),
                    mime_type=inline.get("mimeType") or inline.get("mime_type") or "image/png",
                    processing_time=processing_time,
                    metadata={"model": data.get("modelVersion", self.config.model)},
                )

        raise UnknownServiceError("AI returned no image data", "EMPTY_RESPONSE")

    async def validate_connection(self) -> bool:
        """Validate Gemini credentials by fetching the model description."""
        try:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(
                    f"{self.endpoint}/v1beta/models/{self.config.model}",
                    headers=self._headers(),
                ) as response:
                    return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Gemini connection validation failed: {e}")
            return False


class AIToolGateway:
    """Executes AI tools against the provider or local substitutes."""

    def __init__(
        self,
        config: GatewayConfig = None,
        provider: Optional[BaseImageProvider] = None,
        surface: Optional[RasterSurface] = None,
        loader: Optional[ImageLoaderService] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.config = config or GatewayConfig()
        self.provider = provider if provider is not None else self._initialize_provider()
        self.surface = surface or PillowSurface()
        self.loader = loader or ImageLoaderService()
        self.sleep = sleep

    def _initialize_provider(self) -> Optional[BaseImageProvider]:
        """Initialize the generative provider based on configuration."""
        if not self.config.api_key:
            logger.warning("No AI provider configured, background removal will use the local fallback")
            return None
        try:
            return GeminiImageProvider(self.config)
        except AIServiceError as e:
            logger.warning(f"Failed to initialize Gemini provider: {e}")
            return None

    async def remove_background(
        self,
        image_ref: ImageRef,
        on_status: Optional[Callable[[str], Any]] = None,
    ) -> ToolResult:
        """
        Remove the background of ``image_ref``.

        Never fails because of the service: when every attempt fails the
        radial-mask fallback is applied instead.

        Raises:
            EncodingError: If the source itself cannot be read or decoded
        """
        notify = on_status or (lambda message: None)
        source = await self.loader.resolve(image_ref)

        if self.provider is None:
            message = "AI service not configured. Using manual mode."
            notify(message)
            return await self._fallback(source, attempts=0, message=message, error=None)

        request = ImageGenerationRequest(
            image_bytes=source,
            mime_type=image_ref.mime_type,
            instruction_text=self.config.instruction,
        )

        def on_retry(attempt: int, max_attempts: int, delay: float, error: BaseException) -> None:
            notify(f"AI busy. Retrying ({attempt}/{max_attempts})...")

        logger.info(f"Removing background for image {image_ref.ref_id}")
        outcome = await retry_async(
            lambda: self.provider.generate_image(request),
            self.config.retry_policy,
            sleep=self.sleep,
            on_retry=on_retry,
            handled_errors=(Exception,),
        )

        if outcome.status is RetryStatus.SUCCESS:
            response: ImageGenerationResponse = outcome.value
            try:
                # Reject payloads that are not decodable images
                self.surface.decode(response.image_bytes)
            except EncodingError as e:
                logger.warning(f"Service returned undecodable image data: {e}")
                error = UnknownServiceError(str(e), "BAD_IMAGE")
                message = user_message_for(error)
                notify(message)
                return await self._fallback(source, outcome.attempts, message, error)

            logger.info(
                f"Background removed by service after {outcome.attempts} attempt(s) "
                f"for image {image_ref.ref_id}"
            )
            return ToolResult(
                image_ref=ImageRef.from_bytes(response.image_bytes, response.mime_type),
                path=ToolPath.SERVICE,
                attempts=outcome.attempts,
                message="Background removed.",
            )

        logger.error(f"AI background removal failed ({outcome.status.value}): {outcome.error}")
        message = user_message_for(outcome.error)
        notify(message)
        return await self._fallback(source, outcome.attempts, message, outcome.error)

    async def _fallback(
        self,
        source: bytes,
        attempts: int,
        message: str,
        error: Optional[BaseException],
    ) -> ToolResult:
        data = await asyncio.to_thread(self.fallback_remove_background, source)
        logger.warning(f"Applied local background removal fallback ({len(data)} bytes)")
        return ToolResult(
            image_ref=ImageRef.from_bytes(data),
            path=ToolPath.FALLBACK,
            attempts=attempts,
            message=message,
            error=str(error) if error else None,
        )

    def fallback_remove_background(self, source: bytes) -> bytes:
        """
        Deterministic local approximation of background removal.

        Keeps a disc centred on the image: opaque out to half of
        0.45 x the shorter side, fading to transparent at 1.5 x that radius.
        """
        bitmap = self.surface.decode(source)
        width, height = self.surface.size(bitmap)
        radius = min(width, height) * FALLBACK_RADIUS_FACTOR
        masked = self.surface.apply_radial_mask(
            bitmap,
            radius * FALLBACK_INNER_FACTOR,
            radius * FALLBACK_OUTER_FACTOR,
        )
        return self.surface.encode(masked, "PNG")

    async def erase_region(
        self,
        image_ref: ImageRef,
        strokes: Sequence[EraserStroke],
        display_size: Optional[Tuple[float, float]] = None,
    ) -> ToolResult:
        """
        Remove objects under committed strokes with the clone-stamp heuristic.

        Args:
            image_ref: Image to edit
            strokes: Committed strokes in display coordinates
            display_size: Displayed (width, height) the strokes were drawn on;
                defaults to the natural size

        Raises:
            EncodingError: If the source cannot be read or decoded
        """
        source = await self.loader.resolve(image_ref)
        if self.config.eraser_delay > 0:
            await self.sleep(self.config.eraser_delay)
        data = await asyncio.to_thread(self.clone_stamp_strokes, source, strokes, display_size)
        logger.info(f"Erased {sum(len(s) for s in strokes)} stroke points on image {image_ref.ref_id}")
        return ToolResult(
            image_ref=ImageRef.from_bytes(data),
            path=ToolPath.LOCAL,
            message="Object erased.",
        )

    def clone_stamp_strokes(
        self,
        source: bytes,
        strokes: Sequence[EraserStroke],
        display_size: Optional[Tuple[float, float]] = None,
    ) -> bytes:
        original = self.surface.decode(source)
        natural_w, natural_h = self.surface.size(original)
        display_w, display_h = display_size or (natural_w, natural_h)
        scale_x = natural_w / (display_w or 1)
        scale_y = natural_h / (display_h or 1)

        result = original
        for stroke in strokes:
            if not stroke.points:
                continue
            radius = stroke.brush_radius * scale_x
            offset = (int(round(radius * CLONE_OFFSET_FACTOR)), 0)
            centers = [(x * scale_x, y * scale_y) for x, y in stroke.points]
            result = self.surface.clone_stamp(result, centers, radius, offset, source=original)

        return self.surface.encode(result, "PNG")

    async def upscale(self, level: int) -> int:
        """
        Simulated upscale: waits, then returns the level to record.

        No pixel data is resampled.
        """
        if level not in UPSCALE_TARGETS:
            raise InvalidEditError(f"Upscale level must be one of {UPSCALE_TARGETS}, got {level}")
        logger.info(f"Upscaling image to {level}x")
        if self.config.upscale_delay > 0:
            await self.sleep(self.config.upscale_delay)
        return level


def _parse_error_body(body: str) -> Tuple[str, str]:
    """Extract (status, message) from a Google-style error body."""
    try:
        error = json.loads(body).get("error", {})
    except (json.JSONDecodeError, AttributeError):
        return "", body[:500]
    if not isinstance(error, dict):
        return "", str(error)
    return str(error.get("status") or error.get("code") or ""), str(error.get("message") or "")
