"""Unit tests for the AI tool gateway.

Tests cover:
- Background removal retry/backoff against a scripted provider
- Fallback guarantee when the service is exhausted or fails fatally
- Gemini request/response handling and error classification
- Clone-stamp eraser and simulated upscale
"""

import base64

import pytest

from modivis.errors import (
    EncodingError,
    InvalidEditError,
    NetworkError,
    RateLimitError,
    UnknownServiceError,
)
from modivis.models.edit_state import EraserStroke, ImageRef
from modivis.services.ai_service import (
    AIToolGateway,
    GatewayConfig,
    GeminiImageProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ToolPath,
    classify_service_error,
    user_message_for,
)


@pytest.mark.asyncio
class TestRemoveBackground:
    """Test background removal paths."""

    async def test_succeeds_after_two_rate_limits(
        self, make_gateway, scripted_provider, rate_limit, recording_sleep, image_ref, png_factory
    ):
        cutout = png_factory(60, 40, (0, 0, 0, 0))
        provider = scripted_provider([
            rate_limit(),
            rate_limit(),
            ImageGenerationResponse(image_bytes=cutout),
        ])
        gateway = make_gateway(provider)
        statuses = []

        result = await gateway.remove_background(image_ref, on_status=statuses.append)

        assert result.path is ToolPath.SERVICE
        assert result.attempts == 3
        assert result.image_ref.data == cutout
        assert recording_sleep.delays == [2.0, 4.0]
        assert statuses == ["AI busy. Retrying (1/3)...", "AI busy. Retrying (2/3)..."]
        assert len(provider.calls) == 3

    async def test_request_carries_image_and_instruction(
        self, make_gateway, scripted_provider, image_ref, png_bytes
    ):
        provider = scripted_provider([ImageGenerationResponse(image_bytes=png_bytes)])
        await make_gateway(provider).remove_background(image_ref)

        request = provider.calls[0]
        assert request.image_bytes == png_bytes
        assert request.mime_type == "image/png"
        assert "Remove the background" in request.instruction_text

    async def test_three_rate_limits_fall_back_once(
        self, make_gateway, scripted_provider, rate_limit, image_ref, png_decoder
    ):
        provider = scripted_provider([rate_limit() for _ in range(3)])
        statuses = []

        result = await make_gateway(provider).remove_background(image_ref, on_status=statuses.append)

        assert result.path is ToolPath.FALLBACK
        assert result.attempts == 3
        assert len(provider.calls) == 3
        assert statuses[-1] == "Daily AI Quota Reached. Switching to manual mode automatically."
        # Fallback output is a decodable PNG with the corners faded out
        image = png_decoder(result.image_ref.data)
        assert image.getpixel((0, 0))[3] == 0

    async def test_non_retryable_error_falls_back_immediately(
        self, make_gateway, scripted_provider, recording_sleep, image_ref
    ):
        provider = scripted_provider([NetworkError("connection reset", "NETWORK")])
        statuses = []

        result = await make_gateway(provider).remove_background(image_ref, on_status=statuses.append)

        assert result.path is ToolPath.FALLBACK
        assert result.attempts == 1
        assert recording_sleep.delays == []
        assert statuses == ["Network error connecting to AI. Switching to manual mode."]

    async def test_unexpected_provider_bug_still_falls_back(
        self, make_gateway, scripted_provider, image_ref
    ):
        provider = scripted_provider([RuntimeError("provider bug")])

        result = await make_gateway(provider).remove_background(image_ref)

        assert result.path is ToolPath.FALLBACK
        assert result.error == "provider bug"

    async def test_undecodable_service_payload_falls_back(
        self, make_gateway, scripted_provider, image_ref
    ):
        provider = scripted_provider([ImageGenerationResponse(image_bytes=b"not an image")])

        result = await make_gateway(provider).remove_background(image_ref)

        assert result.path is ToolPath.FALLBACK

    async def test_without_provider_uses_fallback(self, make_gateway, image_ref):
        gateway = make_gateway()
        assert gateway.provider is None

        result = await gateway.remove_background(image_ref)

        assert result.path is ToolPath.FALLBACK
        assert result.attempts == 0

    async def test_undecodable_source_raises(self, make_gateway):
        with pytest.raises(EncodingError):
            await make_gateway().remove_background(ImageRef.from_bytes(b"garbage"))


class TestFallbackMask:

    def test_mask_geometry(self, make_gateway, png_factory, png_decoder):
        gateway = make_gateway()
        # r = 0.45 * 200 = 90; opaque to 45px, clear beyond 135px
        image = png_decoder(gateway.fallback_remove_background(png_factory(200, 200)))

        assert image.getpixel((100, 100))[3] == 255
        assert image.getpixel((100 + 40, 100))[3] == 255
        assert 0 < image.getpixel((100 + 90, 100))[3] < 255
        assert image.getpixel((0, 0))[3] == 0


class TestErrorClassification:

    @pytest.mark.parametrize("status,code,message", [
        (429, "", "Too many requests"),
        (400, "RESOURCE_EXHAUSTED", "Limit reached"),
        (403, "", "You exceeded your current quota"),
    ])
    def test_rate_limits(self, status, code, message):
        assert isinstance(classify_service_error(status, code, message), RateLimitError)

    def test_other_errors(self):
        error = classify_service_error(500, "INTERNAL", "Internal error")
        assert isinstance(error, UnknownServiceError)
        assert not isinstance(error, RateLimitError)
        assert error.error_code == "INTERNAL"

    def test_user_messages(self):
        assert "Quota" in user_message_for(RateLimitError("429"))
        assert "Network" in user_message_for(NetworkError("down"))
        assert "manual mode" in user_message_for(UnknownServiceError("?"))


class TestGeminiProvider:
    """Test Gemini payload building and response parsing."""

    @pytest.fixture
    def provider(self):
        return GeminiImageProvider(GatewayConfig(api_key="test-key"))

    def test_requires_api_key(self):
        with pytest.raises(Exception):
            GeminiImageProvider(GatewayConfig())

    def test_url(self, provider):
        assert provider.url == (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            "gemini-2.5-flash-image:generateContent"
        )

    def test_build_payload(self, provider):
        payload = provider.build_payload(
            ImageGenerationRequest(image_bytes=b"abc", mime_type="image/png", instruction_text="do it")
        )
        parts = payload["contents"][0]["parts"]

        assert parts[0]["inline_data"] == {"mime_type": "image/png", "data": "YWJj"}
        assert parts[1] == {"text": "do it"}

    def test_parse_inline_image(self, provider):
        data = {
            "candidates": [{
                "content": {"parts": [
                    {"text": "Here you go"},
                    {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(b"png").decode()}},
                ]}
            }]
        }
        response = provider.parse_response(data)

        assert response.image_bytes == b"png"
        assert response.mime_type == "image/png"

    def test_parse_without_image(self, provider):
        with pytest.raises(UnknownServiceError, match="no image data"):
            provider.parse_response({"candidates": [{"content": {"parts": [{"text": "sorry"}]}}]})


@pytest.mark.asyncio
class TestEraseAndUpscale:

    async def test_erase_region_clone_stamps(self, gateway_config, recording_sleep, png_decoder):
        from PIL import Image
        import io

        # Red object on the left, blue background to the right
        image = Image.new("RGBA", (200, 50), (0, 0, 255, 255))
        image.paste((255, 0, 0, 255), (0, 0, 40, 50))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")

        gateway_config.eraser_delay = 0.8
        gateway = AIToolGateway(config=gateway_config, sleep=recording_sleep)
        stroke = EraserStroke(points=((20.0, 25.0),), brush_size=20)

        result = await gateway.erase_region(ImageRef.from_bytes(buffer.getvalue()), [stroke])

        assert result.path is ToolPath.LOCAL
        assert recording_sleep.delays == [0.8]
        erased = png_decoder(result.image_ref.data)
        # Radius 10, source 30px to the right of each stamp
        assert erased.getpixel((20, 25)) == (0, 0, 255, 255)
        assert erased.getpixel((35, 25)) == (255, 0, 0, 255)

    async def test_erase_scales_display_coordinates(self, make_gateway, png_factory):
        gateway = make_gateway()
        calls = []
        original = gateway.surface.clone_stamp

        def spy(bitmap, centers, radius, offset, source=None):
            calls.append((list(centers), radius, offset))
            return original(bitmap, centers, radius, offset, source=source)

        gateway.surface.clone_stamp = spy
        stroke = EraserStroke(points=((10.0, 5.0),), brush_size=10)

        await gateway.erase_region(
            ImageRef.from_bytes(png_factory(200, 100)), [stroke], display_size=(100, 50)
        )

        centers, radius, offset = calls[0]
        assert centers == [(20.0, 10.0)]
        assert radius == 10.0
        assert offset == (30, 0)

    async def test_upscale_waits_and_returns_level(self, gateway_config, recording_sleep):
        gateway_config.upscale_delay = 1.5
        gateway = AIToolGateway(config=gateway_config, sleep=recording_sleep)

        assert await gateway.upscale(4) == 4
        assert recording_sleep.delays == [1.5]

    async def test_upscale_rejects_other_levels(self, make_gateway):
        with pytest.raises(InvalidEditError):
            await make_gateway().upscale(3)
