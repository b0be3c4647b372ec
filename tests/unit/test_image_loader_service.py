"""Unit tests for ImageLoaderService.

Tests source resolution for resident bytes, local files and URLs:
- Path security (traversal, home expansion, null bytes, extensions)
- Size limit enforcement
- URL validation (SSRF prevention) and the remote cache
"""

from unittest.mock import AsyncMock, patch

import pytest

from modivis.errors import EncodingError
from modivis.models.edit_state import ImageRef
from modivis.services.image_loader_service import (
    ImageLoaderService,
    ImageValidationError,
)


@pytest.fixture
def service():
    return ImageLoaderService()


@pytest.fixture
def image_file(tmp_path, png_bytes):
    path = tmp_path / "photo.png"
    path.write_bytes(png_bytes)
    return path


@pytest.mark.asyncio
class TestResolve:
    """Test ImageRef resolution."""

    async def test_resident_bytes_returned_as_is(self, service, image_ref, png_bytes):
        assert await service.resolve(image_ref) == png_bytes

    async def test_local_file(self, service, image_file, png_bytes):
        assert await service.resolve(ImageRef.from_path(str(image_file))) == png_bytes

    async def test_missing_file(self, service, tmp_path):
        with pytest.raises(ImageValidationError, match="not found"):
            await service.resolve(ImageRef.from_path(str(tmp_path / "missing.png")))

    async def test_loader_errors_are_encoding_errors(self, service, tmp_path):
        with pytest.raises(EncodingError):
            await service.resolve(ImageRef.from_path(str(tmp_path / "missing.png")))

    async def test_size_limit(self, image_file):
        service = ImageLoaderService(max_size=10)
        with pytest.raises(ImageValidationError, match="too large"):
            await service.resolve(ImageRef.from_path(str(image_file)))

    async def test_remote_sources_are_cached(self, service):
        ref = ImageRef.from_url("https://example.com/cat.png")
        with patch.object(service, "load_from_url", AsyncMock(return_value=b"remote")) as load:
            assert await service.resolve(ref) == b"remote"
            assert await service.resolve(ref) == b"remote"

        load.assert_awaited_once_with("https://example.com/cat.png")

    async def test_clear_cache(self, service):
        ref = ImageRef.from_url("https://example.com/cat.png")
        with patch.object(service, "load_from_url", AsyncMock(return_value=b"remote")) as load:
            await service.resolve(ref)
            service.clear_cache(ref.uri)
            await service.resolve(ref)

        assert load.await_count == 2

    async def test_unsafe_url_rejected(self, service):
        with pytest.raises(ImageValidationError, match="unsafe"):
            await service.load_from_url("http://localhost/secret.png")


class TestPathSecurity:

    @pytest.mark.parametrize("path", [
        "../etc/passwd.png",
        "~/photo.png",
        "photo\x00.png",
        "",
    ])
    def test_rejected_paths(self, path):
        with pytest.raises(ImageValidationError):
            ImageLoaderService.validate_path_security(path)

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        with pytest.raises(ImageValidationError, match="Unsupported file extension"):
            ImageLoaderService.validate_path_security(str(path))

    def test_directory_rejected(self, tmp_path):
        folder = tmp_path / "folder.png"
        folder.mkdir()
        with pytest.raises(ImageValidationError, match="not a file"):
            ImageLoaderService.validate_path_security(str(folder))


class TestUrlValidation:

    @pytest.mark.parametrize("url", [
        "ftp://example.com/a.png",
        "file:///etc/passwd",
        "http://localhost/a.png",
        "http://127.0.0.1/a.png",
        "https:///no-host.png",
    ])
    def test_blocked(self, service, url):
        assert service.validate_url(url) is False

    def test_private_allowed_when_configured(self):
        service = ImageLoaderService(allow_private_urls=True)
        assert service.validate_url("http://localhost:9000/a.png") is True
