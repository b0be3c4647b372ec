"""Image Loader Service for resolving image references to raster bytes.

This service handles loading source images from:
- Resident buffers (returned as is)
- URLs (HTTP/HTTPS, downloaded with aiohttp)
- File paths (local filesystem)
"""

import asyncio
import logging
from collections import OrderedDict
from pathlib import Path
from typing import Optional

import aiohttp

from modivis.errors import EncodingError
from modivis.models.edit_state import ImageRef


logger = logging.getLogger(__name__)


class ImageLoaderError(EncodingError):
    """Base exception for image loader operations."""
    pass


class ImageValidationError(ImageLoaderError):
    """Raised when source validation fails."""
    pass


class ImageLoaderService:
    """
    Resolves ImageRefs to encoded bytes.

    Remote downloads are kept in a small LRU cache so repeated renders of
    the same remote source do not hit the network again.
    """

    # Maximum image size: 50MB
    MAX_IMAGE_SIZE = 52428800

    SUPPORTED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp', 'bmp'}

    # Remote sources kept in memory
    CACHE_SIZE = 8

    def __init__(
        self,
        max_size: int = MAX_IMAGE_SIZE,
        timeout: float = 30.0,
        allow_private_urls: bool = False,
    ):
        self.max_size = max_size
        self.timeout = timeout
        self.allow_private_urls = allow_private_urls
        self._cache: "OrderedDict[str, bytes]" = OrderedDict()

    async def resolve(self, ref: ImageRef) -> bytes:
        """
        Return the encoded bytes behind ``ref``.

        Raises:
            ImageLoaderError: If the source cannot be read
        """
        if ref.is_resident:
            return ref.data

        if ref.uri in self._cache:
            self._cache.move_to_end(ref.uri)
            return self._cache[ref.uri]

        if ref.is_remote:
            data = await self.load_from_url(ref.uri)
            self._cache[ref.uri] = data
            if len(self._cache) > self.CACHE_SIZE:
                self._cache.popitem(last=False)
            return data

        return await self.load_from_file(ref.uri)

    @staticmethod
    def validate_path_security(file_path: str) -> Path:
        """
        Validate a local source path.

        Security checks:
        - Block path traversal (../ sequences)
        - Block home directory expansion (~)
        - Block null bytes
        - Validate file extension

        Raises:
            ImageValidationError: If path is invalid or unsafe
        """
        if not file_path or not isinstance(file_path, str):
            raise ImageValidationError("Invalid file path: path must be a non-empty string")

        if '\x00' in file_path:
            raise ImageValidationError("Invalid file path: null byte detected")

        path = Path(file_path)
        path_str = str(path)
        if '..' in path_str:
            raise ImageValidationError("Path traversal detected: '..' not allowed in path")
        if '~' in path_str:
            raise ImageValidationError("Home directory expansion not allowed: '~' detected")

        if not path.exists():
            raise ImageValidationError(f"File not found: {file_path}")

        try:
            resolved_path = path.resolve(strict=True)
        except (RuntimeError, OSError) as e:
            raise ImageValidationError(f"Cannot resolve path: {str(e)}")

        if not resolved_path.is_file():
            raise ImageValidationError(f"Path is not a file: {file_path}")

        extension = resolved_path.suffix.lower().lstrip('.')
        if extension not in ImageLoaderService.SUPPORTED_EXTENSIONS:
            raise ImageValidationError(
                f"Unsupported file extension: .{extension}. "
                f"Allowed extensions: .png, .jpg, .jpeg, .gif, .webp, .bmp"
            )

        return resolved_path

    async def load_from_file(self, file_path: str) -> bytes:
        """Read a local source after path validation."""
        logger.info(f"Loading image from file: {file_path}")
        path = self.validate_path_security(file_path)

        size = path.stat().st_size
        if size > self.max_size:
            raise ImageValidationError(
                f"Image too large: {size / (1024 * 1024):.1f}MB "
                f"(max {self.max_size / (1024 * 1024):.0f}MB)"
            )

        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ImageLoaderError(f"Failed to read {file_path}: {str(e)}")

    def validate_url(self, url: str) -> bool:
        """
        Validate URL for security (SSRF prevention).

        Security checks:
        - Only HTTP/HTTPS schemes allowed
        - Block localhost and private IP ranges unless explicitly allowed
        """
        from urllib.parse import urlparse
        import ipaddress
        import socket

        parsed = urlparse(url)

        if parsed.scheme not in ['http', 'https']:
            logger.warning(f"Invalid URL scheme: {parsed.scheme}")
            return False

        hostname = parsed.hostname
        if not hostname:
            return False

        if self.allow_private_urls:
            return True

        if hostname.lower() in ['localhost', '127.0.0.1', '::1']:
            logger.warning(f"Blocked localhost URL: {url}")
            return False

        try:
            ip = ipaddress.ip_address(socket.gethostbyname(hostname))
            if ip.is_private or ip.is_loopback or ip.is_link_local:
                logger.warning(f"Blocked private IP URL: {url} ({ip})")
                return False
        except socket.gaierror:
            # DNS resolution failed - let it fail later in download
            pass
        except ValueError:
            return False

        return True

    async def load_from_url(self, url: str) -> bytes:
        """
        Download a remote source.

        Raises:
            ImageValidationError: If the URL is unsafe or the payload is not an image
            ImageLoaderError: If the download fails
        """
        logger.info(f"Loading image from URL: {url}")

        if not self.validate_url(url):
            raise ImageValidationError(f"Invalid or unsafe URL: {url}")

        try:
            timeout_obj = aiohttp.ClientTimeout(total=self.timeout)

            async with aiohttp.ClientSession(timeout=timeout_obj) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise ImageLoaderError(f"HTTP {response.status}: Failed to download image from {url}")

                    content_type = response.headers.get('Content-Type', '')
                    if not content_type.startswith('image/'):
                        raise ImageValidationError(f"URL does not point to an image. Content-Type: {content_type}")

                    content_length = response.headers.get('Content-Length')
                    if content_length and int(content_length) > self.max_size:
                        raise ImageValidationError(
                            f"Image too large: {int(content_length) / (1024 * 1024):.1f}MB"
                        )

                    image_data = await response.read()

        except asyncio.TimeoutError:
            raise ImageLoaderError(f"Timeout downloading image from {url} (>{self.timeout}s)")
        except aiohttp.ClientConnectorError as e:
            raise ImageLoaderError(f"Connection failed: {str(e)}")
        except aiohttp.ClientError as e:
            raise ImageLoaderError(f"Download failed: {str(e)}")

        if len(image_data) > self.max_size:
            raise ImageValidationError(f"Image too large: {len(image_data) / (1024 * 1024):.1f}MB")

        logger.info(f"Downloaded {len(image_data)} bytes from {url}")
        return image_data

    def clear_cache(self, uri: Optional[str] = None) -> None:
        if uri is None:
            self._cache.clear()
        else:
            self._cache.pop(uri, None)
