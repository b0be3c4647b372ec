"""Raster Service for compositing edit states into exportable images.

This service handles:
- Decoding source bytes into an in-memory bitmap
- Computing rotated output bounds
- Applying the filter chain and the affine transform
- Encoding the result to PNG

All pixel work goes through a RasterSurface; the compositor keeps no
device state of its own.
"""

import asyncio
import io
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, Sequence, Tuple

from PIL import Image, ImageChops, ImageDraw, ImageFilter, UnidentifiedImageError

from modivis.errors import EncodingError
from modivis.services.transform_pipeline import EffectDescriptor, FilterOp


logger = logging.getLogger(__name__)


# Canvas API limit, same bound the loader enforces on sources
MAX_DIMENSION = 32767


def rotated_bounds(width: int, height: int, degrees: float) -> Tuple[int, int]:
    """
    Bounding box of a ``width`` x ``height`` raster rotated by ``degrees``.

    outW = w*|cos t| + h*|sin t|, outH = w*|sin t| + h*|cos t|. Right angles
    are snapped so 90/270 swap the sides exactly and 0/180 keep them.
    """
    if degrees % 90 == 0:
        quarter_turns = int(degrees // 90) % 4
        if quarter_turns % 2:
            return height, width
        return width, height

    radians = math.radians(degrees)
    sin = abs(math.sin(radians))
    cos = abs(math.cos(radians))
    out_w = width * cos + height * sin
    out_h = width * sin + height * cos
    return max(1, int(round(out_w))), max(1, int(round(out_h)))


@dataclass(frozen=True)
class RenderResult:
    """Encoded output plus its dimensions."""
    data: bytes
    width: int
    height: int
    mime_type: str = "image/png"


class RasterSurface(ABC):
    """Abstract load/draw/encode capability."""

    @abstractmethod
    def decode(self, data: bytes) -> Any:
        """Decode encoded bytes into a bitmap."""
        pass

    @abstractmethod
    def size(self, bitmap: Any) -> Tuple[int, int]:
        """Return (width, height) of a bitmap."""
        pass

    @abstractmethod
    def apply_filters(self, bitmap: Any, chain: Sequence[FilterOp]) -> Any:
        """Apply the filter chain in order."""
        pass

    @abstractmethod
    def draw_transformed(
        self,
        bitmap: Any,
        canvas_size: Tuple[int, int],
        rotation_degrees: float,
        scale: Tuple[int, int],
    ) -> Any:
        """Draw ``bitmap`` centred on a new canvas, rotated then scaled."""
        pass

    @abstractmethod
    def apply_radial_mask(self, bitmap: Any, inner_radius: float, outer_radius: float) -> Any:
        """Fade alpha from opaque at ``inner_radius`` to clear at ``outer_radius``."""
        pass

    @abstractmethod
    def clone_stamp(
        self,
        bitmap: Any,
        centers: Iterable[Tuple[float, float]],
        radius: float,
        offset: Tuple[int, int],
        source: Any = None,
    ) -> Any:
        """Cover each circle with pixels copied from ``offset`` away in ``source``."""
        pass

    @abstractmethod
    def encode(self, bitmap: Any, image_format: str = "PNG") -> bytes:
        """Encode a bitmap to bytes."""
        pass


class PillowSurface(RasterSurface):
    """RasterSurface backed by Pillow. Bitmaps are RGBA ``Image`` objects."""

    def decode(self, data: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise EncodingError(f"Cannot decode source image: {e}")
        width, height = image.size
        if width > MAX_DIMENSION or height > MAX_DIMENSION:
            raise EncodingError(
                f"Source exceeds maximum dimension ({MAX_DIMENSION}): {width}x{height}"
            )
        return image.convert("RGBA")

    def size(self, bitmap: Image.Image) -> Tuple[int, int]:
        return bitmap.size

    def apply_filters(self, bitmap: Image.Image, chain: Sequence[FilterOp]) -> Image.Image:
        rgb, alpha = bitmap.convert("RGB"), bitmap.getchannel("A")
        for op in chain:
            if _is_identity(op):
                continue
            rgb = self._apply_op(rgb, op)
        rgb.putalpha(alpha)
        return rgb

    def draw_transformed(
        self,
        bitmap: Image.Image,
        canvas_size: Tuple[int, int],
        rotation_degrees: float,
        scale: Tuple[int, int],
    ) -> Image.Image:
        # translate -> rotate -> scale maps image space through the scale first
        scale_x, scale_y = scale
        if scale_x < 0:
            bitmap = bitmap.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
        if scale_y < 0:
            bitmap = bitmap.transpose(Image.Transpose.FLIP_TOP_BOTTOM)

        if rotation_degrees % 90 == 0:
            # Clockwise quarter turns, lossless
            quarter_turns = int(rotation_degrees // 90) % 4
            transpose = {
                1: Image.Transpose.ROTATE_270,
                2: Image.Transpose.ROTATE_180,
                3: Image.Transpose.ROTATE_90,
            }.get(quarter_turns)
            rotated = bitmap.transpose(transpose) if transpose is not None else bitmap
        else:
            # Canvas rotation is clockwise on screen; PIL rotates counter-clockwise
            rotated = bitmap.rotate(
                -rotation_degrees,
                resample=Image.Resampling.BICUBIC,
                expand=True,
            )

        canvas = Image.new("RGBA", canvas_size, (0, 0, 0, 0))
        left = (canvas_size[0] - rotated.width) // 2
        top = (canvas_size[1] - rotated.height) // 2
        # Plain paste onto a clear canvas keeps the source alpha as is
        canvas.paste(rotated, (left, top))
        return canvas

    def apply_radial_mask(
        self,
        bitmap: Image.Image,
        inner_radius: float,
        outer_radius: float,
    ) -> Image.Image:
        width, height = bitmap.size
        outer_radius = max(outer_radius, 1.0)
        inner_radius = min(max(inner_radius, 0.0), outer_radius)

        # radial_gradient is 256x256 with value 2*distance from its centre,
        # saturating at 255; scale it so 255 lands on outer_radius
        side = max(int(math.ceil(2 * outer_radius * 256 / 255)), 1)
        gradient = Image.radial_gradient("L").resize((side, side), Image.Resampling.BILINEAR)

        inner_level = 255 * inner_radius / outer_radius
        span = max(255 - inner_level, 1e-6)
        table = [
            255 if level <= inner_level else _clip(255 * (255 - level) / span)
            for level in range(256)
        ]
        falloff = gradient.point(table)

        mask = Image.new("L", bitmap.size, 0)
        mask.paste(falloff, (int(round(width / 2 - side / 2)), int(round(height / 2 - side / 2))))

        result = bitmap.copy()
        result.putalpha(ImageChops.multiply(bitmap.getchannel("A"), mask))
        return result

    def clone_stamp(
        self,
        bitmap: Image.Image,
        centers: Iterable[Tuple[float, float]],
        radius: float,
        offset: Tuple[int, int],
        source: Image.Image = None,
    ) -> Image.Image:
        width, height = bitmap.size
        offset_x, offset_y = offset
        source = bitmap if source is None else source

        # Source drawn at (-offset_x, -offset_y); every stamp copies from the
        # untouched source, so the stamps can be merged into one mask.
        shifted = Image.new("RGBA", bitmap.size, (0, 0, 0, 0))
        shifted.paste(source, (-offset_x, -offset_y))

        mask = Image.new("L", bitmap.size, 0)
        draw = ImageDraw.Draw(mask)
        for x, y in centers:
            draw.ellipse((x - radius, y - radius, x + radius, y + radius), fill=255)

        # Nothing is drawn where the shifted source has no pixels
        coverage = Image.new("L", bitmap.size, 0)
        ImageDraw.Draw(coverage).rectangle(
            (-offset_x, -offset_y, width - offset_x - 1, height - offset_y - 1),
            fill=255,
        )
        mask = ImageChops.multiply(mask, coverage)

        return Image.composite(shifted, bitmap, mask)

    def encode(self, bitmap: Image.Image, image_format: str = "PNG") -> bytes:
        buffer = io.BytesIO()
        try:
            bitmap.save(buffer, format=image_format)
        except (OSError, ValueError, KeyError) as e:
            raise EncodingError(f"Cannot encode image as {image_format}: {e}")
        return buffer.getvalue()

    def _apply_op(self, rgb: Image.Image, op: FilterOp) -> Image.Image:
        amount = op.magnitude / 100.0
        name = op.operation

        if name == "brightness":
            return rgb.point(lambda v: _clip(v * amount))
        if name == "contrast":
            return rgb.point(lambda v: _clip((v - 127.5) * amount + 127.5))
        if name == "saturate":
            return rgb.convert("RGB", _saturate_matrix(amount))
        if name == "grayscale":
            return rgb.convert("RGB", _grayscale_matrix(min(amount, 1.0)))
        if name == "sepia":
            return rgb.convert("RGB", _sepia_matrix(min(amount, 1.0)))
        if name == "hue-rotate":
            return rgb.convert("RGB", _hue_rotate_matrix(op.magnitude))
        if name == "invert":
            amount = min(amount, 1.0)
            return rgb.point(lambda v: _clip(amount * (255 - v) + (1 - amount) * v))
        if name == "blur":
            if op.magnitude <= 0:
                return rgb
            return rgb.filter(ImageFilter.GaussianBlur(radius=op.magnitude))

        raise EncodingError(f"Unsupported filter operation: {name}")


class RasterCompositor:
    """
    Renders a source image through an effect descriptor.

    Crop ratio is a display hint only; the full transformed image is
    exported.
    """

    def __init__(self, surface: RasterSurface = None):
        self.surface = surface or PillowSurface()

    def render(self, source: bytes, descriptor: EffectDescriptor) -> RenderResult:
        """
        Composite ``source`` through ``descriptor``.

        Raises:
            EncodingError: If the source cannot be decoded or output encoded
        """
        bitmap = self.surface.decode(source)
        width, height = self.surface.size(bitmap)

        geometry = descriptor.geometry
        canvas_size = rotated_bounds(width, height, geometry.rotation_degrees)

        filtered = self.surface.apply_filters(bitmap, descriptor.filter_chain)
        composed = self.surface.draw_transformed(
            filtered,
            canvas_size,
            geometry.rotation_degrees,
            geometry.scale,
        )
        data = self.surface.encode(composed, "PNG")

        logger.info(
            f"Composited {width}x{height} source to {canvas_size[0]}x{canvas_size[1]} "
            f"(rotation={geometry.rotation_degrees}, {len(descriptor.filter_chain)} filters, "
            f"{len(data)} bytes)"
        )
        return RenderResult(data=data, width=canvas_size[0], height=canvas_size[1])

    def compose(self, source: bytes, descriptor: EffectDescriptor) -> bytes:
        """Composite and return PNG bytes only."""
        return self.render(source, descriptor).data

    async def render_async(self, source: bytes, descriptor: EffectDescriptor) -> RenderResult:
        """Run ``render`` off the event loop."""
        return await asyncio.to_thread(self.render, source, descriptor)


# Magnitudes at which an operation leaves pixels unchanged
_IDENTITY_MAGNITUDES = {
    "brightness": 100,
    "contrast": 100,
    "saturate": 100,
    "grayscale": 0,
    "sepia": 0,
    "invert": 0,
    "hue-rotate": 0,
    "blur": 0,
}


def _is_identity(op: FilterOp) -> bool:
    return _IDENTITY_MAGNITUDES.get(op.operation) == op.magnitude


def _clip(value: float) -> int:
    return max(0, min(255, int(round(value))))


def _as_convert_matrix(rows) -> Tuple[float, ...]:
    # PIL's RGB->RGB convert takes 3 rows of (r, g, b, offset)
    return tuple(value for row in rows for value in (*row, 0.0))


def _saturate_matrix(s: float) -> Tuple[float, ...]:
    return _as_convert_matrix((
        (0.213 + 0.787 * s, 0.715 - 0.715 * s, 0.072 - 0.072 * s),
        (0.213 - 0.213 * s, 0.715 + 0.285 * s, 0.072 - 0.072 * s),
        (0.213 - 0.213 * s, 0.715 - 0.715 * s, 0.072 + 0.928 * s),
    ))


def _grayscale_matrix(a: float) -> Tuple[float, ...]:
    inv = 1 - a
    return _as_convert_matrix((
        (0.2126 + 0.7874 * inv, 0.7152 - 0.7152 * inv, 0.0722 - 0.0722 * inv),
        (0.2126 - 0.2126 * inv, 0.7152 + 0.2848 * inv, 0.0722 - 0.0722 * inv),
        (0.2126 - 0.2126 * inv, 0.7152 - 0.7152 * inv, 0.0722 + 0.9278 * inv),
    ))


def _sepia_matrix(a: float) -> Tuple[float, ...]:
    inv = 1 - a
    return _as_convert_matrix((
        (0.393 + 0.607 * inv, 0.769 - 0.769 * inv, 0.189 - 0.189 * inv),
        (0.349 - 0.349 * inv, 0.686 + 0.314 * inv, 0.168 - 0.168 * inv),
        (0.272 - 0.272 * inv, 0.534 - 0.534 * inv, 0.131 + 0.869 * inv),
    ))


def _hue_rotate_matrix(degrees: float) -> Tuple[float, ...]:
    radians = math.radians(degrees)
    cos, sin = math.cos(radians), math.sin(radians)
    return _as_convert_matrix((
        (0.213 + cos * 0.787 - sin * 0.213, 0.715 - cos * 0.715 - sin * 0.715, 0.072 - cos * 0.072 + sin * 0.928),
        (0.213 - cos * 0.213 + sin * 0.143, 0.715 + cos * 0.285 + sin * 0.140, 0.072 - cos * 0.072 - sin * 0.283),
        (0.213 - cos * 0.213 - sin * 0.787, 0.715 - cos * 0.715 + sin * 0.715, 0.072 + cos * 0.928 + sin * 0.072),
    ))
