"""Edit state value types.

EditState is replaced wholesale on every action and never mutated, so a
reference to it is a safe history snapshot.
"""

import base64
import enum
import hashlib
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from modivis.errors import InvalidEditError


ADJUSTMENT_RANGE = (0, 200)
BLUR_RANGE = (0, 10)
UPSCALE_LEVELS = (1, 2, 4)
NEUTRAL_ADJUSTMENT = 100


class FilterPreset(str, enum.Enum):
    """Preset filter catalog."""
    NONE = "none"
    GRAYSCALE = "grayscale"
    SEPIA = "sepia"
    VINTAGE = "vintage"
    COOL = "cool"
    WARM = "warm"
    INVERT = "invert"
    BLUR = "blur"


class CropRatio(str, enum.Enum):
    """Display aspect ratio hint."""
    FREE = "free"
    SQUARE = "1:1"
    PORTRAIT = "9:16"
    LANDSCAPE = "16:9"

    @property
    def aspect(self) -> Optional[float]:
        """Width / height, or None for free cropping."""
        if self is CropRatio.FREE:
            return None
        width, height = self.value.split(":")
        return int(width) / int(height)


@dataclass(frozen=True)
class ImageRef:
    """Opaque handle to a source raster.

    Either ``data`` holds resident encoded bytes, or ``uri`` points at a
    remote URL or local file that the loader resolves on demand.
    """
    data: Optional[bytes] = field(default=None, repr=False)
    uri: Optional[str] = None
    mime_type: str = "image/png"

    def __post_init__(self):
        if self.data is None and not self.uri:
            raise InvalidEditError("ImageRef requires either data or uri")

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str = "image/png") -> "ImageRef":
        return cls(data=data, mime_type=mime_type)

    @classmethod
    def from_url(cls, url: str) -> "ImageRef":
        return cls(uri=url)

    @classmethod
    def from_path(cls, path: str) -> "ImageRef":
        return cls(uri=str(path))

    @classmethod
    def from_data_url(cls, data_url: str) -> "ImageRef":
        """Parse a ``data:<mime>;base64,<payload>`` URL."""
        if not data_url.startswith("data:") or "," not in data_url:
            raise InvalidEditError("Invalid data URL")
        header, payload = data_url.split(",", 1)
        mime_type = header[len("data:"):].split(";")[0] or "image/png"
        try:
            data = base64.b64decode(payload, validate=True)
        except ValueError as e:
            raise InvalidEditError(f"Invalid base64 payload: {e}")
        return cls(data=data, mime_type=mime_type)

    @property
    def is_resident(self) -> bool:
        return self.data is not None

    @property
    def is_remote(self) -> bool:
        return self.uri is not None and self.uri.startswith(("http://", "https://"))

    @property
    def ref_id(self) -> str:
        """Short content/location digest used in logs and API payloads."""
        source = self.data if self.data is not None else self.uri.encode("utf-8")
        return hashlib.sha1(source).hexdigest()[:12]

    def to_data_url(self) -> Optional[str]:
        if self.data is None:
            return None
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refId": self.ref_id,
            "uri": self.uri,
            "mimeType": self.mime_type,
            "resident": self.is_resident,
        }


@dataclass(frozen=True)
class EditState:
    """Complete description of the current edit parameters for one image."""
    image_ref: ImageRef
    brightness: int = NEUTRAL_ADJUSTMENT
    contrast: int = NEUTRAL_ADJUSTMENT
    saturation: int = NEUTRAL_ADJUSTMENT
    blur: int = 0
    # Accumulates by +/-90 per rotate action and is never reduced modulo 360.
    rotation: int = 0
    flip_horizontal: bool = False
    flip_vertical: bool = False
    crop_ratio: CropRatio = CropRatio.FREE
    active_filter_preset: FilterPreset = FilterPreset.NONE
    background_removed: bool = False
    upscale_level: int = 1

    def __post_init__(self):
        for name in ("brightness", "contrast", "saturation"):
            _check_range(name, getattr(self, name), ADJUSTMENT_RANGE)
        _check_range("blur", self.blur, BLUR_RANGE)
        if not isinstance(self.rotation, int) or isinstance(self.rotation, bool):
            raise InvalidEditError(f"rotation must be an integer, got {self.rotation!r}")
        if self.upscale_level not in UPSCALE_LEVELS:
            raise InvalidEditError(
                f"upscale_level must be one of {UPSCALE_LEVELS}, got {self.upscale_level}"
            )
        # Coerce raw strings coming from the API into enum members
        if not isinstance(self.crop_ratio, CropRatio):
            object.__setattr__(self, "crop_ratio", _coerce(CropRatio, self.crop_ratio, "crop_ratio"))
        if not isinstance(self.active_filter_preset, FilterPreset):
            object.__setattr__(
                self,
                "active_filter_preset",
                _coerce(FilterPreset, self.active_filter_preset, "active_filter_preset"),
            )

    @classmethod
    def initial(cls, image_ref: ImageRef) -> "EditState":
        """Default state for a freshly loaded source image."""
        return cls(image_ref=image_ref)

    def with_changes(self, **changes: Any) -> "EditState":
        """Return a new state with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image": self.image_ref.to_dict(),
            "brightness": self.brightness,
            "contrast": self.contrast,
            "saturation": self.saturation,
            "blur": self.blur,
            "rotation": self.rotation,
            "flipHorizontal": self.flip_horizontal,
            "flipVertical": self.flip_vertical,
            "cropRatio": self.crop_ratio.value,
            "activeFilterPreset": self.active_filter_preset.value,
            "backgroundRemoved": self.background_removed,
            "upscaleLevel": self.upscale_level,
        }


@dataclass(frozen=True)
class EraserStroke:
    """A committed brush stroke in display coordinates."""
    points: Tuple[Tuple[float, float], ...]
    brush_size: int

    @property
    def brush_radius(self) -> float:
        return self.brush_size / 2

    def __len__(self) -> int:
        return len(self.points)


def _check_range(name: str, value: Any, bounds: Tuple[int, int]) -> None:
    low, high = bounds
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidEditError(f"{name} must be an integer, got {value!r}")
    if value < low or value > high:
        raise InvalidEditError(f"{name} must be between {low} and {high}, got {value}")


def _coerce(enum_cls, value, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidEditError(f"Invalid {name}: {value!r}. Allowed: {allowed}")
