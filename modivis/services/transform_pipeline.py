"""Transform pipeline composing the effect descriptor for an EditState.

The filter chain is always the preset ops first, then brightness, contrast,
saturate and blur in that order. Geometry (rotation, then horizontal flip,
then vertical flip) is kept apart from the chain and applied at composite
time as an affine transform.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from modivis.models.edit_state import EditState, FilterPreset


@dataclass(frozen=True)
class FilterOp:
    """One (operation, magnitude) step of the filter chain."""
    operation: str
    magnitude: float
    unit: str = "%"

    def to_css(self) -> str:
        return f"{self.operation}({_format_number(self.magnitude)}{self.unit})"


@dataclass(frozen=True)
class Geometry:
    """Affine part of the descriptor."""
    rotation_degrees: int = 0
    flip_h: bool = False
    flip_v: bool = False

    @property
    def scale(self) -> Tuple[int, int]:
        return (-1 if self.flip_h else 1, -1 if self.flip_v else 1)

    def to_css(self) -> str:
        scale_x, scale_y = self.scale
        return f"rotate({self.rotation_degrees}deg) scaleX({scale_x}) scaleY({scale_y})"


@dataclass(frozen=True)
class EffectDescriptor:
    """Ordered filter chain plus geometry."""
    filter_chain: Tuple[FilterOp, ...]
    geometry: Geometry

    def to_css(self) -> str:
        return " ".join(op.to_css() for op in self.filter_chain)

    def to_dict(self) -> Dict[str, object]:
        return {
            "filterChain": [
                {"operation": op.operation, "magnitude": op.magnitude, "unit": op.unit}
                for op in self.filter_chain
            ],
            "filter": self.to_css(),
            "transform": self.geometry.to_css(),
            "geometry": {
                "rotationDegrees": self.geometry.rotation_degrees,
                "flipH": self.geometry.flip_h,
                "flipV": self.geometry.flip_v,
            },
        }


FILTER_PRESETS: Dict[FilterPreset, Tuple[FilterOp, ...]] = {
    FilterPreset.NONE: (),
    FilterPreset.GRAYSCALE: (FilterOp("grayscale", 100),),
    FilterPreset.SEPIA: (FilterOp("sepia", 100),),
    FilterPreset.VINTAGE: (
        FilterOp("sepia", 50),
        FilterOp("contrast", 120),
        FilterOp("saturate", 80),
    ),
    FilterPreset.COOL: (
        FilterOp("hue-rotate", 180, "deg"),
        FilterOp("saturate", 150),
    ),
    FilterPreset.WARM: (
        FilterOp("sepia", 30),
        FilterOp("saturate", 140),
        FilterOp("hue-rotate", -10, "deg"),
    ),
    FilterPreset.INVERT: (FilterOp("invert", 100),),
    FilterPreset.BLUR: (FilterOp("blur", 2, "px"),),
}


def preset_css(preset: FilterPreset) -> str:
    """CSS string for a preset alone, as used by preset thumbnails."""
    return " ".join(op.to_css() for op in FILTER_PRESETS[preset])


def compose(state: EditState) -> EffectDescriptor:
    """Compute the effect descriptor for ``state``. Pure and deterministic."""
    adjustments = (
        FilterOp("brightness", state.brightness),
        FilterOp("contrast", state.contrast),
        FilterOp("saturate", state.saturation),
        FilterOp("blur", state.blur, "px"),
    )
    return EffectDescriptor(
        filter_chain=FILTER_PRESETS[state.active_filter_preset] + adjustments,
        geometry=Geometry(
            rotation_degrees=state.rotation,
            flip_h=state.flip_horizontal,
            flip_v=state.flip_vertical,
        ),
    )


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"
