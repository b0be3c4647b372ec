"""Unit tests for the transform pipeline."""

import pytest

from modivis.models.edit_state import EditState, FilterPreset
from modivis.services.transform_pipeline import (
    FILTER_PRESETS,
    EffectDescriptor,
    FilterOp,
    Geometry,
    compose,
    preset_css,
)


class TestCompose:
    """Test effect descriptor composition."""

    def test_neutral_state(self, image_ref):
        descriptor = compose(EditState.initial(image_ref))

        assert descriptor.to_css() == "brightness(100%) contrast(100%) saturate(100%) blur(0px)"
        assert descriptor.geometry == Geometry(0, False, False)

    def test_preset_ops_come_first(self, image_ref):
        state = EditState.initial(image_ref).with_changes(
            active_filter_preset=FilterPreset.VINTAGE,
            brightness=120,
            blur=3,
        )
        css = compose(state).to_css()

        assert css == (
            "sepia(50%) contrast(120%) saturate(80%) "
            "brightness(120%) contrast(100%) saturate(100%) blur(3px)"
        )

    def test_geometry_carried_separately(self, image_ref):
        state = EditState.initial(image_ref).with_changes(
            rotation=-90,
            flip_horizontal=True,
        )
        descriptor = compose(state)

        assert descriptor.geometry.scale == (-1, 1)
        assert descriptor.geometry.to_css() == "rotate(-90deg) scaleX(-1) scaleY(1)"
        assert "rotate" not in descriptor.to_css()

    def test_compose_is_deterministic(self, image_ref):
        state = EditState.initial(image_ref).with_changes(saturation=30)
        assert compose(state) == compose(state)

    def test_to_dict(self, image_ref):
        data = compose(EditState.initial(image_ref).with_changes(flip_vertical=True)).to_dict()

        assert data["geometry"] == {"rotationDegrees": 0, "flipH": False, "flipV": True}
        assert data["transform"] == "rotate(0deg) scaleX(1) scaleY(-1)"
        assert [op["operation"] for op in data["filterChain"]] == [
            "brightness", "contrast", "saturate", "blur",
        ]


class TestPresets:

    @pytest.mark.parametrize("preset,expected", [
        (FilterPreset.NONE, ""),
        (FilterPreset.GRAYSCALE, "grayscale(100%)"),
        (FilterPreset.SEPIA, "sepia(100%)"),
        (FilterPreset.COOL, "hue-rotate(180deg) saturate(150%)"),
        (FilterPreset.WARM, "sepia(30%) saturate(140%) hue-rotate(-10deg)"),
        (FilterPreset.INVERT, "invert(100%)"),
        (FilterPreset.BLUR, "blur(2px)"),
    ])
    def test_preset_css(self, preset, expected):
        assert preset_css(preset) == expected

    def test_every_preset_defined(self):
        assert set(FILTER_PRESETS) == set(FilterPreset)


class TestFilterOp:

    def test_fractional_magnitude(self):
        assert FilterOp("blur", 1.5, "px").to_css() == "blur(1.5px)"

    def test_empty_descriptor_css(self):
        assert EffectDescriptor((), Geometry()).to_css() == ""
