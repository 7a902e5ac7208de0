"""
Tests for jewelry segmentation.
"""

import io

import numpy as np
import pytest
from PIL import Image, ImageDraw

from jewelry_segmenter import (
    JewelrySegmenter,
    estimate_jewelry_dimensions,
    remove_background_by_rules,
    segment,
    transparency_confidence,
    validate_segmentation,
)
from jewelry_types import (
    CANONICAL_SIZE,
    JewelrySegmentation,
    JewelryType,
    Region,
    SegmentationError,
)
from sample_assets import create_earring_photo, create_necklace_photo, create_ring_photo


class HalfTransparentRemover:
    """Fake AI remover that clears the left half of the image."""

    def remove(self, image):
        rgba = image.convert("RGBA")
        alpha = np.full((rgba.height, rgba.width), 255, dtype=np.uint8)
        alpha[:, : rgba.width // 2] = 0
        rgba.putalpha(Image.fromarray(alpha))
        return rgba


class BrokenRemover:
    def remove(self, image):
        raise RuntimeError("service unavailable")


def _png_bytes(image):
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def test_gold_ring_on_white():
    photo = _png_bytes(create_ring_photo(size=512))

    result = segment(photo, "ring")

    assert result.size == (512, 512)
    assert 0.02 <= result.coverage() <= 0.30
    assert result.confidence >= 0.5
    assert result.jewelry_type == JewelryType.RING


def test_ring_cleaning_clears_white_background():
    result = segment(create_ring_photo(size=512), JewelryType.RING)

    alpha = np.array(result.cleaned_jewelry.getchannel("A"))
    assert alpha[5, 5] == 0
    assert alpha[256, 256] == 0
    # On the band, left of center
    assert alpha[256, 256 - 88] == 255


def test_rgba_photo_produces_mask_inside_canvas():
    photo = Image.new("RGBA", (300, 400), (0, 0, 0, 0))
    draw = ImageDraw.Draw(photo)
    draw.ellipse([105, 240, 195, 360], fill=(0, 128, 0, 255))
    draw.ellipse([130, 40, 170, 80], fill=(212, 175, 55, 255))

    result = segment(photo, "earrings")
    mask = np.array(result.mask)

    assert mask.any()
    x1, y1, x2, y2 = result.bounding_box.to_bbox()
    assert 0 <= x1 < x2 <= result.cleaned_jewelry.width
    assert 0 <= y1 < y2 <= result.cleaned_jewelry.height
    assert result.confidence == pytest.approx(0.75)


def test_large_photo_is_shrunk_to_canonical_size():
    photo = create_necklace_photo(width=2048, height=1024)

    result = segment(photo, "necklace")

    assert result.size == (CANONICAL_SIZE, CANONICAL_SIZE // 2)
    assert result.cleaned_jewelry.size == result.size
    assert result.confidence == pytest.approx(0.88)


def test_small_photo_is_not_enlarged():
    result = segment(create_earring_photo(), "earring")

    assert result.size == (300, 400)


def test_undecodable_input_raises():
    with pytest.raises(SegmentationError):
        segment(b"definitely not an image", "ring")

    with pytest.raises(SegmentationError):
        segment(np.zeros((0, 10, 3), dtype=np.uint8), "ring")


def test_blank_photo_falls_back_to_generic_strategy_and_box():
    blank = Image.new("RGB", (512, 512), (255, 255, 255))

    result = segment(blank, "ring")

    assert not np.array(result.mask).any()
    assert result.bounding_box == Region(51, 51, 409, 409)


def test_ai_remover_confidence_is_averaged():
    segmenter = JewelrySegmenter(background_remover=HalfTransparentRemover())

    result = segmenter.segment(create_earring_photo(), "earrings")

    assert result.method == "ai"
    assert result.confidence == pytest.approx((0.75 + 0.9) / 2)


def test_ai_remover_failure_uses_pixel_rules():
    segmenter = JewelrySegmenter(background_remover=BrokenRemover())

    result = segmenter.segment(create_earring_photo(), "earrings")

    assert result.method == "rules"
    assert np.array(result.cleaned_jewelry.getchannel("A"))[0, 0] == 0


def test_dark_backdrop_uses_mask_as_alpha():
    photo = create_ring_photo(size=512, background=(40, 40, 60))

    result = segment(photo, "ring")
    alpha = np.array(result.cleaned_jewelry.getchannel("A"))

    assert alpha[0, 0] == 0
    assert alpha.any()


def test_remove_background_by_rules_keeps_jewelry():
    photo = create_ring_photo(size=256, outer_radius=60, band_width=20)

    cleaned = remove_background_by_rules(photo)
    alpha = np.array(cleaned.getchannel("A"))

    assert cleaned.mode == "RGBA"
    assert alpha[0, 0] == 0
    assert alpha[128, 128 - 50] == 255


@pytest.mark.parametrize("transparent_fraction,expected", [
    (0.5, 0.9),
    (0.0, 0.6),
    (0.95, 0.5),
    (0.07, 0.8),
])
def test_transparency_confidence(transparent_fraction, expected):
    alpha = np.full((100, 100), 255, dtype=np.uint8)
    alpha.ravel()[: int(alpha.size * transparent_fraction)] = 0
    image = Image.new("RGBA", (100, 100), (200, 150, 50, 255))
    image.putalpha(Image.fromarray(alpha))

    assert transparency_confidence(image) == pytest.approx(expected)


def test_estimate_jewelry_dimensions_for_ring():
    result = segment(create_ring_photo(size=512), "ring")

    dimensions = estimate_jewelry_dimensions(result)

    box = result.bounding_box
    assert dimensions.width == pytest.approx(box.width * 0.1)
    assert dimensions.diameter == pytest.approx(max(box.width, box.height) * 0.1)
    assert dimensions.thickness == 2.0
    assert dimensions.length is None


def test_estimate_jewelry_dimensions_with_type_override():
    segmentation = JewelrySegmentation(
        mask=Image.new("L", (400, 400), 255),
        cleaned_jewelry=Image.new("RGBA", (400, 400)),
        bounding_box=Region(0, 0, 300, 100),
        jewelry_type=JewelryType.RING,
        confidence=0.5,
    )

    dimensions = estimate_jewelry_dimensions(segmentation, "necklace")

    assert dimensions.width == pytest.approx(60)
    assert dimensions.height == pytest.approx(20)
    assert dimensions.length == pytest.approx(120)
    assert dimensions.thickness == 3.0
    assert dimensions.diameter is None


def test_validate_segmentation_flags_small_and_sparse_masks():
    mask = Image.new("L", (400, 400), 0)
    ImageDraw.Draw(mask).rectangle([10, 10, 29, 29], fill=255)
    segmentation = JewelrySegmentation(
        mask=mask,
        cleaned_jewelry=Image.new("RGBA", (400, 400)),
        bounding_box=Region(10, 10, 20, 20),
        jewelry_type=JewelryType.RING,
        confidence=0.5,
    )

    is_valid, score, issues = validate_segmentation(segmentation)

    assert not is_valid
    assert len(issues) == 2
    assert score == pytest.approx(0.4)


def test_jewelry_type_parsing():
    assert JewelryType.parse("Earring") == JewelryType.EARRINGS
    assert JewelryType.parse("bangle") == JewelryType.BRACELET
    assert JewelryType.parse(JewelryType.RING) == JewelryType.RING
    with pytest.raises(ValueError):
        JewelryType.parse("tiara")
