"""
Tests for integrity validation of composites.
"""

import pytest
from PIL import Image

from integrity_validator import (
    IntegrityValidator,
    generate_validation_report,
    histogram_similarity,
    perceptual_similarity,
    prepare_for_comparison,
    quality_issues,
    size_deviation,
    structural_similarity,
    validate,
)
from jewelry_types import Region
from sample_assets import create_noise_image, create_person_image, create_ring_photo


def _ring_on_dark():
    return create_ring_photo(size=200, background=(40, 40, 60), outer_radius=80, band_width=30)


def _embed(jewelry, body, position):
    composite_image = body.copy()
    composite_image.paste(jewelry, position)
    return composite_image


def test_unmodified_embed_round_trips():
    jewelry = _ring_on_dark()
    body = create_person_image()
    composite_image = _embed(jewelry, body, (200, 400))

    result = validate(jewelry, composite_image, tolerance=0.02, region=Region(200, 400, 200, 200))

    assert result.similarity > 0.98
    assert result.deviations == []
    assert result.is_valid


def test_noise_against_photo_is_flagged():
    photo = _ring_on_dark()
    noise = create_noise_image(512, 512, seed=3)

    result = validate(photo, noise)

    assert result.similarity < 0.5
    assert result.deviations
    assert not result.is_valid


def test_undecodable_composite_is_reported_not_raised():
    result = validate(_ring_on_dark(), b"\x00\x01 broken")

    assert not result.is_valid
    assert result.similarity == 0.0
    assert len(result.deviations) == 1
    assert result.deviations[0].startswith("Validation error:")


def test_region_outside_composite_is_reported():
    result = validate(_ring_on_dark(), Image.new("RGB", (100, 100)), region=Region(500, 500, 50, 50))

    assert not result.is_valid
    assert result.deviations[0].startswith("Validation error:")


def test_identical_images_score_one():
    rgb = prepare_for_comparison(_ring_on_dark())

    assert histogram_similarity(rgb, rgb) == pytest.approx(1.0)
    assert structural_similarity(rgb, rgb) == pytest.approx(1.0)
    assert perceptual_similarity(rgb, rgb) == pytest.approx(1.0)


def test_inverted_image_scores_low_structurally():
    rgb = prepare_for_comparison(_ring_on_dark())
    inverted = 255 - rgb

    assert structural_similarity(rgb, inverted) < 0.2


def test_prepare_for_comparison_letterboxes_on_white():
    wide = Image.new("RGB", (400, 100), (0, 0, 0))
    wide.putpixel((0, 0), (255, 255, 255))

    prepared = prepare_for_comparison(wide)

    assert prepared.shape == (256, 256, 3)
    assert (prepared[0, 128] == 255).all()
    assert (prepared[128, 128] == 0).all()


def test_quality_issues():
    assert quality_issues(Image.new("RGB", (64, 64), (128, 128, 128))) == ["Extracted jewelry appears blurred"]
    assert "Extracted jewelry appears too dark" in quality_issues(Image.new("RGB", (64, 64), (5, 5, 5)))
    assert "Extracted jewelry appears too bright" in quality_issues(Image.new("RGB", (64, 64), (250, 250, 250)))
    assert "Extracted jewelry region too small" in quality_issues(_ring_on_dark().resize((20, 20)))
    assert quality_issues(_ring_on_dark()) == []


def test_size_deviation():
    assert size_deviation((100, 100), (100, 100)) == 0.0
    assert size_deviation((100, 100), (50, 100)) == pytest.approx((0.5 + 0.5 + 0.0) / 3)


def test_deviation_messages_use_percentages():
    jewelry = _ring_on_dark()
    body = create_person_image()
    composite_image = _embed(jewelry.resize((150, 150)), body, (200, 400))

    result = validate(jewelry, composite_image, region=Region(200, 400, 150, 150))

    assert any(message.startswith("Size deviation detected: ") and message.endswith("%")
               for message in result.deviations)
    assert not result.is_valid


def test_validation_report_contents():
    jewelry = _ring_on_dark()
    composite_image = _embed(jewelry, create_person_image(), (100, 100))

    report = generate_validation_report(jewelry, composite_image, region=Region(100, 100, 200, 200))

    assert report["is_valid"]
    assert set(report["metrics"]) == {"histogram", "structural", "perceptual"}
    assert set(report["deviations"]) == {"color", "shape", "texture", "size"}
    assert report["quality_issues"] == []
    assert report["region"] == (100, 100, 300, 300)


def test_redetection_pads_found_region():
    validator = IntegrityValidator()
    canvas = Image.new("RGB", (600, 600), (20, 20, 20))
    canvas.paste(Image.new("RGB", (120, 120), (230, 200, 120)), (240, 240))

    region = validator.locate_jewelry(canvas)

    assert region.x < 240 and region.y < 240
    assert region.x + region.width > 360 and region.y + region.height > 360
    assert region.x >= 0 and region.x + region.width <= 600


def test_redetection_falls_back_to_center_crop():
    flat = Image.new("RGB", (500, 400), (128, 128, 128))

    region = IntegrityValidator().locate_jewelry(flat)

    assert region == Region(190, 140, 120, 120, 0.1)
