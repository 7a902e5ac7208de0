"""
Tests for the pixel-level region detectors.
"""

import numpy as np
import pytest

from jewelry_types import Region
from region_analyzer import (
    annulus_mask,
    combine_regions,
    detect_color_regions,
    detect_high_contrast_regions,
    detect_metallic_regions,
    metallic_pixel_scores,
    detect_skin_regions,
    flood_fill_largest_region,
    gradient_edge_pixels,
    hough_circle_vote,
    iter_blocks,
    normalize_contrast,
    select_best_region,
    sobel_edge_strength,
)
from sample_assets import create_ring_photo


@pytest.mark.parametrize("width,height", [(100, 100), (640, 480), (31, 900), (1, 1)])
def test_select_best_region_fallback_is_centered(width, height):
    region = select_best_region([], width, height)
    size = int(min(width, height) * 0.3)

    assert region.width == size
    assert region.height == size
    assert region.x == (width - size) // 2
    assert region.y == (height - size) // 2
    assert region.confidence == pytest.approx(0.1)


def test_select_best_region_prefers_centered_candidate():
    corner = Region(0, 0, 40, 40, 0.6)
    center = Region(230, 230, 40, 40, 0.6)

    assert select_best_region([corner, center], 500, 500) == center


def test_combine_regions_merges_overlaps_with_mean_confidence():
    regions = [
        Region(0, 0, 10, 10, 0.4),
        Region(5, 5, 10, 10, 0.8),
        Region(100, 100, 10, 10, 0.9),
    ]
    merged = combine_regions(regions)

    assert len(merged) == 2
    first = next(r for r in merged if r.x == 0)
    assert first.to_bbox() == (0, 0, 15, 15)
    assert first.confidence == pytest.approx(0.6)


def test_combine_regions_merges_touching_rectangles():
    merged = combine_regions([Region(0, 0, 10, 10, 0.5), Region(10, 0, 10, 10, 0.5)])

    assert merged == [Region(0, 0, 20, 10, 0.5)]


def test_combine_regions_is_idempotent():
    rng = np.random.default_rng(7)
    regions = [
        Region(int(x), int(y), 24, 24, float(c))
        for x, y, c in zip(rng.integers(0, 400, 60), rng.integers(0, 400, 60), rng.random(60))
    ]
    once = combine_regions(regions)
    twice = combine_regions(once)

    assert set(twice) == set(once)
    for a in once:
        for b in once:
            if a is not b:
                assert not a.overlaps(b)


def test_iter_blocks_skips_blocks_past_the_border():
    blocks = list(iter_blocks(100, 50, 32))

    assert blocks
    assert all(x + 32 <= 100 and y + 32 <= 50 for x, y in blocks)
    assert (0, 0) in blocks and (64, 16) in blocks


def test_metallic_and_color_detectors_find_gold_block():
    image = np.zeros((128, 128, 3), dtype=np.uint8)
    image[32:96, 32:96] = (230, 200, 120)
    gold = Region(32, 32, 64, 64)

    metallic = detect_metallic_regions(image)
    colored = detect_color_regions(image)

    assert metallic and all(r.overlaps(gold) for r in metallic)
    assert colored and all(r.overlaps(gold) for r in colored)
    assert all(0 <= r.confidence <= 1 for r in metallic + colored)


@pytest.mark.parametrize("grey", [128, 140])
def test_metallic_score_exactly_on_threshold_is_not_emitted(grey):
    flat = np.full((64, 64, 3), grey, dtype=np.uint8)

    assert metallic_pixel_scores(flat)[0, 0] == pytest.approx(0.4)
    assert detect_metallic_regions(flat) == []


def test_metallic_block_just_above_threshold_is_emitted():
    image = np.full((32, 32, 3), 128, dtype=np.uint8)
    image[0, 0] = (250, 250, 250)

    regions = detect_metallic_regions(image)

    assert len(regions) == 1
    assert regions[0].to_bbox() == (0, 0, 32, 32)
    assert regions[0].confidence == pytest.approx(0.4 + 0.3 / 1024)


def test_high_contrast_detector_needs_edges():
    flat = np.full((96, 96, 3), 128, dtype=np.uint8)
    stripes = flat.copy()
    dark_columns = (np.arange(96) // 4) % 2 == 0
    stripes[:, dark_columns] = 0
    stripes[:, ~dark_columns] = 255

    assert detect_high_contrast_regions(flat) == []
    assert detect_high_contrast_regions(stripes)


def test_sobel_edge_strength():
    flat = np.full((24, 24), 100.0)
    step = flat.copy()
    step[:, 12:] = 255

    assert sobel_edge_strength(flat) == 0.0
    assert 0 < sobel_edge_strength(step) <= 1.0


def test_detect_skin_regions():
    image = np.full((10, 20, 3), 255, dtype=np.uint8)
    image[:, :10] = (200, 160, 130)

    skin = detect_skin_regions(image)

    assert skin[:, :10].all()
    assert not skin[:, 10:].any()


def test_flood_fill_largest_region_uses_four_connectivity():
    mask = np.zeros((50, 50), dtype=bool)
    mask[5:15, 5:15] = True
    mask[20:45, 20:40] = True
    # Diagonal neighbours only: not connected to the big blob
    mask[45, 40] = True

    blob = flood_fill_largest_region(mask)

    assert (blob.left, blob.top, blob.right, blob.bottom) == (20, 20, 39, 44)
    assert blob.area == 25 * 20
    assert flood_fill_largest_region(np.zeros((5, 5), dtype=bool)) is None


def test_hough_circle_vote_finds_ring_center():
    photo = np.array(create_ring_photo(size=256, outer_radius=60, band_width=12))
    edges = gradient_edge_pixels(photo)

    circles = hough_circle_vote(edges, 256, 256)

    assert circles
    best = circles[0]
    assert abs(best.x - 128) <= 4 and abs(best.y - 128) <= 4

    mask = annulus_mask(circles, 256, 256)
    assert mask.max() > 0
    assert mask[128, 128] == 0


def test_normalize_contrast_keeps_flat_images():
    flat = np.full((8, 8, 3), 77, dtype=np.uint8)
    ramp = np.tile(np.arange(50, 150, dtype=np.uint8), (4, 1))

    assert (normalize_contrast(flat) == 77).all()
    stretched = normalize_contrast(ramp)
    assert stretched.min() == 0 and stretched.max() == 255
