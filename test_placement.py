"""
Tests for heuristic placement estimation.
"""

import numpy as np
import pytest
from PIL import Image

from jewelry_types import JewelryDimensions, JewelryType, Perspective, PlacementCalculation
from placement_estimator import (
    DEFAULT_CANVAS,
    PERSPECTIVE_RULES,
    ROTATION_RULES,
    BodyOrientation,
    HeuristicPlacementStrategy,
    PlacementEstimator,
    clamp_placement,
    drag_placement,
    estimate,
    fallback_placement,
    scale_from_dimensions,
)
from sample_assets import create_hand_image, create_person_image


class WildStrategy:
    """Fake strategy that ignores the canvas entirely."""

    def __init__(self, x, y, scale, rotation=0.0):
        self.placement = PlacementCalculation(x=x, y=y, scale=scale, rotation=rotation, confidence=1.7)

    def estimate(self, body_image, jewelry_type, canvas_size, dimensions=None):
        return self.placement


class FailingStrategy:
    def estimate(self, body_image, jewelry_type, canvas_size, dimensions=None):
        raise RuntimeError("landmark model crashed")


def test_necklace_without_face_uses_documented_fallback():
    body = Image.new("RGB", (1200, 900), (90, 110, 140))

    placement = estimate(body, "necklace")

    assert placement.x == pytest.approx(600)
    assert placement.y == pytest.approx(270)
    assert placement.scale == pytest.approx(0.6)
    assert placement.rotation == 0
    assert placement.confidence == pytest.approx(0.5)
    assert placement.method == "fallback"


def test_necklace_sits_below_detected_face():
    body = create_person_image()

    placement = estimate(body, JewelryType.NECKLACE)

    assert placement.method == "heuristic"
    assert 280 <= placement.x <= 320
    face_bottom = placement.anatomy_points["face"][3]
    assert placement.y > face_bottom
    assert placement.anatomy_points["neck"] == pytest.approx((placement.x, placement.y))
    assert 0.6 <= placement.confidence <= 0.9


def test_landmarks_are_reported_in_canvas_pixels():
    body = create_person_image()

    native = estimate(body, "necklace")
    doubled = estimate(body, "necklace", canvas_size=(1200, 1600))

    assert doubled.x == pytest.approx(native.x * 2)
    assert doubled.y == pytest.approx(native.y * 2)


def test_earrings_give_left_and_right_placements():
    body = create_person_image()

    placements = PlacementEstimator().estimate_multiple(body, "earrings")

    assert len(placements) == 2
    left, right = placements
    assert left.x < 300 < right.x
    assert left.rotation == -right.rotation


def test_single_placement_for_other_types():
    placements = PlacementEstimator().estimate_multiple(create_person_image(), "necklace")

    assert len(placements) == 1


def test_ring_goes_to_topmost_fingertip():
    hand = create_hand_image()

    placement = estimate(hand, "ring")

    assert placement.method == "heuristic"
    assert placement.y < 0.45 * hand.height
    assert placement.anatomy_points["fingertip"] == pytest.approx((placement.x, placement.y))


def test_bracelet_sits_below_fingertip():
    hand = create_hand_image()

    ring = estimate(hand, "ring")
    bracelet = estimate(hand, "bracelet")

    assert bracelet.y == pytest.approx(ring.y + hand.height * 0.1)
    assert "wrist" in bracelet.anatomy_points


@pytest.mark.parametrize("jewelry_type", list(JewelryType))
@pytest.mark.parametrize("x,y,scale,rotation", [
    (-500, -500, 0.0, -90),
    (5000, 5000, 10.0, 90),
    (600, 450, 1.0, 0),
])
def test_estimate_is_always_clamped(jewelry_type, x, y, scale, rotation):
    estimator = PlacementEstimator(WildStrategy(x, y, scale, rotation))

    placement = estimator.estimate(Image.new("RGB", (1200, 900)), jewelry_type)

    assert 50 <= placement.x <= 1150
    assert 50 <= placement.y <= 850
    assert 0.1 <= placement.scale <= 2.0
    assert -45 <= placement.rotation <= 45
    assert 0 <= placement.confidence <= 1


def test_strategy_failure_falls_back():
    estimator = PlacementEstimator(FailingStrategy())

    placement = estimator.estimate(Image.new("RGB", (800, 600)), "ring")

    assert placement.confidence == pytest.approx(0.5)
    assert placement.x == pytest.approx(800 * 0.6)
    assert placement.y == pytest.approx(600 * 0.65)


def test_undecodable_body_falls_back_on_default_canvas():
    placement = estimate(b"not an image", "bracelet")

    assert placement.confidence == pytest.approx(0.5)
    assert placement.x == pytest.approx(DEFAULT_CANVAS[0] * 0.575)


def test_clamp_on_tiny_canvas_centers_position():
    placement = fallback_placement(JewelryType.RING, (80, 60))

    clamped = clamp_placement(placement, (80, 60))

    assert clamped.x == pytest.approx(40)
    assert clamped.y == pytest.approx(30)


def test_scale_from_dimensions_is_clamped_per_type():
    tiny = JewelryDimensions(width=0.1, height=0.1)
    huge = JewelryDimensions(width=10000, height=10000)

    for jewelry_type in JewelryType:
        low = scale_from_dimensions(jewelry_type, tiny)
        high = scale_from_dimensions(jewelry_type, huge)
        assert 0.1 <= low <= high <= 2.0

    assert scale_from_dimensions(JewelryType.NECKLACE, None) == pytest.approx(0.6)


def test_frontal_face_is_front_perspective():
    strategy = HeuristicPlacementStrategy()
    orientation = strategy.analyze_orientation((600, 800), ears=((100, 300), (500, 300)))

    assert orientation.face_profile == pytest.approx(0.1)
    assert orientation.body_tilt == 0


def test_with_offset_returns_new_placement():
    placement = PlacementCalculation(x=100, y=200, scale=1.0)

    moved = placement.with_offset(10, -20)

    assert (moved.x, moved.y) == (110, 180)
    assert (placement.x, placement.y) == (100, 200)
    assert moved.to_dict()["perspective"] == Perspective.FRONT.value


def test_drag_placement_is_clamped_to_canvas_margins():
    placement = PlacementCalculation(x=100, y=200, scale=1.0)

    dragged = drag_placement(placement, -500, 10000, (800, 600))

    assert (dragged.x, dragged.y) == (50, 550)
    assert drag_placement(placement, 10, -20, (800, 600)).x == pytest.approx(110)


@pytest.mark.parametrize("ears,profile,necklace,earrings", [
    (((450, 500), (550, 500)), 0.9, Perspective.SIDE, Perspective.SIDE),
    (((400, 500), (600, 500)), 0.6, Perspective.ANGLED, Perspective.SIDE),
    (((350, 500), (650, 500)), 0.3, Perspective.FRONT, Perspective.ANGLED),
    (((100, 500), (900, 500)), 0.1, Perspective.FRONT, Perspective.FRONT),
])
def test_ear_distance_sets_face_profile(ears, profile, necklace, earrings):
    orientation = HeuristicPlacementStrategy().analyze_orientation((1000, 1000), ears=ears)

    assert orientation.face_profile == pytest.approx(profile)
    assert orientation.body_tilt == 0
    assert PERSPECTIVE_RULES[JewelryType.NECKLACE](orientation) == necklace
    assert PERSPECTIVE_RULES[JewelryType.EARRINGS](orientation) == earrings


def test_uneven_ears_tilt_the_necklace_and_earrings():
    strategy = HeuristicPlacementStrategy()
    orientation = strategy.analyze_orientation((1000, 1000), ears=((400, 300), (600, 380)))

    assert orientation.face_profile == pytest.approx(0.8)
    assert orientation.body_tilt == pytest.approx(-14.4)
    assert PERSPECTIVE_RULES[JewelryType.NECKLACE](orientation) == Perspective.SIDE
    assert ROTATION_RULES[JewelryType.NECKLACE](orientation, Perspective.SIDE) == pytest.approx(-17.2)
    assert ROTATION_RULES[JewelryType.EARRINGS](orientation, Perspective.SIDE) == pytest.approx(-15.08)


def test_angled_necklace_rotates_with_tilt():
    orientation = HeuristicPlacementStrategy().analyze_orientation((1000, 1000), ears=((350, 380), (650, 300)))

    assert orientation.body_tilt == pytest.approx(14.4)
    assert PERSPECTIVE_RULES[JewelryType.NECKLACE](orientation) == Perspective.ANGLED
    assert ROTATION_RULES[JewelryType.NECKLACE](orientation, Perspective.ANGLED) == pytest.approx(15.2)


@pytest.mark.parametrize("hand_point,angle,ring,ring_rotation,bracelet,bracelet_rotation", [
    ((500, 500), 0.0, Perspective.FRONT, 0.0, Perspective.ANGLED, 10.0),
    ((900, 500), 36.0, Perspective.ANGLED, -4.2, Perspective.ANGLED, 24.4),
    ((50, 100), -25.5, Perspective.FRONT, 0.0, Perspective.ANGLED, -0.2),
    ((0, 900), -55.0, Perspective.ANGLED, -31.5, Perspective.SIDE, -33.0),
])
def test_hand_position_sets_ring_and_bracelet_pose(
    hand_point, angle, ring, ring_rotation, bracelet, bracelet_rotation
):
    orientation = HeuristicPlacementStrategy().analyze_orientation((1000, 1000), hand_point=hand_point)

    assert orientation.hand_angle == pytest.approx(angle)
    assert PERSPECTIVE_RULES[JewelryType.RING](orientation) == ring
    assert ROTATION_RULES[JewelryType.RING](orientation, ring) == pytest.approx(ring_rotation)
    assert PERSPECTIVE_RULES[JewelryType.BRACELET](orientation) == bracelet
    assert ROTATION_RULES[JewelryType.BRACELET](orientation, bracelet) == pytest.approx(bracelet_rotation)


def test_steep_rule_rotation_is_clamped_by_estimate():
    orientation = BodyOrientation(body_tilt=90)
    raw_rotation = ROTATION_RULES[JewelryType.EARRINGS](orientation, Perspective.FRONT)
    estimator = PlacementEstimator(WildStrategy(600, 450, 1.0, raw_rotation))

    placement = estimator.estimate(Image.new("RGB", (1200, 900)), "earrings")

    assert raw_rotation == pytest.approx(63)
    assert placement.rotation == 45
