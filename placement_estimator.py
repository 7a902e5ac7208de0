"""
Placement Estimator Module

Decides where and how to draw jewelry on a body image:
- Interchangeable placement strategies behind one estimate() call
- Anatomical heuristics from skin-region analysis (face, neck, ears, fingertips)
- Scale from real-world jewelry size, rotation from body tilt and hand angle
- Deterministic per-type fallbacks and final clamping
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Protocol, Tuple

import numpy as np
from PIL import Image

from jewelry_types import (
    ImageInput,
    JewelryDimensions,
    JewelryType,
    Perspective,
    PlacementCalculation,
    clamp01,
    load_image,
    to_rgb,
)
from region_analyzer import ConnectedRegion, detect_skin_regions, flood_fill_largest_region

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_CANVAS = (1200, 900)
FALLBACK_CONFIDENCE = 0.5
EDGE_MARGIN = 50
MIN_SCALE = 0.1
MAX_SCALE = 2.0
ROTATION_LIMIT = 45.0

# Heuristic fallbacks as (x fraction, y fraction, scale) of the canvas
HEURISTIC_FALLBACKS = {
    JewelryType.NECKLACE: (0.5, 0.3, 0.6),
    JewelryType.RING: (0.6, 0.65, 0.25),
    JewelryType.EARRINGS: (0.425, 0.25, 0.2),
    JewelryType.BRACELET: (0.575, 0.7, 0.35),
}

# Anatomical reference sizes in millimetres
ANATOMICAL_REFERENCES_MM = {
    JewelryType.RING: 18.0,       # finger width
    JewelryType.NECKLACE: 120.0,  # visible neck circumference
    JewelryType.EARRINGS: 17.0,   # ear height
    JewelryType.BRACELET: 65.0,   # wrist width
}

SCALE_RANGES = {
    JewelryType.RING: (0.1, 1.5),
    JewelryType.NECKLACE: (0.2, 1.5),
    JewelryType.EARRINGS: (0.1, 1.2),
    JewelryType.BRACELET: (0.2, 2.0),
}

FACE_MIN_AREA_RATIO = 0.02
FACE_ASPECT_RANGE = (0.6, 1.4)
HAND_MIN_AREA_RATIO = 0.005
EAR_OFFSET = 20
HAND_BOX_EXPANSION = 20
FINGERTIP_COLUMN_STEP = 5


class PlacementStrategy(Protocol):
    """Produces a raw placement in canvas coordinates."""

    def estimate(
        self,
        body_image: Image.Image,
        jewelry_type: JewelryType,
        canvas_size: Tuple[int, int],
        dimensions: Optional[JewelryDimensions] = None
    ) -> PlacementCalculation:
        ...


@dataclass
class BodyOrientation:
    """Coarse pose cues used for perspective and rotation."""
    face_profile: float = 0.1
    body_tilt: float = 0.0
    hand_angle: float = 0.0


# ============================================================================
# Shared helpers
# ============================================================================

def fallback_placement(
    jewelry_type: JewelryType,
    canvas_size: Tuple[int, int],
    table: Optional[Dict[JewelryType, Tuple[float, float, float]]] = None,
    method: str = "fallback"
) -> PlacementCalculation:
    """Deterministic per-type default position with confidence 0.5."""
    table = table or HEURISTIC_FALLBACKS
    width, height = canvas_size
    x_ratio, y_ratio, scale = table[jewelry_type]
    return PlacementCalculation(
        x=width * x_ratio,
        y=height * y_ratio,
        scale=scale,
        rotation=0.0,
        perspective=Perspective.FRONT,
        confidence=FALLBACK_CONFIDENCE,
        method=method,
    )


def _clamp_axis(value: float, dimension: int) -> float:
    low = min(EDGE_MARGIN, dimension / 2)
    high = max(dimension - EDGE_MARGIN, dimension / 2)
    return float(np.clip(value, low, high))


def clamp_placement(placement: PlacementCalculation, canvas_size: Tuple[int, int]) -> PlacementCalculation:
    """Keep x/y 50px inside the canvas, scale in [0.1, 2.0], rotation within 45 degrees."""
    width, height = canvas_size
    return replace(
        placement,
        x=_clamp_axis(placement.x, width),
        y=_clamp_axis(placement.y, height),
        scale=float(np.clip(placement.scale, MIN_SCALE, MAX_SCALE)),
        rotation=float(np.clip(placement.rotation, -ROTATION_LIMIT, ROTATION_LIMIT)),
        confidence=clamp01(placement.confidence),
        adjustments=placement.adjustments.clamped() if placement.adjustments else None,
    )


def drag_placement(
    placement: PlacementCalculation,
    dx: float,
    dy: float,
    canvas_size: Tuple[int, int]
) -> PlacementCalculation:
    """Merge a user drag offset into a placement and re-clamp it."""
    return clamp_placement(placement.with_offset(dx, dy), canvas_size)


def scale_from_dimensions(jewelry_type: JewelryType, dimensions: Optional[JewelryDimensions]) -> float:
    """Scale from real-world size divided by the anatomical reference."""
    if dimensions is None:
        return HEURISTIC_FALLBACKS[jewelry_type][2]

    reference = ANATOMICAL_REFERENCES_MM[jewelry_type]
    if jewelry_type == JewelryType.EARRINGS:
        scale = dimensions.height / reference
    elif jewelry_type == JewelryType.NECKLACE:
        scale = min(dimensions.width / reference, 1.5)
    else:
        scale = dimensions.width / reference

    low, high = SCALE_RANGES[jewelry_type]
    return float(np.clip(scale, low, high))


# ============================================================================
# Perspective and rotation rules
# ============================================================================

def _ring_perspective(orientation: BodyOrientation) -> Perspective:
    return Perspective.ANGLED if abs(orientation.hand_angle) > 30 else Perspective.FRONT


def _necklace_perspective(orientation: BodyOrientation) -> Perspective:
    if orientation.face_profile > 0.7:
        return Perspective.SIDE
    if orientation.face_profile > 0.3:
        return Perspective.ANGLED
    return Perspective.FRONT


def _earrings_perspective(orientation: BodyOrientation) -> Perspective:
    if orientation.face_profile > 0.5:
        return Perspective.SIDE
    if orientation.face_profile > 0.2:
        return Perspective.ANGLED
    return Perspective.FRONT


def _bracelet_perspective(orientation: BodyOrientation) -> Perspective:
    return Perspective.SIDE if abs(orientation.hand_angle) > 45 else Perspective.ANGLED


def _ring_rotation(orientation: BodyOrientation, perspective: Perspective) -> float:
    if perspective == Perspective.ANGLED:
        return -15 + orientation.hand_angle * 0.3
    if perspective == Perspective.SIDE:
        return orientation.hand_angle or -25.0
    return 0.0


def _necklace_rotation(orientation: BodyOrientation, perspective: Perspective) -> float:
    rotation = orientation.body_tilt * 0.5
    if perspective == Perspective.SIDE:
        rotation -= 10
    elif perspective == Perspective.ANGLED:
        rotation += 8 if orientation.body_tilt >= 0 else -8
    return rotation


def _earrings_rotation(orientation: BodyOrientation, perspective: Perspective) -> float:
    rotation = orientation.body_tilt * 0.7
    if perspective == Perspective.SIDE:
        rotation -= 5
    elif perspective == Perspective.ANGLED:
        rotation += 3 if orientation.body_tilt >= 0 else -3
    return rotation


def _bracelet_rotation(orientation: BodyOrientation, perspective: Perspective) -> float:
    if perspective == Perspective.ANGLED:
        return 10 + orientation.hand_angle * 0.4
    if perspective == Perspective.SIDE:
        return orientation.hand_angle * 0.6 or 15.0
    return 0.0


PERSPECTIVE_RULES = {
    JewelryType.RING: _ring_perspective,
    JewelryType.NECKLACE: _necklace_perspective,
    JewelryType.EARRINGS: _earrings_perspective,
    JewelryType.BRACELET: _bracelet_perspective,
}

ROTATION_RULES = {
    JewelryType.RING: _ring_rotation,
    JewelryType.NECKLACE: _necklace_rotation,
    JewelryType.EARRINGS: _earrings_rotation,
    JewelryType.BRACELET: _bracelet_rotation,
}


# ============================================================================
# Heuristic strategy
# ============================================================================

class HeuristicPlacementStrategy:
    """
    Landmark estimation from skin regions, without any external service.

    The largest skin blob stands in for the face (necklace, earrings) or
    the hand (ring, bracelet).
    """

    def detect_face(self, skin: np.ndarray) -> Optional[ConnectedRegion]:
        """Largest skin blob that is big enough and roughly face-shaped."""
        blob = flood_fill_largest_region(skin)
        if blob is None:
            return None
        if blob.area < skin.size * FACE_MIN_AREA_RATIO:
            return None
        aspect_ratio = blob.width / max(1, blob.height)
        if not FACE_ASPECT_RANGE[0] <= aspect_ratio <= FACE_ASPECT_RANGE[1]:
            return None
        return blob

    def detect_hand(self, skin: np.ndarray) -> Optional[ConnectedRegion]:
        blob = flood_fill_largest_region(skin)
        if blob is None or blob.area < skin.size * HAND_MIN_AREA_RATIO:
            return None
        return blob

    def find_fingertip(self, skin: np.ndarray, hand: ConnectedRegion) -> Tuple[float, float]:
        """
        Topmost skin pixel over columns of the expanded hand box.

        Falls back to the hand centroid when no column has skin.
        """
        height, width = skin.shape
        left = max(0, hand.left - HAND_BOX_EXPANSION)
        right = min(width - 1, hand.right + HAND_BOX_EXPANSION)
        top = max(0, hand.top - HAND_BOX_EXPANSION)
        bottom = min(height - 1, hand.bottom + HAND_BOX_EXPANSION)

        best = None
        for x in range(left, right + 1, FINGERTIP_COLUMN_STEP):
            column = skin[top:bottom + 1, x]
            if not column.any():
                continue
            y = top + int(np.argmax(column))
            if best is None or y < best[1]:
                best = (float(x), float(y))

        if best is None:
            return hand.center_x, hand.center_y
        return best

    def ear_points(self, skin: np.ndarray, face: ConnectedRegion) -> Tuple[Tuple[float, float], Tuple[float, float]]:
        """Ear positions beside the face, at the height of each face side's skin mass."""
        quarter = max(1, face.width // 4)
        face_skin = skin[face.top:face.bottom + 1, face.left:face.right + 1]

        def side_height(columns: np.ndarray) -> float:
            ys = np.nonzero(columns)[0]
            if ys.size == 0:
                return face.center_y
            return face.top + float(ys.mean())

        left_y = side_height(face_skin[:, :quarter])
        right_y = side_height(face_skin[:, -quarter:])
        return (
            (float(face.left - EAR_OFFSET), left_y),
            (float(face.right + EAR_OFFSET), right_y),
        )

    def analyze_orientation(
        self,
        image_size: Tuple[int, int],
        ears: Optional[Tuple[Tuple[float, float], Tuple[float, float]]] = None,
        hand_point: Optional[Tuple[float, float]] = None
    ) -> BodyOrientation:
        width, height = image_size
        orientation = BodyOrientation()

        if ears is not None:
            (left_x, left_y), (right_x, right_y) = ears
            ear_distance = abs(right_x - left_x) / width
            if ear_distance < 0.15:
                orientation.face_profile = 0.9
            elif ear_distance < 0.25:
                orientation.face_profile = 0.6
            elif ear_distance < 0.35:
                orientation.face_profile = 0.3
            else:
                orientation.face_profile = 0.1

            height_difference = (left_y - right_y) / height
            if abs(height_difference) > 0.05:
                orientation.face_profile = min(1.0, orientation.face_profile + 0.2)
                orientation.body_tilt = height_difference * 180

        if hand_point is not None:
            hand_x = hand_point[0] / width
            hand_y = hand_point[1] / height
            angle = (hand_x - 0.5) * 90 if abs(hand_x - 0.5) > 0.3 else 0.0
            if hand_y < 0.4:
                angle += 15
            elif hand_y > 0.7:
                angle -= 10
            orientation.hand_angle = angle

        return orientation

    def estimate(
        self,
        body_image: Image.Image,
        jewelry_type: JewelryType,
        canvas_size: Tuple[int, int],
        dimensions: Optional[JewelryDimensions] = None
    ) -> PlacementCalculation:
        width, height = body_image.size
        skin = detect_skin_regions(to_rgb(body_image))
        anatomy: Dict[str, Any] = {}
        ears = None
        hand_point = None

        if jewelry_type in (JewelryType.NECKLACE, JewelryType.EARRINGS):
            face = self.detect_face(skin)
            if face is None:
                logger.warning(f"No face region found for {jewelry_type.value}; using fallback placement")
                return fallback_placement(jewelry_type, canvas_size)

            ears = self.ear_points(skin, face)
            anatomy["face"] = (face.left, face.top, face.right, face.bottom)
            anatomy["left_ear"], anatomy["right_ear"] = ears
            area_ratio = face.area / skin.size

            if jewelry_type == JewelryType.NECKLACE:
                neck_y = face.bottom + (height - face.bottom) * 0.1
                x, y = face.center_x, neck_y
                anatomy["neck"] = (x, y)
            else:
                x, y = ears[0]
        else:
            hand = self.detect_hand(skin)
            if hand is None:
                logger.warning(f"No hand region found for {jewelry_type.value}; using fallback placement")
                return fallback_placement(jewelry_type, canvas_size)

            hand_point = self.find_fingertip(skin, hand)
            anatomy["hand"] = (hand.left, hand.top, hand.right, hand.bottom)
            anatomy["fingertip"] = hand_point
            area_ratio = hand.area / skin.size

            if jewelry_type == JewelryType.RING:
                x, y = hand_point
            else:
                x, y = hand_point[0], hand_point[1] + height * 0.1
                anatomy["wrist"] = (x, y)

        orientation = self.analyze_orientation((width, height), ears, hand_point)
        perspective = PERSPECTIVE_RULES[jewelry_type](orientation)
        rotation = ROTATION_RULES[jewelry_type](orientation, perspective)

        # Landmarks are found in image pixels; report them in canvas pixels
        kx = canvas_size[0] / width
        ky = canvas_size[1] / height
        anatomy = {
            name: tuple(v * (kx if i % 2 == 0 else ky) for i, v in enumerate(point))
            for name, point in anatomy.items()
        }

        return PlacementCalculation(
            x=x * kx,
            y=y * ky,
            scale=scale_from_dimensions(jewelry_type, dimensions),
            rotation=rotation,
            perspective=perspective,
            confidence=min(0.9, 0.6 + area_ratio),
            anatomy_points=anatomy,
            method="heuristic",
        )


# ============================================================================
# Estimator
# ============================================================================

class PlacementEstimator:
    """
    Runs a placement strategy and guarantees a sane, clamped result.

    Any strategy failure or undecodable body image yields the strategy's
    deterministic fallback with confidence 0.5.
    """

    def __init__(self, strategy: Optional[PlacementStrategy] = None):
        self.strategy = strategy or HeuristicPlacementStrategy()

    def _fallback(self, jewelry_type: JewelryType, canvas_size: Tuple[int, int]) -> PlacementCalculation:
        fallback = getattr(self.strategy, "fallback", None)
        if callable(fallback):
            return fallback(jewelry_type, canvas_size)
        return fallback_placement(jewelry_type, canvas_size)

    def estimate(
        self,
        body_image: ImageInput,
        jewelry_type,
        canvas_size: Optional[Tuple[int, int]] = None,
        dimensions: Optional[JewelryDimensions] = None
    ) -> PlacementCalculation:
        """
        Estimate jewelry placement on a body image.

        Args:
            body_image: Body photo in any supported input form
            jewelry_type: JewelryType or its name
            canvas_size: Output coordinate space, default the image size
            dimensions: Optional real-world jewelry size for scaling

        Returns:
            Clamped PlacementCalculation
        """
        jewelry_type = JewelryType.parse(jewelry_type)

        try:
            image = load_image(body_image)
        except Exception as e:
            logger.error(f"Could not read body image for placement: {e}")
            canvas = canvas_size or DEFAULT_CANVAS
            return clamp_placement(self._fallback(jewelry_type, canvas), canvas)

        canvas = canvas_size or image.size
        try:
            placement = self.strategy.estimate(image, jewelry_type, canvas, dimensions)
        except Exception as e:
            logger.error(f"Placement strategy failed: {e}")
            placement = self._fallback(jewelry_type, canvas)

        placement = clamp_placement(placement, canvas)
        logger.info(
            f"Placement calculated: x={placement.x:.0f}, y={placement.y:.0f}, "
            f"scale={placement.scale:.2f}, rotation={placement.rotation:.1f}, "
            f"perspective={placement.perspective.value}, method={placement.method}"
        )
        return placement

    def estimate_multiple(
        self,
        body_image: ImageInput,
        jewelry_type,
        canvas_size: Optional[Tuple[int, int]] = None,
        dimensions: Optional[JewelryDimensions] = None
    ) -> List[PlacementCalculation]:
        """
        Placements for every item of a set.

        Earrings yield a left and a right placement when both ears are
        known; everything else yields a single placement.
        """
        jewelry_type = JewelryType.parse(jewelry_type)
        placement = self.estimate(body_image, jewelry_type, canvas_size, dimensions)

        anatomy = placement.anatomy_points or {}
        if jewelry_type != JewelryType.EARRINGS or "right_ear" not in anatomy:
            return [placement]

        canvas = canvas_size or load_image(body_image).size
        right_x, right_y = anatomy["right_ear"]
        right = clamp_placement(replace(placement, x=right_x, y=right_y, rotation=-placement.rotation), canvas)
        return [placement, right]


def estimate(
    body_image: ImageInput,
    jewelry_type,
    canvas_size: Optional[Tuple[int, int]] = None,
    dimensions: Optional[JewelryDimensions] = None,
    strategy: Optional[PlacementStrategy] = None
) -> PlacementCalculation:
    """Convenience wrapper around PlacementEstimator.estimate."""
    return PlacementEstimator(strategy).estimate(body_image, jewelry_type, canvas_size, dimensions)
