"""
Vision Positioning Module

Placement and model checks backed by a vision-analysis service:
- Jewelry-type-specific positioning prompts that encode the anatomical policy
- Defensive parsing of free-text answers (JSON, then regex, then defaults)
- Necklace height-band correction
- Jewelry-free checks for generated model photos, with a bounded retry loop
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from PIL import Image

from ai_services import ImageGenerator, VisionAnalyzer
from jewelry_types import (
    JewelryDimensions,
    JewelryType,
    Perspective,
    PlacementAdjustments,
    PlacementCalculation,
    clamp01,
)
from placement_estimator import fallback_placement

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Vision fallbacks as (x fraction, y fraction, scale) of the canvas
VISION_FALLBACKS = {
    JewelryType.NECKLACE: (0.5, 0.55, 0.35),
    JewelryType.RING: (0.6, 0.55, 0.3),
    JewelryType.EARRINGS: (0.425, 0.25, 0.25),
    JewelryType.BRACELET: (0.575, 0.6, 0.4),
}

NECKLACE_BAND = (0.35, 0.75)
NECKLACE_HIGH_CORRECTION = 0.55
NECKLACE_LOW_CORRECTION = 0.60
CORRECTION_PENALTY = 0.3
MIN_CORRECTED_CONFIDENCE = 0.3
DEFAULT_JSON_CONFIDENCE = 0.8
REGEX_CONFIDENCE = 0.6

JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")
FIELD_PATTERN = r"(?<![A-Za-z_])[\"']?{name}[\"']?\s*[:=]\s*(-?\d+(?:\.\d+)?)"

POSITIONING_GUIDANCE = {
    JewelryType.NECKLACE: (
        "Place the necklace centre on the neck/upper chest where a necklace naturally rests. "
        "The y coordinate MUST fall between 35% and 75% of the image height measured from the top. "
        "Never place it on the face or chin. Follow the neckline and any shoulder tilt."
    ),
    JewelryType.EARRINGS: (
        "Place the earring at the left earlobe as seen in the image. "
        "Report both earlobes in anatomyPoints as leftEar and rightEar. "
        "Earrings hang straight down from the lobe; account for head tilt."
    ),
    JewelryType.RING: (
        "Place the ring on the base segment of the ring finger, between the knuckle and the palm. "
        "Rotation should follow the finger direction."
    ),
    JewelryType.BRACELET: (
        "Place the bracelet on the wrist just below the hand. "
        "Rotation should follow the forearm direction."
    ),
}

RESPONSE_FORMAT = """Respond with JSON only, in this format:
{{
  "position": {{"x": <pixels from left>, "y": <pixels from top>}},
  "scale": <0.1-2.0>,
  "rotation": <degrees, -45 to 45>,
  "confidence": <0.0-1.0>,
  "anatomyPoints": {{"<name>": {{"x": <pixels>, "y": <pixels>}}}},
  "adjustments": {{"scaleX": <0.5-1.5>, "scaleY": <0.5-1.5>, "skew": <-15 to 15>, "opacity": <0-1>}}
}}
Coordinates are pixels on a {width}x{height} canvas."""

JEWELRY_CHECK_PROMPT = """Look carefully at this photo of a person.
Is the person wearing any jewelry (necklaces, earrings, rings, bracelets, nose rings, anklets)?
Respond with JSON only:
{"hasJewelry": true/false, "confidence": <0.0-1.0>, "detectedItems": ["<item>", ...]}"""

JEWELRY_KEYWORD_PATTERN = re.compile(
    r"\b(jewelry|jewellery|necklaces?|earrings?|rings?|bracelets?|bangles?|pendants?|chains?|anklets?)\b",
    re.IGNORECASE,
)
NO_JEWELRY_PATTERN = re.compile(
    r"\b(no (visible )?(jewelry|jewellery)|not wearing|without (any )?(jewelry|jewellery)|jewelry[- ]free)\b",
    re.IGNORECASE,
)


@dataclass
class JewelryFreeCheck:
    """Vision verdict on whether a model photo shows jewelry."""
    has_jewelry: bool
    confidence: float
    detected_items: List[str] = field(default_factory=list)


# ============================================================================
# Prompt and response handling
# ============================================================================

def build_positioning_prompt(jewelry_type: JewelryType, canvas_size: Tuple[int, int]) -> str:
    """Build the positioning instructions for a jewelry type and canvas."""
    jewelry_type = JewelryType.parse(jewelry_type)
    width, height = canvas_size
    return (
        f"You are an expert jewelry stylist positioning a {jewelry_type.value} "
        f"on a photo of a person for a virtual try-on.\n"
        f"{POSITIONING_GUIDANCE[jewelry_type]}\n"
        f"{RESPONSE_FORMAT.format(width=width, height=height)}"
    )


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse the outermost {...} block of a free-text answer, or None."""
    match = JSON_OBJECT_PATTERN.search(text or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _number(value: Any, default: Optional[float] = None) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:
        return default
    return number


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _parse_point(value: Any) -> Optional[Tuple[float, float]]:
    if isinstance(value, dict):
        x, y = _number(value.get("x")), _number(value.get("y"))
    elif isinstance(value, (list, tuple)) and len(value) >= 2:
        x, y = _number(value[0]), _number(value[1])
    else:
        return None
    if x is None or y is None:
        return None
    return (x, y)


def _parse_anatomy(data: Any) -> Optional[Dict[str, Tuple[float, float]]]:
    if not isinstance(data, dict):
        return None
    points = {}
    for name, value in data.items():
        point = _parse_point(value)
        if point is not None:
            points[_snake_case(str(name))] = point
    return points or None


def _parse_adjustments(data: Any) -> Optional[PlacementAdjustments]:
    if not isinstance(data, dict):
        return None
    return PlacementAdjustments(
        scale_x=_number(data.get("scaleX"), 1.0),
        scale_y=_number(data.get("scaleY"), 1.0),
        skew=_number(data.get("skew"), 0.0),
        opacity=_number(data.get("opacity"), 1.0),
    ).clamped()


def _perspective_from_adjustments(adjustments: Optional[PlacementAdjustments]) -> Perspective:
    if adjustments is None:
        return Perspective.FRONT
    if abs(adjustments.skew) >= 10:
        return Perspective.SIDE
    if abs(adjustments.skew) >= 3 or abs(adjustments.scale_x - adjustments.scale_y) > 0.1:
        return Perspective.ANGLED
    return Perspective.FRONT


def _placement_from_json(data: Dict[str, Any], jewelry_type: JewelryType) -> Optional[PlacementCalculation]:
    position = data.get("position")
    point = _parse_point(position) if position is not None else _parse_point(data)
    if point is None:
        return None

    adjustments = _parse_adjustments(data.get("adjustments"))
    return PlacementCalculation(
        x=point[0],
        y=point[1],
        scale=_number(data.get("scale"), VISION_FALLBACKS[jewelry_type][2]),
        rotation=_number(data.get("rotation"), 0.0),
        perspective=_perspective_from_adjustments(adjustments),
        confidence=clamp01(_number(data.get("confidence"), DEFAULT_JSON_CONFIDENCE)),
        anatomy_points=_parse_anatomy(data.get("anatomyPoints")),
        adjustments=adjustments,
        method="vision",
    )


def _regex_field(text: str, name: str) -> Optional[float]:
    match = re.search(FIELD_PATTERN.format(name=name), text, re.IGNORECASE)
    return float(match.group(1)) if match else None


def _placement_from_regex(text: str, jewelry_type: JewelryType) -> Optional[PlacementCalculation]:
    x = _regex_field(text, "x")
    y = _regex_field(text, "y")
    if x is None or y is None:
        return None

    scale = _regex_field(text, "scale")
    rotation = _regex_field(text, "rotation")
    return PlacementCalculation(
        x=x,
        y=y,
        scale=scale if scale is not None else VISION_FALLBACKS[jewelry_type][2],
        rotation=rotation if rotation is not None else 0.0,
        perspective=Perspective.FRONT,
        confidence=REGEX_CONFIDENCE,
        method="vision_regex",
    )


def parse_vision_response(text: str, jewelry_type: JewelryType) -> Optional[PlacementCalculation]:
    """
    Turn a vision answer into a raw placement.

    Tries a JSON object first, then regex extraction of numeric fields.

    Returns:
        PlacementCalculation, or None when no position can be recovered
    """
    jewelry_type = JewelryType.parse(jewelry_type)
    data = extract_json_object(text)
    if data is not None:
        placement = _placement_from_json(data, jewelry_type)
        if placement is not None:
            return placement
        logger.warning("Vision JSON has no usable position; trying regex extraction")
    else:
        logger.warning("No JSON object in vision response; trying regex extraction")

    return _placement_from_regex(text or "", jewelry_type)


def correct_necklace_band(placement: PlacementCalculation, canvas_size: Tuple[int, int]) -> PlacementCalculation:
    """
    Pull necklace placements back into the 35%-75% height band.

    Too high lands at 55% of the canvas height, too low at 60%; either
    correction costs 0.3 confidence, floored at 0.3.
    """
    height = canvas_size[1]
    ratio = placement.y / height if height else 0.0

    if ratio < NECKLACE_BAND[0]:
        corrected_y = height * NECKLACE_HIGH_CORRECTION
    elif ratio > NECKLACE_BAND[1]:
        corrected_y = height * NECKLACE_LOW_CORRECTION
    else:
        return placement

    logger.warning(f"Necklace y at {ratio:.0%} of canvas height is outside the neck band; correcting")
    return replace(
        placement,
        y=corrected_y,
        confidence=max(MIN_CORRECTED_CONFIDENCE, placement.confidence - CORRECTION_PENALTY),
    )


# ============================================================================
# Vision strategy
# ============================================================================

class VisionPlacementStrategy:
    """
    Placement from a vision-analysis collaborator.

    Service errors and unparseable answers fall back to fixed per-type
    positions.
    """

    def __init__(self, analyzer: VisionAnalyzer, reference_image: Optional[Image.Image] = None):
        """
        Args:
            analyzer: Vision collaborator
            reference_image: Optional jewelry image sent alongside the body image
        """
        self.analyzer = analyzer
        self.reference_image = reference_image

    def fallback(self, jewelry_type: JewelryType, canvas_size: Tuple[int, int]) -> PlacementCalculation:
        return fallback_placement(jewelry_type, canvas_size, VISION_FALLBACKS, method="vision_fallback")

    def estimate(
        self,
        body_image: Image.Image,
        jewelry_type: JewelryType,
        canvas_size: Tuple[int, int],
        dimensions: Optional[JewelryDimensions] = None
    ) -> PlacementCalculation:
        images = [body_image]
        if self.reference_image is not None:
            images.append(self.reference_image)

        prompt = build_positioning_prompt(jewelry_type, canvas_size)
        try:
            text = self.analyzer.analyze(images, prompt)
        except Exception as e:
            logger.error(f"Vision positioning failed: {e}")
            return self.fallback(jewelry_type, canvas_size)

        placement = parse_vision_response(text, jewelry_type)
        if placement is None:
            logger.warning("Could not parse vision positioning; using default position")
            return self.fallback(jewelry_type, canvas_size)

        if jewelry_type == JewelryType.NECKLACE:
            placement = correct_necklace_band(placement, canvas_size)
        return placement


# ============================================================================
# Jewelry-free model checks
# ============================================================================

def parse_jewelry_check(text: str) -> JewelryFreeCheck:
    """Parse a jewelry check answer, falling back to keyword analysis."""
    data = extract_json_object(text)
    if data is not None and "hasJewelry" in data:
        items = data.get("detectedItems") or []
        if not isinstance(items, list):
            items = [items]
        return JewelryFreeCheck(
            has_jewelry=bool(data["hasJewelry"]),
            confidence=clamp01(_number(data.get("confidence"), 0.5)),
            detected_items=[str(item) for item in items],
        )

    text = text or ""
    if JEWELRY_KEYWORD_PATTERN.search(text) and not NO_JEWELRY_PATTERN.search(text):
        return JewelryFreeCheck(True, 0.8, ["detected via keyword analysis"])
    return JewelryFreeCheck(False, 0.2, [])


def check_jewelry_free(analyzer: VisionAnalyzer, image: Image.Image) -> JewelryFreeCheck:
    """Ask the vision collaborator whether a photo shows any jewelry."""
    try:
        text = analyzer.analyze([image], JEWELRY_CHECK_PROMPT)
    except Exception as e:
        logger.error(f"Jewelry check failed: {e}")
        return JewelryFreeCheck(False, 0.3, [])
    return parse_jewelry_check(text)


def generate_jewelry_free_model(
    generator: ImageGenerator,
    analyzer: VisionAnalyzer,
    prompt: str,
    max_attempts: int = 3,
    delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep
) -> Tuple[Optional[Image.Image], int, Optional[JewelryFreeCheck]]:
    """
    Generate a model photo, regenerating while jewelry is detected.

    A photo is rejected when the check reports jewelry with confidence
    above 0.5.

    Returns:
        Tuple of (last_image, attempts_used, last_check)
    """
    image = None
    check = None
    for attempt in range(1, max_attempts + 1):
        try:
            image = generator.generate(prompt)
        except Exception as e:
            logger.error(f"Model generation attempt {attempt} failed: {e}")
        else:
            check = check_jewelry_free(analyzer, image)
            if not (check.has_jewelry and check.confidence > 0.5):
                logger.info(f"Jewelry-free model generated on attempt {attempt}")
                return image, attempt, check
            logger.warning(f"Attempt {attempt} shows jewelry: {check.detected_items}")

        if attempt < max_attempts:
            sleep(delay)

    return image, max_attempts, check
