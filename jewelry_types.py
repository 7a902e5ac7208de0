"""
Jewelry Types Module

Shared data model for the try-on pipeline:
- Jewelry type and perspective enumerations
- Region, segmentation, placement and validation result dataclasses
- Image decoding helper used at every public entry point
"""

import io
import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple, Dict, List, Any, Union

import numpy as np
from PIL import Image

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Product photos are shrunk to fit inside this square before segmentation.
# Masks, cleaned images and bounding boxes share the dimensions of the
# preprocessed image.
CANONICAL_SIZE = 1024

ImageInput = Union[Image.Image, np.ndarray, bytes, str]


class SegmentationError(Exception):
    """Raised when a jewelry photo cannot be decoded or is empty."""


class JewelryType(Enum):
    """Closed set of jewelry types supported by the pipeline."""
    RING = "ring"
    NECKLACE = "necklace"
    EARRINGS = "earrings"
    BRACELET = "bracelet"

    @classmethod
    def parse(cls, value: Union["JewelryType", str]) -> "JewelryType":
        """
        Normalize a jewelry type value.

        Accepts enum members and loose strings ("Earring", "rings", "bangle").

        Raises:
            ValueError: If the value does not name a supported type
        """
        if isinstance(value, cls):
            return value

        name = str(value).strip().lower()
        aliases = {
            "earring": "earrings",
            "rings": "ring",
            "necklaces": "necklace",
            "pendant": "necklace",
            "chain": "necklace",
            "bangle": "bracelet",
            "bracelets": "bracelet",
        }
        name = aliases.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Unsupported jewelry type: {value!r}") from None


class Perspective(Enum):
    """Coarse orientation of the body part relative to the camera."""
    FRONT = "front"
    SIDE = "side"
    ANGLED = "angled"


@dataclass(frozen=True)
class Region:
    """Axis-aligned pixel rectangle with a detector confidence."""
    x: int
    y: int
    width: int
    height: int
    confidence: float = 0.0

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_bbox(self) -> Tuple[int, int, int, int]:
        """Convert to (x1, y1, x2, y2) bounding box format."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    def center(self) -> Tuple[float, float]:
        """Get center point of the region."""
        return (self.x + self.width / 2, self.y + self.height / 2)

    def overlaps(self, other: "Region") -> bool:
        """Rectangle intersection test. Touching edges count as overlap."""
        return not (
            self.x + self.width < other.x or
            other.x + other.width < self.x or
            self.y + self.height < other.y or
            other.y + other.height < self.y
        )

    def union(self, other: "Region", confidence: Optional[float] = None) -> "Region":
        """Smallest rectangle containing both regions."""
        x1 = min(self.x, other.x)
        y1 = min(self.y, other.y)
        x2 = max(self.x + self.width, other.x + other.width)
        y2 = max(self.y + self.height, other.y + other.height)
        if confidence is None:
            confidence = (self.confidence + other.confidence) / 2
        return Region(x1, y1, x2 - x1, y2 - y1, confidence)

    def clip(self, width: int, height: int) -> "Region":
        """Clip the rectangle to an image of the given size."""
        x1 = min(max(0, self.x), width)
        y1 = min(max(0, self.y), height)
        x2 = min(max(0, self.x + self.width), width)
        y2 = min(max(0, self.y + self.height), height)
        return Region(x1, y1, x2 - x1, y2 - y1, self.confidence)

    def pad(self, amount: int) -> "Region":
        return Region(
            self.x - amount,
            self.y - amount,
            self.width + 2 * amount,
            self.height + 2 * amount,
            self.confidence,
        )


@dataclass(frozen=True)
class JewelryDimensions:
    """Approximate real-world jewelry size in millimetres."""
    width: float
    height: float
    thickness: float = 2.0
    diameter: Optional[float] = None
    length: Optional[float] = None


@dataclass(frozen=True)
class JewelrySegmentation:
    """Result of isolating jewelry from its product photo."""
    mask: Image.Image
    cleaned_jewelry: Image.Image
    bounding_box: Region
    jewelry_type: JewelryType
    confidence: float
    jewelry_image: Optional[Image.Image] = None
    method: str = "rules"

    @property
    def size(self) -> Tuple[int, int]:
        return self.mask.size

    def coverage(self) -> float:
        """Fraction of mask pixels marked as jewelry."""
        mask_array = np.asarray(self.mask)
        if mask_array.size == 0:
            return 0.0
        return float(np.count_nonzero(mask_array > 128)) / mask_array.size


@dataclass(frozen=True)
class PlacementAdjustments:
    """Fine-grained manual adjustments applied on top of a placement."""
    scale_x: float = 1.0
    scale_y: float = 1.0
    skew: float = 0.0
    opacity: float = 1.0

    def clamped(self) -> "PlacementAdjustments":
        return PlacementAdjustments(
            scale_x=float(np.clip(self.scale_x, 0.5, 1.5)),
            scale_y=float(np.clip(self.scale_y, 0.5, 1.5)),
            skew=float(np.clip(self.skew, -15.0, 15.0)),
            opacity=float(np.clip(self.opacity, 0.0, 1.0)),
        )


@dataclass(frozen=True)
class PlacementCalculation:
    """Where and how to draw a jewelry item on a specific body image."""
    x: float
    y: float
    scale: float
    rotation: float = 0.0
    perspective: Perspective = Perspective.FRONT
    confidence: float = 0.5
    anatomy_points: Optional[Dict[str, Any]] = None
    adjustments: Optional[PlacementAdjustments] = None
    method: str = "fallback"

    def with_offset(self, dx: float, dy: float) -> "PlacementCalculation":
        """
        Return a new placement moved by a user drag offset.

        The result is not clamped; use placement_estimator.drag_placement
        to keep it inside the canvas margins.
        """
        return replace(self, x=self.x + dx, y=self.y + dy)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "x": self.x,
            "y": self.y,
            "scale": self.scale,
            "rotation": self.rotation,
            "perspective": self.perspective.value,
            "confidence": self.confidence,
            "method": self.method,
        }
        if self.anatomy_points:
            result["anatomy_points"] = dict(self.anatomy_points)
        if self.adjustments:
            result["adjustments"] = {
                "scale_x": self.adjustments.scale_x,
                "scale_y": self.adjustments.scale_y,
                "skew": self.adjustments.skew,
                "opacity": self.adjustments.opacity,
            }
        return result


@dataclass(frozen=True)
class ShadowConfig:
    """Drop shadow settings for compositing."""
    opacity: float = 0.3
    blur: float = 4.0
    offset_x: int = 3
    offset_y: int = 3
    color: str = "#000000"


@dataclass
class ValidationResult:
    """Outcome of comparing the original jewelry with a composite."""
    is_valid: bool
    similarity: float
    deviations: List[str] = field(default_factory=list)


def clamp01(value: float) -> float:
    """Clamp a score into [0, 1], mapping NaN to 0."""
    if value is None or math.isnan(value):
        return 0.0
    return float(min(1.0, max(0.0, value)))


def load_image(image: ImageInput) -> Image.Image:
    """
    Decode any supported image input into a PIL Image.

    Args:
        image: PIL Image, RGB/RGBA/greyscale numpy array, encoded bytes, or file path

    Returns:
        A PIL Image (a copy; the caller's input is never modified)

    Raises:
        SegmentationError: If the input cannot be decoded or has zero size
    """
    try:
        if isinstance(image, Image.Image):
            decoded = image.copy()
        elif isinstance(image, np.ndarray):
            array = image
            if array.dtype != np.uint8:
                array = np.clip(array, 0, 255).astype(np.uint8)
            decoded = Image.fromarray(array)
        elif isinstance(image, (bytes, bytearray)):
            decoded = Image.open(io.BytesIO(image))
            decoded.load()
        elif isinstance(image, str):
            decoded = Image.open(image)
            decoded.load()
        else:
            raise SegmentationError(f"Unsupported image input: {type(image).__name__}")
    except SegmentationError:
        raise
    except Exception as e:
        raise SegmentationError(f"Could not decode image: {e}") from e

    if decoded.width == 0 or decoded.height == 0:
        raise SegmentationError("Image has zero width or height")

    return decoded


def to_rgb(image: Image.Image, background: Tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    """Flatten any image mode onto a solid background and return RGB."""
    if image.mode == "RGB":
        return image.copy()
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        flattened = Image.new("RGBA", rgba.size, background + (255,))
        flattened.alpha_composite(rgba)
        return flattened.convert("RGB")
    return image.convert("RGB")
