"""
Jewelry Segmenter Module

Isolates jewelry from a product photo:
- Canonical preprocessing (fit inside 1024x1024, contrast stretch, sharpen)
- Per-type mask strategies (ring, necklace, earrings, bracelet, generic)
- Mask refinement and bounding box extraction
- AI background removal with a deterministic pixel-rule fallback
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image, ImageFilter
from scipy import ndimage

from ai_services import BackgroundRemover, RembgBackgroundRemover
from jewelry_types import (
    CANONICAL_SIZE,
    ImageInput,
    JewelryDimensions,
    JewelrySegmentation,
    JewelryType,
    Region,
    SegmentationError,
    clamp01,
    load_image,
    to_rgb,
)
from region_analyzer import (
    background_difference_mask,
    brightness_map,
    detect_circular_patterns,
    estimate_background_color,
    laplacian_map,
    metallic_pixel_scores,
    normalize_contrast,
    sobel_magnitude,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MaskStrategy = Callable[[np.ndarray], Tuple[np.ndarray, float]]

BINARY_THRESHOLD = 128
GENERIC_THRESHOLD = 115
GENERIC_CONFIDENCE = 0.60
RING_CONFIDENCE_FLOOR = 0.5
NECKLACE_CONFIDENCE = 0.88

# Greyscale strategies: (threshold, confidence)
GREYSCALE_STRATEGIES = {
    JewelryType.EARRINGS: (120, 0.75),
    JewelryType.BRACELET: (110, 0.70),
}

# Millimetres per preprocessed pixel and typical thickness, per type
PIXEL_TO_MM = {
    JewelryType.RING: 0.1,
    JewelryType.NECKLACE: 0.2,
    JewelryType.EARRINGS: 0.15,
    JewelryType.BRACELET: 0.18,
}
THICKNESS_MM = {
    JewelryType.RING: 2.0,
    JewelryType.NECKLACE: 3.0,
    JewelryType.EARRINGS: 1.5,
    JewelryType.BRACELET: 4.0,
}

# 5x5 disk used to close gaps between jewelry pixels
DISK_KERNEL = np.array([
    [0, 1, 1, 1, 0],
    [1, 1, 1, 1, 1],
    [1, 1, 1, 1, 1],
    [1, 1, 1, 1, 1],
    [0, 1, 1, 1, 0],
], dtype=bool)

# Neighbours within 2.5px of the center of a 5x5 window
CHAIN_KERNEL = np.array([
    [0, 1, 1, 1, 0],
    [1, 1, 1, 1, 1],
    [1, 1, 0, 1, 1],
    [1, 1, 1, 1, 1],
    [0, 1, 1, 1, 0],
], dtype=np.float64)


# ============================================================================
# Shared mask helpers
# ============================================================================

def foreground_contrast(rgb: np.ndarray) -> np.ndarray:
    """
    Luminance distance from the estimated background, stretched to 0..255.

    Works for dark jewelry on white backdrops as well as bright jewelry on
    dark ones.
    """
    grey = brightness_map(rgb)
    background_level = float(estimate_background_color(rgb).mean())
    return normalize_contrast(np.abs(grey - background_level))


def sharpen(grey: np.ndarray) -> np.ndarray:
    return np.array(Image.fromarray(grey.astype(np.uint8)).filter(ImageFilter.SHARPEN))


def binarize(values: np.ndarray, threshold: float) -> np.ndarray:
    return np.where(values > threshold, 255, 0).astype(np.uint8)


def refine_mask(mask: np.ndarray) -> np.ndarray:
    """
    3x3 box filter and re-threshold.

    A pixel survives when at least 5 of its 9 neighbours are set, which
    fills single-pixel holes and drops isolated noise.
    """
    smoothed = ndimage.uniform_filter(mask.astype(np.float64), size=3, mode="nearest")
    return binarize(smoothed, 127)


def mask_bounding_box(mask: np.ndarray) -> Region:
    """
    Smallest rectangle containing every mask pixel above 128.

    Falls back to a centered box covering 80% of the image when the mask
    is empty.
    """
    height, width = mask.shape[:2]
    ys, xs = np.nonzero(mask > BINARY_THRESHOLD)
    if xs.size == 0:
        return Region(int(width * 0.1), int(height * 0.1), int(width * 0.8), int(height * 0.8))
    return Region(
        int(xs.min()),
        int(ys.min()),
        int(xs.max() - xs.min() + 1),
        int(ys.max() - ys.min() + 1),
    )


# ============================================================================
# Per-type strategies
# ============================================================================

def _ring_confidence(mask: np.ndarray, metallic: np.ndarray, circular: np.ndarray) -> float:
    selected = mask > 0
    total = selected.sum()
    if total == 0:
        return RING_CONFIDENCE_FLOOR

    coverage = total / selected.size
    if 0.02 <= coverage <= 0.3:
        coverage_score = 1.0
    else:
        coverage_score = max(0.0, 1 - abs(coverage - 0.1) * 10)

    metallic_overlap = (selected & metallic).sum() / total
    circular_overlap = (selected & (circular > 0)).sum() / total

    box = mask_bounding_box(mask)
    aspect_ratio = box.width / max(1, box.height)
    if 0.7 <= aspect_ratio <= 1.4:
        shape_score = 1.0
    else:
        shape_score = max(0.0, 1 - abs(aspect_ratio - 1) * 2)

    confidence = (
        0.25 * coverage_score +
        0.35 * min(1.0, metallic_overlap / 0.3) +
        0.25 * min(1.0, circular_overlap / 0.2) +
        0.15 * shape_score
    )
    return clamp01(max(RING_CONFIDENCE_FLOOR, confidence))


def segment_ring_mask(rgb: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Metallic evidence (0.7) plus Laplacian edges (0.3), boosted where
    Hough circles agree, then closed with a disk and thresholded at 150.
    """
    foreground = background_difference_mask(rgb)
    metallic = (metallic_pixel_scores(rgb) >= 0.3) & foreground
    edges = laplacian_map(brightness_map(rgb)) > 100
    circular = detect_circular_patterns(rgb).astype(np.float64) / 255.0

    combined = metallic * 0.7 + edges * 0.3
    combined = np.where(
        circular > 0.3,
        combined + circular * 0.4,
        np.where(circular > 0.1, combined + circular * 0.2, combined)
    )
    combined = np.where((circular < 0.05) & (combined < 0.4), combined * 0.7, combined)
    combined = np.clip(combined, 0.0, 1.0) * 255

    closed = ndimage.grey_closing(combined, footprint=DISK_KERNEL, mode="nearest")
    mask = binarize(closed, 150)
    if not mask.any():
        raise SegmentationError("Ring strategy found no metallic evidence")

    return mask, _ring_confidence(mask, metallic, circular)


def segment_necklace_mask(rgb: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Chain texture (0.6) combined with a contrast-boosted pendant mask (0.9),
    closed with a disk to connect links and thresholded at 180.
    """
    contrast = foreground_contrast(rgb).astype(np.float64)

    # Alternating bright/dark neighbours mark chain links
    signed = np.where(contrast > 100, 1.0, -1.0)
    texture = np.abs(ndimage.convolve(signed, CHAIN_KERNEL, mode="nearest"))
    chain = (texture > 3) & (texture < 15)

    boosted = np.clip(sharpen(contrast) * 1.2 * 1.3, 0, 255)
    pendant = boosted > 110

    combined = np.maximum(chain * 0.6, pendant * 0.9) * 255
    closed = ndimage.grey_closing(combined, footprint=DISK_KERNEL, mode="nearest")
    return binarize(closed, 180), NECKLACE_CONFIDENCE


def _greyscale_mask(rgb: np.ndarray, threshold: int) -> np.ndarray:
    return binarize(sharpen(foreground_contrast(rgb)), threshold)


def segment_earrings_mask(rgb: np.ndarray) -> Tuple[np.ndarray, float]:
    threshold, confidence = GREYSCALE_STRATEGIES[JewelryType.EARRINGS]
    return _greyscale_mask(rgb, threshold), confidence


def segment_bracelet_mask(rgb: np.ndarray) -> Tuple[np.ndarray, float]:
    threshold, confidence = GREYSCALE_STRATEGIES[JewelryType.BRACELET]
    return _greyscale_mask(rgb, threshold), confidence


def segment_generic_mask(rgb: np.ndarray) -> Tuple[np.ndarray, float]:
    return _greyscale_mask(rgb, GENERIC_THRESHOLD), GENERIC_CONFIDENCE


SEGMENTATION_STRATEGIES: Dict[JewelryType, MaskStrategy] = {
    JewelryType.RING: segment_ring_mask,
    JewelryType.NECKLACE: segment_necklace_mask,
    JewelryType.EARRINGS: segment_earrings_mask,
    JewelryType.BRACELET: segment_bracelet_mask,
}


# ============================================================================
# Background cleaning
# ============================================================================

def remove_background_by_rules(image: Image.Image, mask: Optional[np.ndarray] = None) -> Image.Image:
    """
    Deterministic background removal from pixel rules.

    Near-white, low-variance pixels become transparent, with looser limits
    within 10px of the border. Pixels on strong Sobel edges are always
    kept, as are pixels that were already opaque. When the rules find
    almost no background (dark or colored backdrops), the segmentation
    mask is used as alpha instead.

    Args:
        image: RGB or RGBA image
        mask: Optional 0/255 segmentation mask of the same size

    Returns:
        RGBA image with background alpha set to 0
    """
    rgba = np.array(image.convert("RGBA"))
    rgb = rgba[:, :, :3].astype(np.int16)
    alpha = rgba[:, :, 3]
    height, width = alpha.shape

    brightness = rgb.mean(axis=2)
    variance = np.maximum.reduce([
        np.abs(rgb[:, :, 0] - rgb[:, :, 1]),
        np.abs(rgb[:, :, 1] - rgb[:, :, 2]),
        np.abs(rgb[:, :, 0] - rgb[:, :, 2]),
    ])
    strong_edge = sobel_magnitude(brightness) > 50

    ys, xs = np.mgrid[0:height, 0:width]
    border_distance = np.minimum.reduce([xs, ys, width - 1 - xs, height - 1 - ys])
    near_border = border_distance < 10

    background = (
        ((brightness > 245) & (variance < 15)) |
        ((brightness > 235) & (variance < 20)) |
        (near_border & (brightness > 220) & (variance < 30))
    ) & ~strong_edge
    background |= alpha < 128

    if mask is not None and background.mean() < 0.05:
        logger.info("Backdrop is not near-white; using segmentation mask as alpha")
        rgba[:, :, 3] = np.where(mask > BINARY_THRESHOLD, alpha, 0)
    else:
        rgba[:, :, 3] = np.where(background, 0, alpha)

    return Image.fromarray(rgba)


def transparency_confidence(cleaned: Image.Image) -> float:
    """Confidence for an AI cutout from its transparent pixel ratio."""
    alpha = np.asarray(cleaned.getchannel("A"))
    ratio = float(np.count_nonzero(alpha < 128)) / max(1, alpha.size)
    if 0.1 <= ratio <= 0.8:
        return 0.9
    if ratio < 0.05:
        return 0.6
    if ratio > 0.9:
        return 0.5
    return 0.8


# ============================================================================
# Segmenter
# ============================================================================

class JewelrySegmenter:
    """
    Produces a mask, bounding box and background-free cutout for a
    jewelry product photo.
    """

    def __init__(
        self,
        background_remover: Optional[BackgroundRemover] = None,
        canonical_size: int = CANONICAL_SIZE
    ):
        """
        Args:
            background_remover: Optional AI remover tried before the pixel rules
            canonical_size: Longest side of the preprocessed image
        """
        self.background_remover = background_remover
        self.canonical_size = canonical_size

    def preprocess(self, image: Image.Image) -> Image.Image:
        """Fit inside the canonical square without enlarging, stretch contrast, sharpen."""
        rgb = to_rgb(image)
        rgb.thumbnail((self.canonical_size, self.canonical_size), Image.Resampling.LANCZOS)
        normalized = Image.fromarray(normalize_contrast(np.array(rgb)))
        return normalized.filter(ImageFilter.SHARPEN)

    def build_mask(self, rgb: np.ndarray, jewelry_type: JewelryType) -> Tuple[np.ndarray, float, str]:
        """
        Run the per-type strategy, degrading to the generic strategy on failure.

        Returns:
            Tuple of (mask, confidence, strategy_name)
        """
        strategy = SEGMENTATION_STRATEGIES.get(jewelry_type, segment_generic_mask)
        try:
            mask, confidence = strategy(rgb)
            return mask, confidence, jewelry_type.value
        except Exception as e:
            logger.warning(f"{jewelry_type.value} strategy failed ({e}); using generic strategy")
            mask, confidence = segment_generic_mask(rgb)
            return mask, confidence, "generic"

    def clean_background(
        self,
        image: Image.Image,
        mask: np.ndarray
    ) -> Tuple[Image.Image, str, Optional[float]]:
        """
        Remove the background, preferring the AI remover.

        Returns:
            Tuple of (rgba_image, method, ai_confidence)
        """
        if self.background_remover is not None:
            try:
                cleaned = self.background_remover.remove(image).convert("RGBA")
                if cleaned.size != image.size:
                    cleaned = cleaned.resize(image.size, Image.Resampling.LANCZOS)
                return cleaned, "ai", transparency_confidence(cleaned)
            except Exception as e:
                logger.warning(f"AI background removal failed ({e}); using pixel rules")

        return remove_background_by_rules(image, mask), "rules", None

    def segment(self, jewelry_photo: ImageInput, jewelry_type) -> JewelrySegmentation:
        """
        Segment a jewelry product photo.

        Args:
            jewelry_photo: Photo as PIL Image, array, encoded bytes or path
            jewelry_type: JewelryType or its name

        Returns:
            JewelrySegmentation sized to the preprocessed image

        Raises:
            SegmentationError: If the photo cannot be decoded or is empty
        """
        jewelry_type = JewelryType.parse(jewelry_type)
        photo = load_image(jewelry_photo)
        logger.info(f"Segmenting {jewelry_type.value} photo ({photo.width}x{photo.height})")

        preprocessed = self.preprocess(photo)
        rgb = np.array(preprocessed)

        raw_mask, confidence, strategy_name = self.build_mask(rgb, jewelry_type)
        mask = refine_mask(raw_mask)

        if not mask.any():
            fallback = background_difference_mask(rgb)
            if fallback.any():
                logger.warning("Refined mask is empty; using background difference mask")
                mask = np.where(fallback, 255, 0).astype(np.uint8)

        cleaned, method, ai_confidence = self.clean_background(preprocessed, mask)
        if ai_confidence is not None:
            confidence = (confidence + ai_confidence) / 2

        bounding_box = mask_bounding_box(mask)
        logger.info(
            f"Segmentation done: strategy={strategy_name}, cleaning={method}, "
            f"bbox={bounding_box.to_bbox()}, confidence={confidence:.2f}"
        )

        return JewelrySegmentation(
            mask=Image.fromarray(mask),
            cleaned_jewelry=cleaned,
            bounding_box=bounding_box,
            jewelry_type=jewelry_type,
            confidence=clamp01(confidence),
            jewelry_image=preprocessed,
            method=method,
        )


def estimate_jewelry_dimensions(
    segmentation: JewelrySegmentation,
    jewelry_type: Optional[JewelryType] = None
) -> JewelryDimensions:
    """
    Rough real-world size in millimetres from the bounding box.

    The jewelry type defaults to the one the segmentation was made for.
    """
    if jewelry_type is None:
        jewelry_type = segmentation.jewelry_type
    else:
        jewelry_type = JewelryType.parse(jewelry_type)
    pixel_to_mm = PIXEL_TO_MM[jewelry_type]
    width = segmentation.bounding_box.width * pixel_to_mm
    height = segmentation.bounding_box.height * pixel_to_mm

    return JewelryDimensions(
        width=width,
        height=height,
        thickness=THICKNESS_MM[jewelry_type],
        diameter=max(width, height) if jewelry_type == JewelryType.RING else None,
        length=width * 2 if jewelry_type == JewelryType.NECKLACE else None,
    )


def validate_segmentation(segmentation: JewelrySegmentation) -> Tuple[bool, float, List[str]]:
    """
    Sanity-check a segmentation.

    Returns:
        Tuple of (is_valid, score, issues)
    """
    issues = []
    box = segmentation.bounding_box
    if box.width < 50 or box.height < 50:
        issues.append("Detected jewelry region is too small")

    coverage = segmentation.coverage()
    if coverage < 0.05:
        issues.append("Very little jewelry detected in image")
    elif coverage > 0.7:
        issues.append("Jewelry segmentation may include background")

    score = max(0.0, 1.0 - 0.3 * len(issues))
    return len(issues) == 0, score, issues


def create_segmenter(use_ai: bool = True) -> JewelrySegmenter:
    """Create a segmenter, optionally backed by rembg background removal."""
    return JewelrySegmenter(background_remover=RembgBackgroundRemover() if use_ai else None)


def segment(
    jewelry_photo: ImageInput,
    jewelry_type,
    background_remover: Optional[BackgroundRemover] = None
) -> JewelrySegmentation:
    """Convenience wrapper around JewelrySegmenter.segment."""
    return JewelrySegmenter(background_remover=background_remover).segment(jewelry_photo, jewelry_type)
