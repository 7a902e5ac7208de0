"""
Integrity Validator Module

Checks that a composite did not alter the jewelry:
- Re-locates the jewelry in the composite with the region detectors
- Histogram, structural and perceptual similarity against the product photo
- Color, shape, texture and size deviation checks
- Quality checks on the extracted region (blur, exposure, size)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image, ImageOps

from jewelry_types import ImageInput, Region, ValidationResult, clamp01, load_image, to_rgb
from region_analyzer import (
    combine_regions,
    detect_color_regions,
    detect_high_contrast_regions,
    detect_metallic_regions,
    laplacian_map,
    normalize_contrast,
    select_best_region,
    sobel_magnitude,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 0.02
COMPARISON_SIZE = 256
MIN_REGION_CONFIDENCE = 0.3
MAX_CANDIDATES = 5
REGION_PADDING = 0.1
FALLBACK_CROP = 0.3

SIMILARITY_WEIGHTS = {
    "histogram": 0.3,
    "structural": 0.4,
    "perceptual": 0.3,
}

BLUR_STD_THRESHOLD = 20
DARK_THRESHOLD = 30
BRIGHT_THRESHOLD = 225
MIN_REGION_SIZE = 32
SHAPE_THRESHOLD = 128


@dataclass
class ValidationReport:
    """Detailed outcome of a validation run."""
    result: ValidationResult
    metrics: Dict[str, float] = field(default_factory=dict)
    deviations: Dict[str, float] = field(default_factory=dict)
    quality_issues: List[str] = field(default_factory=list)
    region: Optional[Region] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.result.is_valid,
            "similarity": self.result.similarity,
            "messages": list(self.result.deviations),
            "metrics": dict(self.metrics),
            "deviations": dict(self.deviations),
            "quality_issues": list(self.quality_issues),
            "region": self.region.to_bbox() if self.region else None,
        }


# ============================================================================
# Comparison helpers
# ============================================================================

def prepare_for_comparison(image: Image.Image, size: int = COMPARISON_SIZE) -> np.ndarray:
    """Contrast-normalize and letterbox an image onto a white size x size square."""
    rgb = np.array(to_rgb(image))
    normalized = Image.fromarray(normalize_contrast(rgb))
    contained = ImageOps.contain(normalized, (size, size), Image.Resampling.LANCZOS)

    canvas = Image.new("RGB", (size, size), (255, 255, 255))
    canvas.paste(contained, ((size - contained.width) // 2, (size - contained.height) // 2))
    return np.array(canvas).astype(np.float64)


def _grey(rgb: np.ndarray) -> np.ndarray:
    return rgb.mean(axis=2)


def histogram_similarity(rgb1: np.ndarray, rgb2: np.ndarray) -> float:
    """1 minus the average per-channel mean and stdev difference, scaled by 255."""
    differences = []
    for channel in range(3):
        c1 = rgb1[:, :, channel]
        c2 = rgb2[:, :, channel]
        mean_diff = abs(c1.mean() - c2.mean())
        std_diff = abs(c1.std() - c2.std())
        differences.append((mean_diff + std_diff) / 2 / 255.0)
    return clamp01(1 - float(np.mean(differences)))


def structural_similarity(rgb1: np.ndarray, rgb2: np.ndarray) -> float:
    """
    1 minus the greyscale MSE relative to the MSE of two uncorrelated
    images with the same means and variances.
    """
    g1 = _grey(rgb1)
    g2 = _grey(rgb2)
    mse = float(np.mean((g1 - g2) ** 2))
    if mse == 0:
        return 1.0
    expected = g1.var() + g2.var() + (g1.mean() - g2.mean()) ** 2
    if expected == 0:
        return 0.0
    return clamp01(1 - mse / expected)


def perceptual_similarity(rgb1: np.ndarray, rgb2: np.ndarray) -> float:
    """1 minus the Laplacian edge-map difference relative to total edge energy."""
    l1 = laplacian_map(_grey(rgb1))
    l2 = laplacian_map(_grey(rgb2))
    energy = float((l1 + l2).sum())
    if energy == 0:
        return 1.0
    return clamp01(1 - float(np.abs(l1 - l2).sum()) / energy)


def combined_similarity(metrics: Dict[str, float]) -> float:
    return clamp01(sum(SIMILARITY_WEIGHTS[name] * metrics[name] for name in SIMILARITY_WEIGHTS))


def color_deviation(rgb1: np.ndarray, rgb2: np.ndarray) -> float:
    mean1 = rgb1.reshape(-1, 3).mean(axis=0)
    mean2 = rgb2.reshape(-1, 3).mean(axis=0)
    return clamp01(float(np.abs(mean1 - mean2).mean()) / 255.0)


def shape_deviation(rgb1: np.ndarray, rgb2: np.ndarray) -> float:
    """Fraction of pixels whose binary threshold differs."""
    shape1 = _grey(rgb1) > SHAPE_THRESHOLD
    shape2 = _grey(rgb2) > SHAPE_THRESHOLD
    return float(np.mean(shape1 != shape2))


def texture_deviation(rgb1: np.ndarray, rgb2: np.ndarray) -> float:
    """Relative difference of the mean Sobel texture energy."""
    texture1 = float(sobel_magnitude(_grey(rgb1)).mean())
    texture2 = float(sobel_magnitude(_grey(rgb2)).mean())
    return clamp01(abs(texture1 - texture2) / max(texture1, texture2, 1.0))


def size_deviation(original_size: Tuple[int, int], extracted_size: Tuple[int, int]) -> float:
    """Average relative difference of area, width and height."""
    ow, oh = original_size
    ew, eh = extracted_size
    area_diff = abs(ow * oh - ew * eh) / max(ow * oh, 1)
    width_diff = abs(ow - ew) / max(ow, 1)
    height_diff = abs(oh - eh) / max(oh, 1)
    return float((area_diff + width_diff + height_diff) / 3)


def quality_issues(extracted: Image.Image) -> List[str]:
    """Problems with the extracted region regardless of the original."""
    issues = []
    rgb = np.array(extracted.convert("RGB")).astype(np.float64)

    if rgb.reshape(-1, 3).std(axis=0).mean() < BLUR_STD_THRESHOLD:
        issues.append("Extracted jewelry appears blurred")

    brightness = rgb.mean()
    if brightness < DARK_THRESHOLD:
        issues.append("Extracted jewelry appears too dark")
    elif brightness > BRIGHT_THRESHOLD:
        issues.append("Extracted jewelry appears too bright")

    if extracted.width < MIN_REGION_SIZE or extracted.height < MIN_REGION_SIZE:
        issues.append("Extracted jewelry region too small")

    return issues


# ============================================================================
# Validator
# ============================================================================

class IntegrityValidator:
    """
    Compares the jewelry in a composite against the original product photo.

    Validation never raises: internal errors produce an invalid result with
    similarity 0 and a single "Validation error" entry.
    """

    def __init__(self, tolerance: float = DEFAULT_TOLERANCE):
        self.tolerance = tolerance

    def locate_jewelry(self, composite_image: Image.Image) -> Region:
        """Re-detect the jewelry region in a composite, padded by 10%."""
        rgb = np.array(composite_image.convert("RGB"))
        width, height = composite_image.size

        candidates = (
            detect_metallic_regions(rgb)
            + detect_high_contrast_regions(rgb)
            + detect_color_regions(rgb)
        )
        merged = [region for region in combine_regions(candidates) if region.confidence > MIN_REGION_CONFIDENCE]
        merged.sort(key=lambda region: region.confidence, reverse=True)

        if not merged:
            logger.warning("No jewelry region found in composite, using centered crop")
            size = max(1, int(min(width, height) * FALLBACK_CROP))
            return Region((width - size) // 2, (height - size) // 2, size, size, 0.1)

        best = select_best_region(merged[:MAX_CANDIDATES], width, height)
        padding = int(min(best.width, best.height) * REGION_PADDING)
        return best.pad(padding).clip(width, height)

    def extract_region(
        self,
        composite_image: Image.Image,
        region: Optional[Region] = None
    ) -> Tuple[Image.Image, Region]:
        if region is None:
            region = self.locate_jewelry(composite_image)
        else:
            region = region.clip(composite_image.width, composite_image.height)
        if region.width <= 0 or region.height <= 0:
            raise ValueError("Jewelry region lies outside the composite")
        return composite_image.crop(region.to_bbox()), region

    def generate_validation_report(
        self,
        original_jewelry: ImageInput,
        composite_image: ImageInput,
        tolerance: Optional[float] = None,
        region: Optional[Region] = None
    ) -> ValidationReport:
        """
        Validate and keep every intermediate measurement.

        Args:
            original_jewelry: Product photo of the jewelry
            composite_image: Composite to check
            tolerance: Allowed deviation, defaults to the validator tolerance
            region: Known jewelry rectangle in the composite, extracted as-is

        Returns:
            ValidationReport with metrics, deviations, quality issues and the
            extraction rectangle
        """
        tolerance = self.tolerance if tolerance is None else tolerance
        try:
            original = load_image(original_jewelry)
            composite_result = load_image(composite_image)

            extracted, used_region = self.extract_region(composite_result, region)
            original_rgb = prepare_for_comparison(original)
            extracted_rgb = prepare_for_comparison(extracted)

            metrics = {
                "histogram": histogram_similarity(original_rgb, extracted_rgb),
                "structural": structural_similarity(original_rgb, extracted_rgb),
                "perceptual": perceptual_similarity(original_rgb, extracted_rgb),
            }
            similarity = combined_similarity(metrics)

            deviations = {
                "color": color_deviation(original_rgb, extracted_rgb),
                "shape": shape_deviation(original_rgb, extracted_rgb),
                "texture": texture_deviation(original_rgb, extracted_rgb),
                "size": size_deviation(original.size, extracted.size),
            }
            messages = [
                f"{name.capitalize()} deviation detected: {value * 100:.1f}%"
                for name, value in deviations.items()
                if value > tolerance
            ]
            issues = quality_issues(extracted)
            messages.extend(issues)

            is_valid = similarity >= 1 - tolerance and not messages
            logger.info(f"Validation: similarity={similarity:.3f}, valid={is_valid}, issues={len(messages)}")

            return ValidationReport(
                result=ValidationResult(is_valid=is_valid, similarity=similarity, deviations=messages),
                metrics=metrics,
                deviations=deviations,
                quality_issues=issues,
                region=used_region,
            )

        except Exception as e:
            logger.error(f"Validation failed: {e}")
            return ValidationReport(
                result=ValidationResult(is_valid=False, similarity=0.0, deviations=[f"Validation error: {e}"])
            )

    def validate(
        self,
        original_jewelry: ImageInput,
        composite_image: ImageInput,
        tolerance: Optional[float] = None,
        region: Optional[Region] = None
    ) -> ValidationResult:
        """Compare the jewelry in a composite against the original photo."""
        return self.generate_validation_report(original_jewelry, composite_image, tolerance, region).result


def generate_validation_report(
    original_jewelry: ImageInput,
    composite_image: ImageInput,
    tolerance: float = DEFAULT_TOLERANCE,
    region: Optional[Region] = None
) -> Dict[str, Any]:
    """Validation report as a plain dict."""
    validator = IntegrityValidator(tolerance)
    return validator.generate_validation_report(original_jewelry, composite_image, tolerance, region).to_dict()


def validate(
    original_jewelry: ImageInput,
    composite_image: ImageInput,
    tolerance: float = DEFAULT_TOLERANCE,
    region: Optional[Region] = None
) -> ValidationResult:
    """Convenience wrapper around IntegrityValidator.validate."""
    return IntegrityValidator(tolerance).validate(original_jewelry, composite_image, tolerance, region)
