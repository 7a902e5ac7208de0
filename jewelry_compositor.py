"""
Jewelry Compositor Module

Draws segmented jewelry onto a body image:
- Automatic placement by per-type width and height fractions
- Interactive transform stack (translate, rotate, skew, scale, opacity)
- Multiply-blended drop shadows
- Lighting analysis of the body image and tone matching of the jewelry
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image, ImageEnhance, ImageFilter, ImageOps

from jewelry_types import (
    ImageInput,
    JewelrySegmentation,
    JewelryType,
    PlacementAdjustments,
    PlacementCalculation,
    Region,
    ShadowConfig,
    clamp01,
    load_image,
)
from region_analyzer import laplacian_map

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Jewelry width as a fraction of body image width
COMPOSITE_WIDTH_FRACTIONS = {
    JewelryType.NECKLACE: 0.40,
    JewelryType.RING: 0.15,
    JewelryType.EARRINGS: 0.08,
    JewelryType.BRACELET: 0.25,
}
DEFAULT_WIDTH_FRACTION = 0.25

# Jewelry center height as a fraction of body image height
COMPOSITE_VERTICAL_FRACTIONS = {
    JewelryType.NECKLACE: 0.35,
    JewelryType.RING: 0.60,
    JewelryType.EARRINGS: 0.25,
    JewelryType.BRACELET: 0.70,
}
DEFAULT_VERTICAL_FRACTION = 0.5

COOL_TINT = (200, 220, 255)
WARM_TINT = (255, 240, 200)
TINT_STRENGTH = 0.3
ARTIFACT_THRESHOLD = 0.3


@dataclass
class LightingInfo:
    """Lighting estimate of a body image."""
    brightness: float
    contrast: float
    temperature: float
    shadow_direction: str


# ============================================================================
# Image helpers
# ============================================================================

def crop_to_content(image: Image.Image) -> Image.Image:
    """Crop an RGBA image to its non-transparent pixels."""
    rgba = image.convert("RGBA")
    box = rgba.getchannel("A").getbbox()
    if box is None:
        return rgba
    return rgba.crop(box)


def _with_alpha(rgb: Image.Image, alpha: Image.Image) -> Image.Image:
    result = rgb.convert("RGBA")
    result.putalpha(alpha)
    return result


def apply_opacity(image: Image.Image, opacity: float) -> Image.Image:
    if opacity >= 1.0:
        return image
    alpha = image.getchannel("A").point(lambda a: int(a * max(0.0, opacity)))
    return _with_alpha(image, alpha)


def multiply_blend(background: Image.Image, layer: Image.Image, position: Tuple[int, int]) -> Image.Image:
    """Multiply-blend an RGBA layer onto the background at position."""
    result = np.array(background.convert("RGBA")).astype(np.float64)
    fg_array = np.array(layer.convert("RGBA")).astype(np.float64)
    x, y = position
    height, width = result.shape[:2]
    layer_height, layer_width = fg_array.shape[:2]

    x1, y1 = max(0, x), max(0, y)
    x2, y2 = min(width, x + layer_width), min(height, y + layer_height)
    if x2 <= x1 or y2 <= y1:
        return background.convert("RGBA").copy()

    fg_region = fg_array[y1 - y:y2 - y, x1 - x:x2 - x]
    alpha = fg_region[:, :, 3:4] / 255.0
    bg_rgb = result[y1:y2, x1:x2, :3]

    blended = fg_region[:, :, :3] * bg_rgb / 255.0
    result[y1:y2, x1:x2, :3] = blended * alpha + bg_rgb * (1 - alpha)
    return Image.fromarray(np.clip(result, 0, 255).astype(np.uint8))


def create_shadow(jewelry: Image.Image, config: ShadowConfig) -> Tuple[Image.Image, int]:
    """
    Darkened, desaturated, blurred copy of the jewelry.

    Returns:
        Tuple of (shadow_rgba, padding) where the shadow is padded on every
        side so the blur is not clipped
    """
    rgba = jewelry.convert("RGBA")
    darkened = ImageEnhance.Brightness(rgba.convert("L")).enhance(0.3)
    tinted = ImageOps.colorize(darkened, black=config.color, white="white")
    alpha = rgba.getchannel("A").point(lambda a: int(a * clamp01(config.opacity)))
    shadow = _with_alpha(tinted, alpha)

    padding = int(math.ceil(config.blur * 2))
    padded = Image.new("RGBA", (rgba.width + 2 * padding, rgba.height + 2 * padding), (0, 0, 0, 0))
    padded.paste(shadow, (padding, padding))
    if config.blur > 0:
        padded = padded.filter(ImageFilter.GaussianBlur(config.blur))
    return padded, padding


def add_reflections(jewelry: Image.Image, intensity: float = 0.2) -> Image.Image:
    """Subtle highlights for metallic jewelry."""
    rgba = jewelry.convert("RGBA")
    alpha = rgba.getchannel("A")
    rgb = rgba.convert("RGB")
    rgb = ImageEnhance.Brightness(rgb).enhance(1.0 + intensity * 0.5)
    rgb = ImageEnhance.Color(rgb).enhance(1.0 + intensity)
    rgb = ImageEnhance.Contrast(rgb).enhance(1.0 + intensity * 0.25)
    return _with_alpha(rgb, alpha)


# ============================================================================
# Lighting
# ============================================================================

def _color_temperature(rgb: np.ndarray) -> float:
    step = max(1, min(rgb.shape[0], rgb.shape[1]) // 50)
    samples = rgb[::step, ::step].reshape(-1, 3)
    brightness = samples.mean(axis=1)
    samples = samples[(brightness > 30) & (brightness < 225)]
    if len(samples) == 0:
        return 0.5

    red, green, blue = samples.mean(axis=0)
    blue = max(blue, 1.0)
    red_blue = red / blue
    yellow_blue = (red + green) / 2 / blue

    temperature = 0.5
    if red_blue > 1.1:
        temperature += (red_blue - 1.1) * 0.5
    elif red_blue < 0.9:
        temperature -= (0.9 - red_blue) * 0.5
    if yellow_blue > 1.2:
        temperature += (yellow_blue - 1.2) * 0.3
    elif yellow_blue < 0.8:
        temperature -= (0.8 - yellow_blue) * 0.3
    return clamp01(temperature)


def _shadow_direction(grey: np.ndarray) -> str:
    """Side the shadows fall to, from brightness of vertical image bands."""
    width = grey.shape[1]
    third = max(1, width // 3)
    left = grey[:, :third].mean()
    right = grey[:, -third:].mean()

    if left - right > 10:
        return "right"
    if right - left > 10:
        return "left"

    strips = [strip.mean() for strip in np.array_split(grey, min(20, width), axis=1) if strip.size]
    if len(strips) >= 2:
        slope = np.polyfit(np.arange(len(strips)), strips, 1)[0]
        if slope * len(strips) > 10:
            return "left"
        if slope * len(strips) < -10:
            return "right"
    return "bottom"


def analyze_lighting(image: Image.Image) -> LightingInfo:
    """Estimate brightness, contrast, color temperature and shadow direction."""
    rgb = np.array(image.convert("RGB")).astype(np.float64)
    channel_means = rgb.reshape(-1, 3).mean(axis=0)
    channel_stds = rgb.reshape(-1, 3).std(axis=0)

    return LightingInfo(
        brightness=clamp01(channel_means.mean() / 255.0),
        contrast=clamp01(channel_stds.mean() / 128.0),
        temperature=_color_temperature(rgb),
        shadow_direction=_shadow_direction(rgb.mean(axis=2)),
    )


def match_lighting(jewelry: Image.Image, lighting: LightingInfo) -> Image.Image:
    """Nudge jewelry brightness, saturation and tint toward the body lighting."""
    rgba = jewelry.convert("RGBA")
    alpha = rgba.getchannel("A")
    rgb = rgba.convert("RGB")

    rgb = ImageEnhance.Brightness(rgb).enhance(0.8 + lighting.brightness * 0.4)
    rgb = ImageEnhance.Color(rgb).enhance(1.0 + lighting.contrast * 0.2)

    tint = None
    if lighting.temperature < 0.4:
        tint = COOL_TINT
    elif lighting.temperature > 0.6:
        tint = WARM_TINT
    if tint is not None:
        array = np.array(rgb).astype(np.float64)
        factors = 1 - TINT_STRENGTH + TINT_STRENGTH * np.array(tint) / 255.0
        rgb = Image.fromarray(np.clip(array * factors, 0, 255).astype(np.uint8))

    rgb = rgb.filter(ImageFilter.UnsharpMask(radius=2, percent=50, threshold=1))
    return _with_alpha(rgb, alpha)


# ============================================================================
# Compositor
# ============================================================================

def _transform_matrix(
    center: Tuple[float, float],
    rotation: float,
    skew: float,
    scale_x: float,
    scale_y: float,
    size: Tuple[int, int]
) -> np.ndarray:
    """translate(center) . rotate . skew . scale . translate(-size/2) as a 2x3 matrix."""
    theta = math.radians(rotation)
    translate = np.array([[1, 0, center[0]], [0, 1, center[1]], [0, 0, 1]], dtype=np.float64)
    rotate = np.array([
        [math.cos(theta), -math.sin(theta), 0],
        [math.sin(theta), math.cos(theta), 0],
        [0, 0, 1],
    ], dtype=np.float64)
    shear = np.array([[1, 0, 0], [math.tan(math.radians(skew)), 1, 0], [0, 0, 1]], dtype=np.float64)
    scale = np.array([[scale_x, 0, 0], [0, scale_y, 0], [0, 0, 1]], dtype=np.float64)
    recenter = np.array([[1, 0, -size[0] / 2], [0, 1, -size[1] / 2], [0, 0, 1]], dtype=np.float64)
    return (translate @ rotate @ shear @ scale @ recenter)[:2]


def warp_rgba(image: Image.Image, matrix: np.ndarray, output_size: Tuple[int, int]) -> Image.Image:
    """Affine-warp an RGBA image onto a transparent canvas, interpolating premultiplied colors."""
    rgba = np.array(image.convert("RGBA")).astype(np.float32)
    alpha = rgba[:, :, 3:4] / 255.0
    premultiplied = np.concatenate([rgba[:, :, :3] * alpha, rgba[:, :, 3:4]], axis=2)

    warped = cv2.warpAffine(
        premultiplied,
        matrix,
        output_size,
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0, 0)
    )

    warped_alpha = warped[:, :, 3:4]
    safe_alpha = np.where(warped_alpha > 0, warped_alpha / 255.0, 1.0)
    rgb = warped[:, :, :3] / safe_alpha
    result = np.concatenate([rgb, warped_alpha], axis=2)
    return Image.fromarray(np.clip(np.round(result), 0, 255).astype(np.uint8))


class JewelryCompositor:
    """
    Composites segmented jewelry onto body images.

    Inputs are never modified; any internal failure returns the untouched
    body image.
    """

    def __init__(self, match_lighting: bool = False, add_reflections: bool = False):
        """
        Args:
            match_lighting: Adjust jewelry tone to the body image lighting
            add_reflections: Add metallic highlights before compositing
        """
        self.match_lighting = match_lighting
        self.add_reflections = add_reflections

    def _untouched(self, body_image: ImageInput) -> Image.Image:
        try:
            return load_image(body_image)
        except Exception:
            return body_image

    def _prepare(self, jewelry: Image.Image, body: Image.Image) -> Tuple[Image.Image, Optional[LightingInfo]]:
        if self.add_reflections:
            jewelry = add_reflections(jewelry)
        lighting = None
        if self.match_lighting:
            lighting = analyze_lighting(body)
            jewelry = match_lighting(jewelry, lighting)
        return jewelry, lighting

    def _draw_shadow(
        self,
        canvas: Image.Image,
        jewelry: Image.Image,
        position: Tuple[int, int],
        config: ShadowConfig,
        lighting: Optional[LightingInfo] = None
    ) -> Image.Image:
        shadow, padding = create_shadow(jewelry, config)
        offset_x = config.offset_x
        if lighting is not None and lighting.shadow_direction == "left":
            offset_x = -abs(offset_x)
        elif lighting is not None and lighting.shadow_direction == "right":
            offset_x = abs(offset_x)
        shadow_position = (
            position[0] + offset_x - padding,
            position[1] + config.offset_y - padding,
        )
        return multiply_blend(canvas, shadow, shadow_position)

    def composite_with_region(
        self,
        body_image: ImageInput,
        segmentation: JewelrySegmentation,
        placement: PlacementCalculation,
        jewelry_type,
        shadow_config: Optional[ShadowConfig] = None,
        user_offset: Optional[Tuple[float, float]] = None
    ) -> Tuple[Image.Image, Optional[Region]]:
        """
        Composite and report where the jewelry landed.

        Returns:
            Tuple of (composite_image, placed_region); the region is None
            when compositing failed and the body image is returned unchanged
        """
        try:
            jewelry_type = JewelryType.parse(jewelry_type)
            body = load_image(body_image)
            output_mode = "RGBA" if body.mode == "RGBA" else "RGB"
            canvas = body.convert("RGBA")

            jewelry = crop_to_content(segmentation.cleaned_jewelry)
            width_fraction = COMPOSITE_WIDTH_FRACTIONS.get(jewelry_type, DEFAULT_WIDTH_FRACTION)
            target_width = max(1, min(int(round(canvas.width * width_fraction)), jewelry.width))
            if target_width != jewelry.width:
                target_height = max(1, int(round(jewelry.height * target_width / jewelry.width)))
                jewelry = jewelry.resize((target_width, target_height), Image.Resampling.LANCZOS)

            if abs(placement.rotation) > 0.5:
                jewelry = jewelry.rotate(-placement.rotation, expand=True, resample=Image.Resampling.BICUBIC)
            if placement.adjustments is not None:
                jewelry = apply_opacity(jewelry, placement.adjustments.opacity)

            jewelry, lighting = self._prepare(jewelry, canvas)

            offset_x, offset_y = user_offset or (0, 0)
            vertical_fraction = COMPOSITE_VERTICAL_FRACTIONS.get(jewelry_type, DEFAULT_VERTICAL_FRACTION)
            center_x = canvas.width / 2 + offset_x
            center_y = canvas.height * vertical_fraction + offset_y
            left = max(0, int(round(center_x - jewelry.width / 2)))
            top = max(0, int(round(center_y - jewelry.height / 2)))

            if shadow_config is not None:
                canvas = self._draw_shadow(canvas, jewelry, (left, top), shadow_config, lighting)

            canvas.alpha_composite(jewelry, dest=(left, top))
            region = Region(left, top, jewelry.width, jewelry.height, 1.0).clip(canvas.width, canvas.height)

            logger.info(f"Composited {jewelry_type.value} at {region.to_bbox()}")
            return canvas.convert(output_mode), region

        except Exception as e:
            logger.error(f"Compositing failed: {e}")
            return self._untouched(body_image), None

    def composite(
        self,
        body_image: ImageInput,
        segmentation: JewelrySegmentation,
        placement: PlacementCalculation,
        jewelry_type,
        shadow_config: Optional[ShadowConfig] = None,
        user_offset: Optional[Tuple[float, float]] = None
    ) -> Image.Image:
        """
        Composite segmented jewelry onto a body image.

        The jewelry is scaled to a per-type fraction of the body width (never
        enlarged), centered horizontally at a per-type height, moved by the
        user offset and alpha-composited.

        Args:
            body_image: Body photo
            segmentation: Segmentation of the jewelry photo
            placement: Placement whose rotation and opacity are honoured
            jewelry_type: JewelryType or its name
            shadow_config: Optional drop shadow
            user_offset: Optional (dx, dy) drag offset in pixels

        Returns:
            New composite image, or the body image if compositing failed
        """
        result, _ = self.composite_with_region(
            body_image, segmentation, placement, jewelry_type, shadow_config, user_offset
        )
        return result

    def render_transformed(
        self,
        body_image: ImageInput,
        jewelry_image: Image.Image,
        placement: PlacementCalculation,
        shadow_config: Optional[ShadowConfig] = None,
        user_offset: Optional[Tuple[float, float]] = None
    ) -> Image.Image:
        """
        Interactive transform stack: translate to the placement, rotate,
        skew, scale by placement.scale times the adjustment scale, then draw
        with the adjustment opacity.
        """
        try:
            body = load_image(body_image)
            output_mode = "RGBA" if body.mode == "RGBA" else "RGB"
            canvas = body.convert("RGBA")

            jewelry = crop_to_content(jewelry_image)
            jewelry, lighting = self._prepare(jewelry, canvas)
            adjustments = (placement.adjustments or PlacementAdjustments()).clamped()

            offset_x, offset_y = user_offset or (0, 0)
            matrix = _transform_matrix(
                (placement.x + offset_x, placement.y + offset_y),
                placement.rotation,
                adjustments.skew,
                placement.scale * adjustments.scale_x,
                placement.scale * adjustments.scale_y,
                jewelry.size,
            )
            layer = apply_opacity(warp_rgba(jewelry, matrix, canvas.size), adjustments.opacity)

            if shadow_config is not None:
                canvas = self._draw_shadow(canvas, layer, (0, 0), shadow_config, lighting)

            canvas.alpha_composite(layer)
            return canvas.convert(output_mode)

        except Exception as e:
            logger.error(f"Transformed rendering failed: {e}")
            return self._untouched(body_image)

    def composite_multiple(
        self,
        body_image: ImageInput,
        segmentation: JewelrySegmentation,
        placements: Sequence[PlacementCalculation],
        shadow_config: Optional[ShadowConfig] = None
    ) -> Image.Image:
        """Draw the same jewelry at several placements, e.g. a pair of earrings."""
        result = self._untouched(body_image)
        for placement in placements:
            result = self.render_transformed(result, segmentation.cleaned_jewelry, placement, shadow_config)
        return result


def validate_composition(original_body: ImageInput, composite_image: ImageInput) -> Dict[str, Any]:
    """
    Check a composite for size changes and unnatural sharpening.

    Returns:
        Dict with is_valid, dimensions_match, artifact_score and issues
    """
    issues: List[str] = []
    try:
        original = load_image(original_body)
        composite_result = load_image(composite_image)
    except Exception as e:
        return {
            "is_valid": False,
            "dimensions_match": False,
            "artifact_score": 1.0,
            "issues": [f"Composition check error: {e}"],
        }

    dimensions_match = original.size == composite_result.size
    if not dimensions_match:
        issues.append("Composite dimensions differ from the body image")

    original_std = laplacian_map(np.array(original.convert("L")), absolute=False).std()
    composite_std = laplacian_map(np.array(composite_result.convert("L")), absolute=False).std()
    artifact_score = clamp01(max(0.0, composite_std - original_std) / 50.0)
    if artifact_score >= ARTIFACT_THRESHOLD:
        issues.append("Composite shows sharpening artifacts")

    return {
        "is_valid": dimensions_match and artifact_score < ARTIFACT_THRESHOLD,
        "dimensions_match": dimensions_match,
        "artifact_score": artifact_score,
        "issues": issues,
    }


def composite(
    body_image: ImageInput,
    segmentation: JewelrySegmentation,
    placement: PlacementCalculation,
    jewelry_type,
    shadow_config: Optional[ShadowConfig] = None,
    user_offset: Optional[Tuple[float, float]] = None,
    match_lighting: bool = False
) -> Image.Image:
    """Convenience wrapper around JewelryCompositor.composite."""
    compositor = JewelryCompositor(match_lighting=match_lighting)
    return compositor.composite(body_image, segmentation, placement, jewelry_type, shadow_config, user_offset)
