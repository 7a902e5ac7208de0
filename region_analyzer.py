"""
Region Analyzer Module

Stateless pixel-level detectors shared by segmentation, placement and
validation:
- Sliding-window block scanning (metallic, high-contrast, color-range)
- Region merging and ranking
- Skin detection with 4-connected largest-component search
- Sobel / Laplacian edge maps and Hough-style circle voting
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image
from scipy import ndimage

from jewelry_types import Region, clamp01

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ColorRange = Tuple[Tuple[int, int], Tuple[int, int], Tuple[int, int]]

# Inclusive per-channel (min, max) bands for common jewelry materials
DEFAULT_COLOR_RANGES: Dict[str, ColorRange] = {
    "gold": ((200, 255), (180, 230), (100, 170)),
    "silver": ((180, 220), (180, 220), (180, 220)),
    "ruby": ((150, 255), (50, 150), (50, 150)),
    "sapphire": ((50, 150), (50, 200), (150, 255)),
    "emerald": ((100, 200), (150, 255), (50, 150)),
}

METALLIC_BLOCK_SIZE = 32
HIGH_CONTRAST_BLOCK_SIZE = 24
COLOR_BLOCK_SIZE = 28

METALLIC_THRESHOLD = 0.4
HIGH_CONTRAST_THRESHOLD = 0.5
COLOR_MATCH_THRESHOLD = 0.3

HOUGH_VOTE_THRESHOLD = 12
HOUGH_MAX_EDGE_PIXELS = 20000

LAPLACIAN_KERNEL = np.array([
    [-1, -1, -1],
    [-1, 8, -1],
    [-1, -1, -1],
], dtype=np.float64)


@dataclass(frozen=True)
class ConnectedRegion:
    """Largest connected component of a boolean mask."""
    left: int
    top: int
    right: int
    bottom: int
    center_x: float
    center_y: float
    area: int

    @property
    def width(self) -> int:
        return self.right - self.left + 1

    @property
    def height(self) -> int:
        return self.bottom - self.top + 1


@dataclass(frozen=True)
class Circle:
    """Circle candidate found by Hough voting."""
    x: int
    y: int
    radius: int
    votes: int


# ============================================================================
# Pixel helpers
# ============================================================================

def to_array(image: Union[Image.Image, np.ndarray]) -> np.ndarray:
    """Return pixels as a numpy array without modifying the input."""
    if isinstance(image, Image.Image):
        return np.array(image)
    return np.asarray(image)


def to_rgb_array(image: Union[Image.Image, np.ndarray]) -> np.ndarray:
    """Return an HxWx3 uint8 array for any greyscale, RGB or RGBA input."""
    array = to_array(image)
    if array.ndim == 2:
        return np.stack([array] * 3, axis=2).astype(np.uint8)
    if array.shape[2] == 1:
        return np.repeat(array, 3, axis=2).astype(np.uint8)
    return array[:, :, :3].astype(np.uint8)


def brightness_map(image: Union[Image.Image, np.ndarray]) -> np.ndarray:
    """Per-pixel channel average (r + g + b) / 3 as float."""
    array = to_array(image).astype(np.float64)
    if array.ndim == 2:
        return array
    return array[:, :, :3].mean(axis=2)


def normalize_contrast(array: np.ndarray, low_pct: float = 0.1, high_pct: float = 99.9) -> np.ndarray:
    """
    Stretch intensities so the given percentiles span 0..255.

    One stretch is shared by all channels so channel ordering (gold's
    R > G > B) survives.
    """
    values = array.astype(np.float64)
    lo, hi = np.percentile(values, (low_pct, high_pct))
    if hi - lo < 1.0:
        return array.astype(np.uint8)
    stretched = (values - lo) * 255.0 / (hi - lo)
    return np.clip(stretched, 0, 255).astype(np.uint8)


def estimate_background_color(image: Union[Image.Image, np.ndarray]) -> np.ndarray:
    """Median color of the image border pixels."""
    rgb = to_rgb_array(image)
    edges = np.concatenate([
        rgb[0, :, :],
        rgb[-1, :, :],
        rgb[:, 0, :],
        rgb[:, -1, :],
    ])
    return np.median(edges, axis=0)


def background_difference_mask(image: Union[Image.Image, np.ndarray], tolerance: float = 30.0) -> np.ndarray:
    """Boolean mask of pixels whose color is farther than tolerance from the border median."""
    rgb = to_rgb_array(image).astype(np.float32)
    bg_color = estimate_background_color(rgb.astype(np.uint8))
    distance = np.sqrt(np.sum((rgb - bg_color) ** 2, axis=2))
    return distance > tolerance


# ============================================================================
# Sliding-window scanning
# ============================================================================

def iter_blocks(width: int, height: int, block_size: int, stride: Optional[int] = None) -> Iterator[Tuple[int, int]]:
    """
    Yield top-left corners of every block that fits inside the image.

    Blocks extending past the image boundary are skipped. The default
    stride is half a block.
    """
    stride = stride or max(1, block_size // 2)
    for y in range(0, height - block_size + 1, stride):
        for x in range(0, width - block_size + 1, stride):
            yield x, y


def scan_regions(
    image: np.ndarray,
    block_size: int,
    score_fn: Callable[[np.ndarray], float],
    threshold: float,
    stride: Optional[int] = None
) -> List[Region]:
    """
    Score every block of an image and keep those above the threshold.

    Args:
        image: Array to scan (per-pixel score map, greyscale or RGB)
        block_size: Square block side in pixels
        score_fn: Function mapping a block to a score
        threshold: Minimum (exclusive) clamped score to emit a region
        stride: Step between blocks, default half the block size

    Returns:
        One Region per qualifying block
    """
    height, width = image.shape[:2]
    regions = []
    for x, y in iter_blocks(width, height, block_size, stride):
        block = image[y:y + block_size, x:x + block_size]
        score = clamp01(float(score_fn(block)))
        if score > threshold:
            regions.append(Region(x, y, block_size, block_size, score))
    return regions


# ============================================================================
# Detectors
# ============================================================================

def metallic_pixel_tenths(image: Union[Image.Image, np.ndarray]) -> np.ndarray:
    """
    Per-pixel metallic likelihood in integer tenths, 0 to 10.

    Bright pixels score 3, low saturation 2, gold channel ordering 3
    and silver channel equality 2.
    """
    rgb = to_rgb_array(image).astype(np.int16)
    r, g, b = rgb[:, :, 0], rgb[:, :, 1], rgb[:, :, 2]
    brightness = (r + g + b) / 3.0
    saturation = rgb.max(axis=2) - rgb.min(axis=2)
    silver = (np.abs(r - g) < 20) & (np.abs(g - b) < 20) & (brightness > 120)

    tenths = (
        3 * (brightness > 150)
        + 2 * (saturation < 50)
        + 3 * ((r > g) & (g > b) & (r > 180))
        + 2 * silver
    )
    return tenths.astype(np.int8)


def metallic_pixel_scores(image: Union[Image.Image, np.ndarray]) -> np.ndarray:
    """Per-pixel metallic likelihood in [0, 1]."""
    return metallic_pixel_tenths(image) / 10.0


def detect_metallic_regions(
    image: Union[Image.Image, np.ndarray],
    block_size: int = METALLIC_BLOCK_SIZE,
    threshold: float = METALLIC_THRESHOLD
) -> List[Region]:
    """
    Find blocks whose average metallic score exceeds the threshold.

    Scores are summed as integers so a block sitting exactly on the
    threshold is not emitted.
    """
    tenths = metallic_pixel_tenths(image)
    return scan_regions(tenths, block_size, lambda block: block.mean() / 10.0, threshold)


def sobel_magnitude(grey: np.ndarray) -> np.ndarray:
    """Sobel gradient magnitude. Border pixels are zero."""
    p = grey.astype(np.float64)
    magnitude = np.zeros(p.shape, dtype=np.float64)
    if p.shape[0] < 3 or p.shape[1] < 3:
        return magnitude

    gx = (
        p[:-2, 2:] + 2 * p[1:-1, 2:] + p[2:, 2:]
        - p[:-2, :-2] - 2 * p[1:-1, :-2] - p[2:, :-2]
    )
    gy = (
        p[2:, :-2] + 2 * p[2:, 1:-1] + p[2:, 2:]
        - p[:-2, :-2] - 2 * p[:-2, 1:-1] - p[:-2, 2:]
    )
    magnitude[1:-1, 1:-1] = np.sqrt(gx ** 2 + gy ** 2)
    return magnitude


def sobel_edge_strength(grey_block: np.ndarray) -> float:
    """Average Sobel magnitude over the block interior, normalized by 255."""
    if grey_block.shape[0] < 3 or grey_block.shape[1] < 3:
        return 0.0
    magnitude = sobel_magnitude(grey_block)[1:-1, 1:-1]
    return clamp01(float(magnitude.mean()) / 255.0)


def detect_high_contrast_regions(
    image: Union[Image.Image, np.ndarray],
    block_size: int = HIGH_CONTRAST_BLOCK_SIZE,
    threshold: float = HIGH_CONTRAST_THRESHOLD
) -> List[Region]:
    """Find blocks with strong average edge response."""
    grey = brightness_map(image)
    return scan_regions(grey, block_size, sobel_edge_strength, threshold)


def color_range_mask(image: Union[Image.Image, np.ndarray], color_ranges: Iterable[ColorRange]) -> np.ndarray:
    """Boolean mask of pixels inside any of the inclusive channel ranges."""
    rgb = to_rgb_array(image)
    matched = np.zeros(rgb.shape[:2], dtype=bool)
    for (r_min, r_max), (g_min, g_max), (b_min, b_max) in color_ranges:
        matched |= (
            (rgb[:, :, 0] >= r_min) & (rgb[:, :, 0] <= r_max) &
            (rgb[:, :, 1] >= g_min) & (rgb[:, :, 1] <= g_max) &
            (rgb[:, :, 2] >= b_min) & (rgb[:, :, 2] <= b_max)
        )
    return matched


def detect_color_regions(
    image: Union[Image.Image, np.ndarray],
    color_ranges: Optional[Union[Dict[str, ColorRange], Sequence[ColorRange]]] = None,
    block_size: int = COLOR_BLOCK_SIZE,
    threshold: float = COLOR_MATCH_THRESHOLD
) -> List[Region]:
    """Find blocks where the fraction of in-range pixels exceeds the threshold."""
    if color_ranges is None:
        color_ranges = DEFAULT_COLOR_RANGES
    if isinstance(color_ranges, dict):
        color_ranges = list(color_ranges.values())

    matched = color_range_mask(image, color_ranges).astype(np.float64)
    return scan_regions(matched, block_size, np.mean, threshold)


# ============================================================================
# Region merging and ranking
# ============================================================================

def combine_regions(regions: Sequence[Region]) -> List[Region]:
    """
    Merge overlapping regions until no two results overlap.

    Each merged rectangle carries the mean confidence of every detector
    region it absorbed, so running the merge on its own output changes
    nothing.
    """
    groups = [(region, 1) for region in regions]

    changed = True
    while changed:
        changed = False
        merged: List[Tuple[Region, int]] = []
        for region, count in groups:
            for i, (existing, existing_count) in enumerate(merged):
                if existing.overlaps(region):
                    total = existing_count + count
                    confidence = (existing.confidence * existing_count + region.confidence * count) / total
                    merged[i] = (existing.union(region, confidence), total)
                    changed = True
                    break
            else:
                merged.append((region, count))
        groups = merged

    return [region for region, _ in groups]


def select_best_region(regions: Sequence[Region], image_width: int, image_height: int) -> Region:
    """
    Pick the most plausible jewelry region.

    Score = confidence + 0.2 for a 5-40% area ratio + 0.3 for closeness to
    the image center. Without candidates, a centered square of 30% of the
    smaller dimension is returned with confidence 0.1.
    """
    if not regions:
        size = int(min(image_width, image_height) * 0.3)
        return Region(
            (image_width - size) // 2,
            (image_height - size) // 2,
            size,
            size,
            0.1,
        )

    image_area = float(image_width * image_height)
    center_x = image_width / 2
    center_y = image_height / 2
    max_distance = math.sqrt(center_x ** 2 + center_y ** 2) or 1.0

    best_region = regions[0]
    best_score = -math.inf
    for region in regions:
        score = region.confidence
        area_ratio = region.area / image_area
        if 0.05 < area_ratio < 0.4:
            score += 0.2
        region_x, region_y = region.center()
        distance = math.sqrt((region_x - center_x) ** 2 + (region_y - center_y) ** 2)
        score += 0.3 * (1 - distance / max_distance)
        if score > best_score:
            best_score = score
            best_region = region

    return best_region


# ============================================================================
# Skin and connected components
# ============================================================================

def detect_skin_regions(image: Union[Image.Image, np.ndarray]) -> np.ndarray:
    """Boolean skin mask from the classic RGB skin-tone rule."""
    rgb = to_rgb_array(image).astype(np.int16)
    r, g, b = rgb[:, :, 0], rgb[:, :, 1], rgb[:, :, 2]
    spread = rgb.max(axis=2) - rgb.min(axis=2)
    return (
        (r > 95) & (g > 40) & (b > 20) &
        (spread > 15) &
        (np.abs(r - g) > 15) &
        (r > g) & (r > b)
    )


def flood_fill_largest_region(mask: np.ndarray) -> Optional[ConnectedRegion]:
    """
    Largest 4-connected component of a boolean mask.

    Returns:
        Bounding box, centroid and pixel area, or None for an empty mask
    """
    labels, count = ndimage.label(np.asarray(mask, dtype=bool))
    if count == 0:
        return None

    sizes = np.bincount(labels.ravel())
    sizes[0] = 0
    best_label = int(np.argmax(sizes))

    ys, xs = np.nonzero(labels == best_label)
    return ConnectedRegion(
        left=int(xs.min()),
        top=int(ys.min()),
        right=int(xs.max()),
        bottom=int(ys.max()),
        center_x=float(xs.mean()),
        center_y=float(ys.mean()),
        area=int(xs.size),
    )


# ============================================================================
# Edge maps and circle detection
# ============================================================================

def laplacian_map(grey: np.ndarray, absolute: bool = True) -> np.ndarray:
    """8-neighbour Laplacian response."""
    response = ndimage.convolve(grey.astype(np.float64), LAPLACIAN_KERNEL, mode="nearest")
    if absolute:
        return np.abs(response)
    return response


def gradient_edge_pixels(image: Union[Image.Image, np.ndarray], threshold: float = 30.0) -> np.ndarray:
    """
    Edge pixel coordinates from central-difference brightness gradients.

    Returns:
        (N, 2) integer array of (x, y)
    """
    brightness = brightness_map(image)
    edges = np.zeros(brightness.shape, dtype=bool)
    if brightness.shape[0] >= 3 and brightness.shape[1] >= 3:
        gx = brightness[1:-1, 2:] - brightness[1:-1, :-2]
        gy = brightness[2:, 1:-1] - brightness[:-2, 1:-1]
        edges[1:-1, 1:-1] = np.sqrt(gx ** 2 + gy ** 2) > threshold
    ys, xs = np.nonzero(edges)
    return np.stack([xs, ys], axis=1)


def hough_circle_vote(
    edge_pixels: np.ndarray,
    width: int,
    height: int,
    min_radius: int = 8,
    max_radius: Optional[int] = None,
    radius_step: int = 2,
    angle_step: int = 15,
    vote_threshold: int = HOUGH_VOTE_THRESHOLD,
    top_n: int = 3
) -> List[Circle]:
    """
    Vote for circle centers from edge pixels.

    Every edge pixel votes, for each candidate radius and sampled angle,
    for the center that would put it on the circle. Centers with more than
    vote_threshold votes become candidates; the top_n by votes are returned.
    """
    if max_radius is None:
        max_radius = min(width, height) // 4
    if len(edge_pixels) == 0 or max_radius < min_radius:
        return []

    if len(edge_pixels) > HOUGH_MAX_EDGE_PIXELS:
        step = int(math.ceil(len(edge_pixels) / HOUGH_MAX_EDGE_PIXELS))
        edge_pixels = edge_pixels[::step]

    angles = np.deg2rad(np.arange(0, 360, angle_step))
    cos_a = np.cos(angles)
    sin_a = np.sin(angles)
    xs = edge_pixels[:, 0].astype(np.float64)[:, None]
    ys = edge_pixels[:, 1].astype(np.float64)[:, None]

    candidates = []
    for radius in range(min_radius, max_radius + 1, radius_step):
        cx = np.round(xs - radius * cos_a).astype(np.int64).ravel()
        cy = np.round(ys - radius * sin_a).astype(np.int64).ravel()
        inside = (cx >= 0) & (cx < width) & (cy >= 0) & (cy < height)
        if not inside.any():
            continue
        votes = np.bincount(cy[inside] * width + cx[inside], minlength=width * height)
        for index in np.nonzero(votes > vote_threshold)[0]:
            candidates.append(Circle(
                x=int(index % width),
                y=int(index // width),
                radius=radius,
                votes=int(votes[index]),
            ))

    candidates.sort(key=lambda circle: circle.votes, reverse=True)
    return candidates[:top_n]


def annulus_mask(circles: Sequence[Circle], width: int, height: int, band: int = 3) -> np.ndarray:
    """Rasterize circles as rings of +/- band pixels, weighted by votes."""
    accumulator = np.zeros((height, width), dtype=np.int32)
    for circle in circles:
        reach = circle.radius + band
        x1, x2 = max(0, circle.x - reach), min(width, circle.x + reach + 1)
        y1, y2 = max(0, circle.y - reach), min(height, circle.y + reach + 1)
        if x1 >= x2 or y1 >= y2:
            continue
        yy, xx = np.mgrid[y1:y2, x1:x2]
        distance = np.sqrt((xx - circle.x) ** 2 + (yy - circle.y) ** 2)
        ring = np.abs(distance - circle.radius) <= band
        accumulator[y1:y2, x1:x2][ring] += circle.votes * 20
    return np.minimum(accumulator, 255).astype(np.uint8)


def detect_circular_patterns(image: Union[Image.Image, np.ndarray], min_radius: int = 8) -> np.ndarray:
    """Annulus evidence map (0..255) for circles found in the image."""
    rgb = to_rgb_array(image)
    height, width = rgb.shape[:2]
    edges = gradient_edge_pixels(rgb)
    circles = hough_circle_vote(edges, width, height, min_radius=min_radius)
    if circles:
        logger.info(f"Detected {len(circles)} circular candidates (best radius {circles[0].radius})")
    return annulus_mask(circles, width, height)
