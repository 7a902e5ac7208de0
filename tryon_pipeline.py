"""
Jewelry Try-On Pipeline

Runs the full try-on flow for one request:
1. Segment the jewelry product photo
2. Estimate placement on the body image (vision strategy or heuristics)
3. Composite the jewelry with optional shadow and lighting match
4. Optionally polish the composite with a generative model
5. Validate that the jewelry was not altered

Every stage after segmentation degrades gracefully; only an unreadable
jewelry photo aborts the attempt.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image

from ai_services import (
    BackgroundRemover,
    GeminiVisionAnalyzer,
    ImageGenerator,
    ImagenEnhancer,
    RembgBackgroundRemover,
    VisionAnalyzer,
    build_enhancement_prompt,
    get_google_api_key,
)
from integrity_validator import DEFAULT_TOLERANCE, IntegrityValidator
from jewelry_compositor import JewelryCompositor
from jewelry_segmenter import JewelrySegmenter, estimate_jewelry_dimensions
from jewelry_types import (
    ImageInput,
    JewelryDimensions,
    JewelrySegmentation,
    JewelryType,
    PlacementCalculation,
    Region,
    SegmentationError,
    ShadowConfig,
    ValidationResult,
    load_image,
)
from placement_estimator import PlacementEstimator
from vision_positioning import VisionPlacementStrategy

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class TryOnResult:
    """Result of a try-on attempt."""
    success: bool
    result_image: Optional[Image.Image] = None
    segmentation: Optional[JewelrySegmentation] = None
    placement: Optional[PlacementCalculation] = None
    validation: Optional[ValidationResult] = None
    processing_steps: List[str] = field(default_factory=list)
    error_message: Optional[str] = None


def region_mask(size: Tuple[int, int], region: Region) -> Image.Image:
    """White rectangle on black, marking the area a generator may repaint."""
    mask = np.zeros((size[1], size[0]), dtype=np.uint8)
    x1, y1, x2, y2 = region.to_bbox()
    mask[y1:y2, x1:x2] = 255
    return Image.fromarray(mask)


class TryOnPipeline:
    """
    Segment, place, composite, enhance and validate.

    All AI collaborators are optional; without them the pipeline is fully
    deterministic and offline.
    """

    def __init__(
        self,
        background_remover: Optional[BackgroundRemover] = None,
        vision_analyzer: Optional[VisionAnalyzer] = None,
        enhancer: Optional[ImageGenerator] = None,
        tolerance: float = DEFAULT_TOLERANCE
    ):
        """
        Args:
            background_remover: AI background removal for segmentation
            vision_analyzer: Vision model for placement (heuristics otherwise)
            enhancer: Generative model for polishing the composite
            tolerance: Validation tolerance
        """
        self.segmenter = JewelrySegmenter(background_remover)
        self.vision_analyzer = vision_analyzer
        self.enhancer = enhancer
        self.validator = IntegrityValidator(tolerance)

    def _estimator(self, jewelry_image: Optional[Image.Image] = None) -> PlacementEstimator:
        if self.vision_analyzer is None:
            return PlacementEstimator()
        return PlacementEstimator(VisionPlacementStrategy(self.vision_analyzer, jewelry_image))

    def _enhance(
        self,
        composite_image: Image.Image,
        region: Region,
        jewelry_type: JewelryType
    ) -> Optional[Image.Image]:
        prompt = build_enhancement_prompt(jewelry_type)
        try:
            enhanced = self.enhancer.generate(
                prompt,
                base_image=composite_image,
                mask=region_mask(composite_image.size, region),
                high_fidelity=True
            )
        except Exception as e:
            logger.error(f"Enhancement failed, keeping plain composite: {e}")
            return None

        if enhanced.size != composite_image.size:
            enhanced = enhanced.resize(composite_image.size, Image.Resampling.LANCZOS)
        return enhanced.convert(composite_image.mode)

    def try_on(
        self,
        jewelry_photo: ImageInput,
        body_image: ImageInput,
        jewelry_type,
        dimensions: Optional[JewelryDimensions] = None,
        user_offset: Optional[Tuple[float, float]] = None,
        shadow_config: Optional[ShadowConfig] = None,
        match_lighting: bool = False,
        enhance: bool = False
    ) -> TryOnResult:
        """
        Run a complete try-on.

        Args:
            jewelry_photo: Product photo of the jewelry
            body_image: Photo of the person or hand
            jewelry_type: JewelryType or its name
            dimensions: Real-world jewelry size, estimated from the photo if omitted
            user_offset: Optional (dx, dy) drag offset in pixels
            shadow_config: Optional drop shadow
            match_lighting: Match jewelry tone to the body lighting
            enhance: Polish the composite with the injected generator

        Returns:
            TryOnResult; success is False only when the inputs cannot be used
        """
        steps: List[str] = []

        try:
            jewelry_type = JewelryType.parse(jewelry_type)
            body = load_image(body_image)
            original = load_image(jewelry_photo)
        except (ValueError, SegmentationError) as e:
            logger.error(f"Try-on aborted: {e}")
            return TryOnResult(success=False, processing_steps=steps, error_message=str(e))

        logger.info(f"Starting {jewelry_type.value} try-on")

        # Step 1: Segmentation
        try:
            segmentation = self.segmenter.segment(original, jewelry_type)
        except SegmentationError as e:
            logger.error(f"Segmentation failed: {e}")
            return TryOnResult(
                success=False,
                processing_steps=steps,
                error_message=f"Could not segment jewelry photo: {e}"
            )
        steps.append(f"Segmented jewelry ({segmentation.method}, confidence {segmentation.confidence:.2f})")

        # Step 2: Placement
        if dimensions is None:
            dimensions = estimate_jewelry_dimensions(segmentation, jewelry_type)
        placement = self._estimator(segmentation.cleaned_jewelry).estimate(
            body, jewelry_type, body.size, dimensions
        )
        steps.append(f"Estimated placement ({placement.method}, confidence {placement.confidence:.2f})")

        # Step 3: Composite
        compositor = JewelryCompositor(match_lighting=match_lighting)
        result_image, region = compositor.composite_with_region(
            body, segmentation, placement, jewelry_type, shadow_config, user_offset
        )
        if region is None:
            steps.append("Compositing failed, returning body image")
        else:
            steps.append(f"Composited jewelry at {region.to_bbox()}")

        # Step 4: Optional enhancement
        if enhance and self.enhancer is not None and region is not None:
            enhanced = self._enhance(result_image, region, jewelry_type)
            if enhanced is None:
                steps.append("Enhancement failed, kept plain composite")
            else:
                result_image = enhanced
                steps.append("Enhanced composite")

        # Step 5: Validation
        validation = self.validator.validate(original, result_image, region=region)
        steps.append(f"Validated (similarity {validation.similarity:.2f}, valid {validation.is_valid})")
        if not validation.is_valid:
            logger.warning(f"Validation flagged issues: {validation.deviations}")

        return TryOnResult(
            success=True,
            result_image=result_image,
            segmentation=segmentation,
            placement=placement,
            validation=validation,
            processing_steps=steps,
        )


def create_pipeline(use_ai: bool = False, api_key: Optional[str] = None) -> TryOnPipeline:
    """
    Factory function to create a try-on pipeline.

    Args:
        use_ai: Attach rembg and, when a Google API key is available,
            Gemini positioning and Imagen enhancement
        api_key: Google API key (or uses GOOGLE_API_KEY / GEMINI_API_KEY env vars)

    Returns:
        A new TryOnPipeline
    """
    if not use_ai:
        return TryOnPipeline()

    api_key = get_google_api_key(api_key)
    if not api_key:
        logger.warning("No Google API key set; using heuristic placement without enhancement")
        return TryOnPipeline(background_remover=RembgBackgroundRemover())

    return TryOnPipeline(
        background_remover=RembgBackgroundRemover(),
        vision_analyzer=GeminiVisionAnalyzer(api_key=api_key),
        enhancer=ImagenEnhancer(api_key=api_key),
    )


# ============================================================================
# CLI Interface
# ============================================================================

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Jewelry Try-On")
    parser.add_argument("--body", type=str, required=True, help="Path to body image")
    parser.add_argument("--jewelry", type=str, required=True, help="Path to jewelry product photo")
    parser.add_argument("--type", type=str, default="necklace",
                        choices=[t.value for t in JewelryType],
                        help="Jewelry type")
    parser.add_argument("--output", type=str, default="output.png", help="Output path")
    parser.add_argument("--shadow", action="store_true", help="Add a drop shadow")
    parser.add_argument("--match-lighting", action="store_true", help="Match jewelry to body lighting")
    parser.add_argument("--use-ai", action="store_true", help="Use rembg, Gemini and Imagen when available")
    parser.add_argument("--enhance", action="store_true", help="Polish the composite with Imagen")

    args = parser.parse_args()

    pipeline = create_pipeline(use_ai=args.use_ai)
    result = pipeline.try_on(
        args.jewelry,
        args.body,
        args.type,
        shadow_config=ShadowConfig() if args.shadow else None,
        match_lighting=args.match_lighting,
        enhance=args.enhance,
    )

    for step in result.processing_steps:
        print(f"  - {step}")

    if result.success:
        result.result_image.save(args.output)
        print(f"Saved to {args.output}")
        if result.validation and result.validation.deviations:
            print("Validation warnings:")
            for deviation in result.validation.deviations:
                print(f"  ! {deviation}")
    else:
        print(f"Try-on failed: {result.error_message}")
