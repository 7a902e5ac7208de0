"""
AI Services Module

Adapters for the hosted AI collaborators used by the pipeline:
- Background removal with rembg
- Vision analysis with Gemini (google-genai generate_content)
- Generative enhancement with Imagen inpainting (google-genai edit_image)

Every collaborator is a small object with a single method. Callers treat
any exception as a failed call and fall back to deterministic processing,
so the pipeline runs fully offline with fakes in tests.
"""

import io
import os
import logging
from typing import Optional, Protocol, Sequence

from PIL import Image

from jewelry_types import JewelryType

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_VISION_MODEL = "gemini-2.0-flash"
DEFAULT_IMAGEN_EDIT_MODEL = "imagen-3.0-capability-001"
DEFAULT_IMAGEN_GENERATE_MODEL = "imagen-3.0-generate-002"

HIGH_FIDELITY_NEGATIVE_PROMPT = (
    "altered jewelry design, changed gemstones, different metal color, "
    "extra jewelry, missing jewelry, distorted shape"
)

# Prompt templates for generative polishing of a composite
ENHANCEMENT_PROMPTS = {
    JewelryType.NECKLACE: (
        "Photorealistic photo of a person wearing {description}. "
        "The necklace sits naturally on the neck with realistic shadows and reflections. "
        "Professional jewelry photography lighting, high detail on metal and gemstones."
    ),
    JewelryType.EARRINGS: (
        "Photorealistic photo of a person wearing {description} as earrings. "
        "The earrings hang naturally from the ears with realistic light reflections. "
        "Professional portrait lighting emphasizing the jewelry details."
    ),
    JewelryType.BRACELET: (
        "Photorealistic photo of a person wearing {description} as a bracelet. "
        "The bracelet fits naturally around the wrist with realistic shadows. "
        "Professional jewelry photography with attention to material details."
    ),
    JewelryType.RING: (
        "Photorealistic photo of a person wearing {description} as a ring. "
        "The ring fits naturally on the finger with realistic gemstone sparkle. "
        "Close-up professional lighting emphasizing the ring's details."
    ),
}

FIDELITY_SUFFIX = (
    " Keep the jewelry exactly as shown: same design, same stones, same metal color. "
    "Only blend lighting and shadows."
)


class BackgroundRemover(Protocol):
    """Returns an RGBA copy of the image with the background made transparent."""

    def remove(self, image: Image.Image) -> Image.Image:
        ...


class VisionAnalyzer(Protocol):
    """Answers a text prompt about one or more images with free text."""

    def analyze(self, images: Sequence[Image.Image], prompt: str) -> str:
        ...


class ImageGenerator(Protocol):
    """Creates or edits an image from a prompt."""

    def generate(
        self,
        prompt: str,
        base_image: Optional[Image.Image] = None,
        mask: Optional[Image.Image] = None,
        high_fidelity: bool = False
    ) -> Image.Image:
        ...


def image_to_png_bytes(image: Image.Image) -> bytes:
    """Encode a PIL Image as PNG bytes."""
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def get_google_api_key(api_key: Optional[str] = None) -> Optional[str]:
    return api_key or os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")


def build_enhancement_prompt(
    jewelry_type: JewelryType,
    description: str = "the jewelry",
    high_fidelity: bool = True
) -> str:
    """Build the generative polishing prompt for a jewelry type."""
    jewelry_type = JewelryType.parse(jewelry_type)
    prompt = ENHANCEMENT_PROMPTS[jewelry_type].format(description=description)
    if high_fidelity:
        prompt += FIDELITY_SUFFIX
    return prompt


class RembgBackgroundRemover:
    """
    AI background removal using rembg.

    rembg is imported on first use, so constructing the remover never fails.
    """

    def __init__(
        self,
        alpha_matting: bool = True,
        alpha_matting_foreground_threshold: int = 240,
        alpha_matting_background_threshold: int = 10
    ):
        self.alpha_matting = alpha_matting
        self.alpha_matting_foreground_threshold = alpha_matting_foreground_threshold
        self.alpha_matting_background_threshold = alpha_matting_background_threshold

    def remove(self, image: Image.Image) -> Image.Image:
        from rembg import remove

        output_bytes = remove(
            image_to_png_bytes(image),
            alpha_matting=self.alpha_matting,
            alpha_matting_foreground_threshold=self.alpha_matting_foreground_threshold,
            alpha_matting_background_threshold=self.alpha_matting_background_threshold
        )
        result = Image.open(io.BytesIO(output_bytes)).convert("RGBA")
        logger.info("Background removed successfully using rembg")
        return result


class GeminiVisionAnalyzer:
    """Vision analysis through the Gemini generate_content API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.1,
        max_output_tokens: int = 1000
    ):
        """
        Args:
            api_key: Google API key (or uses GOOGLE_API_KEY / GEMINI_API_KEY env vars)
            model: Model name (or uses GEMINI_VISION_MODEL env var)
            temperature: Sampling temperature, kept low for coordinate answers
            max_output_tokens: Response length limit
        """
        self.api_key = get_google_api_key(api_key)
        self.model = model or os.environ.get("GEMINI_VISION_MODEL", DEFAULT_VISION_MODEL)
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise RuntimeError("No Google API key provided")
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
            logger.info("Gemini vision client initialized")
        return self._client

    def analyze(self, images: Sequence[Image.Image], prompt: str) -> str:
        from google.genai import types

        client = self._get_client()
        contents = [prompt]
        for image in images:
            contents.append(types.Part.from_bytes(
                data=image_to_png_bytes(image.convert("RGB")),
                mime_type="image/png"
            ))

        response = client.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens
            )
        )

        text = response.text
        if not text:
            raise RuntimeError("Empty response from vision model")
        return text


class ImagenEnhancer:
    """
    Generative image creation and inpainting through Imagen.

    With a base image, the masked area is repainted with
    EDIT_MODE_INPAINT_INSERTION; without one, a new image is generated.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        edit_model: Optional[str] = None,
        generate_model: Optional[str] = None
    ):
        self.api_key = get_google_api_key(api_key)
        self.edit_model = edit_model or os.environ.get("IMAGEN_EDIT_MODEL", DEFAULT_IMAGEN_EDIT_MODEL)
        self.generate_model = generate_model or DEFAULT_IMAGEN_GENERATE_MODEL
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise RuntimeError("No Google API key provided")
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
            logger.info("Google Imagen API client initialized successfully")
        return self._client

    def generate(
        self,
        prompt: str,
        base_image: Optional[Image.Image] = None,
        mask: Optional[Image.Image] = None,
        high_fidelity: bool = False
    ) -> Image.Image:
        from google.genai import types

        client = self._get_client()
        negative_prompt = HIGH_FIDELITY_NEGATIVE_PROMPT if high_fidelity else None

        if base_image is None:
            response = client.models.generate_images(
                model=self.generate_model,
                prompt=prompt,
                config=types.GenerateImagesConfig(
                    number_of_images=1,
                    negative_prompt=negative_prompt
                )
            )
        else:
            if mask is None:
                mask = Image.new("L", base_image.size, 255)

            raw_reference = types.RawReferenceImage(
                reference_id=1,
                reference_image=types.Image(image_bytes=image_to_png_bytes(base_image.convert("RGB")))
            )
            mask_reference = types.MaskReferenceImage(
                reference_id=2,
                reference_image=types.Image(image_bytes=image_to_png_bytes(mask.convert("L"))),
                config=types.MaskReferenceConfig(
                    mask_mode="MASK_MODE_USER_PROVIDED",
                    mask_dilation=0.03
                )
            )
            response = client.models.edit_image(
                model=self.edit_model,
                prompt=prompt,
                reference_images=[raw_reference, mask_reference],
                config=types.EditImageConfig(
                    edit_mode="EDIT_MODE_INPAINT_INSERTION",
                    number_of_images=1,
                    negative_prompt=negative_prompt
                )
            )

        if not response.generated_images:
            raise RuntimeError("No images generated")

        generated = response.generated_images[0].image
        return Image.open(io.BytesIO(generated.image_bytes)).convert("RGB")
