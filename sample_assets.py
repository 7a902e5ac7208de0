"""
Generate sample jewelry product photos and body images.

Creates simple synthetic images for tests and the command-line demo:
product photos on a plain background, a front-facing person and a raised hand.
"""

import math
import os
from typing import Tuple

import cv2
import numpy as np
from PIL import Image, ImageDraw

Color = Tuple[int, int, int]

WHITE = (255, 255, 255)
GOLD = (212, 175, 55)
DARK_GOLD = (139, 69, 19)
RUBY = (200, 20, 60)
EMERALD = (0, 128, 0)
SKIN = (200, 160, 130)
CLOTHING = (80, 100, 150)
STUDIO_GREY = (235, 235, 235)


def create_ring_photo(
    size: int = 512,
    background: Color = WHITE,
    metal: Color = GOLD,
    outer_radius: int = 100,
    band_width: int = 25
) -> Image.Image:
    """Ring seen from the front: a metal band with an empty center."""
    img = Image.new("RGB", (size, size), background)
    draw = ImageDraw.Draw(img)

    cx = cy = size // 2
    inner_radius = outer_radius - band_width
    draw.ellipse([cx - outer_radius, cy - outer_radius, cx + outer_radius, cy + outer_radius], fill=metal)
    draw.ellipse([cx - inner_radius, cy - inner_radius, cx + inner_radius, cy + inner_radius], fill=background)
    return img


def create_necklace_photo(width: int = 600, height: int = 400, background: Color = WHITE) -> Image.Image:
    """Beaded chain draped in a curve with a center pendant."""
    img = Image.new("RGB", (width, height), background)
    draw = ImageDraw.Draw(img)

    center_x = width // 2
    # Parabolic drape of beads
    for i in range(-18, 19):
        x = center_x + i * 14
        y = 60 + int((i ** 2) * 0.45)
        draw.ellipse([x - 9, y - 9, x + 9, y + 9], fill=GOLD, outline=DARK_GOLD)

    pendant_y = int(height * 0.6)
    draw.ellipse([center_x - 35, pendant_y - 20, center_x + 35, pendant_y + 55],
                 fill=GOLD, outline=DARK_GOLD, width=3)
    draw.ellipse([center_x - 20, pendant_y, center_x + 20, pendant_y + 35], fill=RUBY)
    return img


def create_earring_photo(width: int = 300, height: int = 400, background: Color = WHITE) -> Image.Image:
    """Drop earring: stud, chain links and a stone."""
    img = Image.new("RGB", (width, height), background)
    draw = ImageDraw.Draw(img)

    center_x = width // 2
    draw.ellipse([center_x - 20, 40, center_x + 20, 80], fill=GOLD, outline=DARK_GOLD, width=2)

    for i in range(5):
        y = 90 + i * 30
        draw.ellipse([center_x - 10, y, center_x + 10, y + 22], fill=GOLD, outline=DARK_GOLD)

    draw.ellipse([center_x - 45, 240, center_x + 45, 360], fill=EMERALD, outline=DARK_GOLD, width=4)
    draw.ellipse([center_x - 25, 265, center_x + 25, 335], fill=(50, 205, 50))
    return img


def create_bracelet_photo(size: int = 400, background: Color = WHITE) -> Image.Image:
    """Bangle with stones set around the band."""
    img = Image.new("RGB", (size, size), background)
    draw = ImageDraw.Draw(img)

    center = size // 2
    margin = size // 8
    draw.ellipse([margin, margin, size - margin, size - margin], outline=GOLD, width=30)

    radius = center - margin - 15
    for angle in range(0, 360, 30):
        rad = math.radians(angle)
        x = center + int(radius * math.cos(rad))
        y = center + int(radius * math.sin(rad))
        draw.ellipse([x - 10, y - 10, x + 10, y + 10], fill=RUBY, outline=DARK_GOLD)
    return img


def create_person_image(width: int = 600, height: int = 800, skin: Color = SKIN) -> Image.Image:
    """
    Front-facing person: face oval, neck and shoulders on a studio background.

    The face blob (face plus neck) stays roughly as wide as it is tall so
    face detection accepts it.
    """
    img = np.full((height, width, 3), STUDIO_GREY, dtype=np.uint8)

    center_x = width // 2
    center_y = int(height * 0.28)
    face_w, face_h = int(width * 0.15), int(height * 0.14)

    # Shoulders and torso
    body_top = center_y + face_h + 40
    pts = np.array([
        [center_x - int(width * 0.4), height],
        [center_x - int(width * 0.35), body_top],
        [center_x + int(width * 0.35), body_top],
        [center_x + int(width * 0.4), height],
    ], np.int32)
    cv2.fillPoly(img, [pts], CLOTHING)

    # Neck
    cv2.rectangle(img, (center_x - 35, center_y + face_h - 20), (center_x + 35, body_top), skin, -1)

    # Face
    cv2.ellipse(img, (center_x, center_y), (face_w, face_h), 0, 0, 360, skin, -1)

    # Eyes and mouth
    eye_y = center_y - face_h // 5
    cv2.ellipse(img, (center_x - face_w // 3, eye_y), (12, 8), 0, 0, 360, (50, 50, 50), -1)
    cv2.ellipse(img, (center_x + face_w // 3, eye_y), (12, 8), 0, 0, 360, (50, 50, 50), -1)
    cv2.ellipse(img, (center_x, center_y + face_h // 2), (25, 10), 0, 0, 180, (180, 100, 100), 2)

    return Image.fromarray(img)


def create_hand_image(width: int = 600, height: int = 600, skin: Color = SKIN) -> Image.Image:
    """Raised hand: palm and wrist with four fingers and a thumb."""
    img = np.full((height, width, 3), STUDIO_GREY, dtype=np.uint8)

    center_x = width // 2
    palm_top = int(height * 0.45)
    palm_bottom = int(height * 0.7)
    palm_half = int(width * 0.1)

    # Wrist and palm
    cv2.rectangle(img, (center_x - palm_half + 10, palm_bottom), (center_x + palm_half - 10, height), skin, -1)
    cv2.rectangle(img, (center_x - palm_half, palm_top), (center_x + palm_half, palm_bottom), skin, -1)

    # Fingers, the middle one longest
    finger_width = (2 * palm_half) // 4
    lengths = [0.6, 0.75, 0.7, 0.5]
    for i, length in enumerate(lengths):
        left = center_x - palm_half + i * finger_width + 2
        top = palm_top - int(palm_top * length * 0.5)
        cv2.rectangle(img, (left, top), (left + finger_width - 4, palm_top), skin, -1)

    # Thumb
    thumb = np.array([
        [center_x - palm_half, palm_top + 40],
        [center_x - palm_half - 50, palm_top + 10],
        [center_x - palm_half - 35, palm_top - 5],
        [center_x - palm_half, palm_top + 15],
    ], np.int32)
    cv2.fillPoly(img, [thumb], skin)

    return Image.fromarray(img)


def create_noise_image(width: int = 512, height: int = 512, seed: int = 0) -> Image.Image:
    """Uniform RGB noise."""
    rng = np.random.default_rng(seed)
    return Image.fromarray(rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8))


def main():
    """Generate all sample assets."""
    assets_dir = "assets"
    os.makedirs(assets_dir, exist_ok=True)

    print("Generating sample assets...")
    print("-" * 40)

    assets = {
        "ring.png": create_ring_photo(),
        "necklace.png": create_necklace_photo(),
        "earring.png": create_earring_photo(),
        "bracelet.png": create_bracelet_photo(),
        "person.png": create_person_image(),
        "hand.png": create_hand_image(),
    }
    for name, image in assets.items():
        path = os.path.join(assets_dir, name)
        image.save(path)
        print(f"Created: {path}")

    print("-" * 40)
    print("Done! Sample assets created in:", assets_dir)


if __name__ == "__main__":
    main()
