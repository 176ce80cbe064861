# =============================================================================
# CoffeeLeaf Backend
# services/enhancer.py - Adaptive Image Enhancement
#
# Rewrites low-quality photos before inference: contrast boost, brightness
# correction toward the good band, sharpening, and a mild contrast lift when
# shadows or highlights are present.
# =============================================================================

import logging
from typing import List, Tuple

from PIL import Image, ImageEnhance, ImageFilter

from .features import (
    QualityAnalysis,
    EnvironmentalFactors,
    GOOD_BRIGHTNESS_BAND,
    LOW_CONTRAST_THRESHOLD
)
from ..constants import ENHANCE_QUALITY_THRESHOLD

logger = logging.getLogger(__name__)

LOW_CONTRAST_FACTOR = 1.3
LIGHTING_CONTRAST_FACTOR = 1.1
MAX_BRIGHTNESS_FACTOR = 2.5
MIN_BRIGHTNESS_FACTOR = 0.4

# Brightness targets just inside the good band
DARK_TARGET = 0.35
BRIGHT_TARGET = 0.65


def needs_enhancement(quality: QualityAnalysis,
                      threshold: float = ENHANCE_QUALITY_THRESHOLD) -> bool:
    """Enhancement only runs for images whose quality score is below threshold."""
    return quality.quality_score < threshold


def brightness_factor(brightness: float) -> float:
    """
    Multiplicative factor that moves brightness back into [0.3, 0.7].

    Returns 1.0 when the brightness is already inside the band.
    """
    low, high = GOOD_BRIGHTNESS_BAND
    if brightness < low:
        factor = DARK_TARGET / max(brightness, 1e-3)
    elif brightness > high:
        factor = BRIGHT_TARGET / brightness
    else:
        return 1.0
    return min(max(factor, MIN_BRIGHTNESS_FACTOR), MAX_BRIGHTNESS_FACTOR)


def enhance_image(
    image: Image.Image,
    quality: QualityAnalysis,
    environment: EnvironmentalFactors
) -> Tuple[Image.Image, List[str]]:
    """
    Apply the deterministic enhancement sequence to a copy of the image.

    Args:
        image: Source image (left untouched)
        quality: Quality analysis of the source image
        environment: Environmental factors of the source image

    Returns:
        Tuple of (new image, names of the steps applied)
    """
    enhanced = image.copy()
    steps = []

    if quality.contrast < LOW_CONTRAST_THRESHOLD:
        enhanced = ImageEnhance.Contrast(enhanced).enhance(LOW_CONTRAST_FACTOR)
        steps.append('contrast')

    factor = brightness_factor(quality.average_brightness)
    if factor != 1.0:
        enhanced = ImageEnhance.Brightness(enhanced).enhance(factor)
        steps.append('brightness')

    if quality.is_blurry:
        enhanced = enhanced.filter(ImageFilter.UnsharpMask(radius=2, percent=150, threshold=3))
        steps.append('sharpen')

    if environment.has_shadow or environment.has_highlight:
        enhanced = ImageEnhance.Contrast(enhanced).enhance(LIGHTING_CONTRAST_FACTOR)
        steps.append('lighting')

    logger.debug(f"Enhancement steps applied: {steps or 'none'}")

    return enhanced, steps
