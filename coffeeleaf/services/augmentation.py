# =============================================================================
# CoffeeLeaf Backend
# services/augmentation.py - Test-Time Augmentation
#
# Produces the fixed set of perturbed variants used for ensemble inference.
# =============================================================================

from typing import Callable, List, NamedTuple

from PIL import Image, ImageEnhance


class Variant(NamedTuple):
    """One augmented copy of the base image."""
    name: str
    image: Image.Image


def _rotate(degrees: float) -> Callable[[Image.Image], Image.Image]:
    def transform(image):
        return image.rotate(degrees, resample=Image.Resampling.BILINEAR)
    return transform


def _enhance(enhancer, factor: float) -> Callable[[Image.Image], Image.Image]:
    def transform(image):
        return enhancer(image).enhance(factor)
    return transform


# Ordered; the identity variant always comes first
AUGMENTATIONS = [
    ('identity', lambda image: image.copy()),
    ('rotate_+2', _rotate(2.0)),
    ('rotate_-2', _rotate(-2.0)),
    ('brighten_1.1', _enhance(ImageEnhance.Brightness, 1.1)),
    ('darken_0.9', _enhance(ImageEnhance.Brightness, 0.9)),
    ('contrast_1.1', _enhance(ImageEnhance.Contrast, 1.1)),
    ('contrast_0.9', _enhance(ImageEnhance.Contrast, 0.9)),
    ('saturate_1.1', _enhance(ImageEnhance.Color, 1.1)),
]


def generate_augmentations(image: Image.Image) -> List[Variant]:
    """
    Build every augmentation variant of an image.

    Each transform returns a new Pillow image, so variants never share
    pixel buffers with each other or with the input.

    Args:
        image: Base image (possibly enhanced)

    Returns:
        List of Variant in the fixed augmentation order
    """
    return [Variant(name, transform(image)) for name, transform in AUGMENTATIONS]
