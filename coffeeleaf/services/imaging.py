# =============================================================================
# CoffeeLeaf Backend
# services/imaging.py - Image Decoding Helpers
#
# Turns uploaded bytes into a Pillow RGB bitmap and computes the content
# digest used as the cache key.
# =============================================================================

import io
import hashlib
import logging

from PIL import Image, UnidentifiedImageError

from ..errors import DecodeFailed

logger = logging.getLogger(__name__)


def compute_image_hash(image_data: bytes) -> str:
    """
    SHA-256 digest of the raw image bytes.

    Args:
        image_data: Raw uploaded bytes

    Returns:
        Hexadecimal digest
    """
    return hashlib.sha256(image_data).hexdigest()


def decode_image(image_data: bytes) -> Image.Image:
    """
    Decode raw bytes into an RGB image.

    Args:
        image_data: Raw image bytes (JPEG, PNG, WebP, ...)

    Returns:
        Fully loaded PIL image in RGB mode

    Raises:
        DecodeFailed: If the bytes are empty or not a supported image
    """
    if not image_data:
        raise DecodeFailed('Empty image payload')

    try:
        image = Image.open(io.BytesIO(image_data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        logger.warning(f"Image decode failed: {e}")
        raise DecodeFailed(f'Invalid or corrupt image: {e}') from e

    if image.width < 1 or image.height < 1:
        raise DecodeFailed('Image has no pixels')

    if image.mode != 'RGB':
        image = image.convert('RGB')

    return image


def encode_png(image: Image.Image) -> bytes:
    """Serialize an image to PNG bytes."""
    buffer = io.BytesIO()
    image.save(buffer, format='PNG')
    return buffer.getvalue()
