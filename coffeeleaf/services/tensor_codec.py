# =============================================================================
# CoffeeLeaf Backend
# services/tensor_codec.py - Tensor Encoding and Score Decoding
#
# Converts a bitmap into the input layout declared by the active model handle
# and turns raw output scores back into class probabilities.
# =============================================================================

from typing import List, Sequence

import numpy as np
from PIL import Image

from ..constants import MEAN, STD, DISEASE_CLASSES

CHANNEL_FIRST = 'channel_first'
CHANNEL_LAST = 'channel_last'
FLAT = 'flat'

_MEAN = np.asarray(MEAN, dtype=np.float32)
_STD = np.asarray(STD, dtype=np.float32)


def encode_image(image: Image.Image, handle) -> np.ndarray:
    """
    Encode an image for the model described by ``handle``.

    Channel-first models get ImageNet mean/std normalization and an NCHW
    tensor; channel-last models get plain [0, 1] scaling in NHWC.

    Args:
        image: PIL image of any size
        handle: Active ModelHandle (layout and input size)

    Returns:
        float32 tensor with a leading batch dimension of 1
    """
    width, height = handle.input_size
    if image.mode != 'RGB':
        image = image.convert('RGB')
    resized = image.resize((width, height), Image.Resampling.BILINEAR)

    pixels = np.asarray(resized, dtype=np.float32) / 255.0

    if handle.layout == CHANNEL_FIRST:
        pixels = (pixels - _MEAN) / _STD
        pixels = pixels.transpose(2, 0, 1)

    return np.expand_dims(pixels, axis=0).astype(np.float32)


def softmax(scores: Sequence[float]) -> np.ndarray:
    """Numerically stable softmax over a 1-D score vector."""
    values = np.asarray(scores, dtype=np.float64).reshape(-1)
    shifted = values - values.max()
    exp = np.exp(shifted)
    return exp / exp.sum()


def to_probabilities(scores: Sequence[float]) -> np.ndarray:
    """
    Return scores unchanged if they already form a distribution, else softmax.
    """
    values = np.asarray(scores, dtype=np.float64).reshape(-1)
    if values.min() >= 0.0 and values.max() <= 1.0 and abs(values.sum() - 1.0) < 1e-3:
        return values
    return softmax(values)


def decode_scores(scores: Sequence[float], class_names: List[str] = None,
                  normalized: bool = False) -> List[tuple]:
    """
    Map raw scores onto class names, highest probability first.

    Extra outputs beyond the known classes are ignored before normalization.

    Args:
        scores: Raw model output for one input
        class_names: Class labels in output order (defaults to disease classes)
        normalized: Keep scores that already form a distribution as-is

    Returns:
        List of (class_name, probability) sorted by probability
    """
    class_names = class_names or DISEASE_CLASSES
    values = np.asarray(scores, dtype=np.float64).reshape(-1)
    count = min(len(values), len(class_names))
    if count == 0:
        return []

    probabilities = to_probabilities(values[:count]) if normalized else softmax(values[:count])
    pairs = [(class_names[i], float(probabilities[i])) for i in range(count)]
    pairs.sort(key=lambda pair: pair[1], reverse=True)
    return pairs
