# =============================================================================
# CoffeeLeaf Backend
# services/features.py - Image Feature Extraction
#
# Pure numeric analysis of a decoded leaf photo: image quality metrics,
# colour/texture leaf features with the coffee-leaf plausibility score, and
# environmental factors (shadows, highlights, cluttered backgrounds).
# =============================================================================

from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

import numpy as np
from PIL import Image


# =============================================================================
# Value Types
# =============================================================================

@dataclass(frozen=True)
class QualityAnalysis:
    """Photographic quality of one image."""
    average_brightness: float
    contrast: float
    sharpness: float
    quality_score: float
    is_blurry: bool
    brightness_issue: bool

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class EnvironmentalFactors:
    """Lighting and background conditions around the leaf."""
    has_shadow: bool
    has_highlight: bool
    complex_background: bool
    shadow_ratio: float
    highlight_ratio: float
    edge_density: float

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class LeafFeatures:
    """Colour and structure descriptors of the leaf surface."""
    green_ratio: float
    brown_ratio: float
    yellow_ratio: float
    avg_hue: float
    avg_saturation: float
    avg_value: float
    avg_texture: float
    shape_complexity: float
    edge_density: float
    coffee_leaf_score: float

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class ImageAnalysis:
    """Everything the pipeline learns about an image before inference."""
    quality: QualityAnalysis
    leaf: LeafFeatures
    environment: EnvironmentalFactors

    def to_dict(self) -> Dict:
        return {
            'quality': self.quality.to_dict(),
            'leaf': self.leaf.to_dict(),
            'environment': self.environment.to_dict()
        }


# =============================================================================
# Thresholds
# =============================================================================

BLUR_THRESHOLD = 0.02
DARK_THRESHOLD = 0.2
BRIGHT_THRESHOLD = 0.8
LOW_CONTRAST_THRESHOLD = 0.1
GOOD_BRIGHTNESS_BAND = (0.3, 0.7)

SHADOW_LUMINANCE = 50
HIGHLIGHT_LUMINANCE = 230
EDGE_DELTA = 30

SHADOW_RATIO_LIMIT = 0.2
HIGHLIGHT_RATIO_LIMIT = 0.1
BACKGROUND_EDGE_LIMIT = 0.3

# Hue bands in degrees, each evaluated as an independent mask
GREEN_HUE = (35.0, 85.0)
GREEN_MIN_SATURATION = 0.3
BROWN_HUE = (15.0, 35.0)
YELLOW_HUE = (45.0, 65.0)
YELLOW_MIN_SATURATION = 0.6

# Penalties applied when the image carries no leaf colour at all
NO_LEAF_COLOUR_PENALTY = 0.45
LOW_SATURATION_PENALTY = 0.15
LOW_SATURATION_LIMIT = 0.15


# =============================================================================
# Pixel Helpers
# =============================================================================

def to_rgb_array(image: Image.Image) -> np.ndarray:
    """
    Convert a PIL image into a float64 array of shape (H, W, 3) in [0, 255].

    Args:
        image: Decoded PIL image in any mode

    Returns:
        RGB pixel array
    """
    if image.mode != 'RGB':
        image = image.convert('RGB')
    return np.asarray(image, dtype=np.float64)


def luminance(rgb: np.ndarray) -> np.ndarray:
    """Per-pixel luminance as the mean of the three channels."""
    return rgb.mean(axis=2)


def rgb_to_hsv(rgb: np.ndarray):
    """
    Vectorised RGB to HSV conversion.

    Args:
        rgb: Array of shape (H, W, 3) in [0, 255]

    Returns:
        Tuple (hue in [0, 360), saturation in [0, 1], value in [0, 1])
    """
    scaled = rgb / 255.0
    r, g, b = scaled[..., 0], scaled[..., 1], scaled[..., 2]

    max_c = scaled.max(axis=2)
    min_c = scaled.min(axis=2)
    delta = max_c - min_c

    hue = np.zeros_like(max_c)
    chromatic = delta > 0
    safe_delta = np.where(chromatic, delta, 1.0)

    red_max = chromatic & (max_c == r)
    green_max = chromatic & (max_c == g) & ~red_max
    blue_max = chromatic & ~red_max & ~green_max

    hue = np.where(red_max, 60.0 * (((g - b) / safe_delta) % 6.0), hue)
    hue = np.where(green_max, 60.0 * ((b - r) / safe_delta + 2.0), hue)
    hue = np.where(blue_max, 60.0 * ((r - g) / safe_delta + 4.0), hue)
    hue = np.mod(hue, 360.0)

    saturation = np.where(max_c > 0, delta / np.where(max_c > 0, max_c, 1.0), 0.0)

    return hue, saturation, max_c


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return float(min(max(value, low), high))


# =============================================================================
# Quality Analysis
# =============================================================================

def laplacian_sharpness(lum: np.ndarray) -> float:
    """
    Root-mean-square response of a 4-neighbour Laplacian, divided by 255.

    Only interior pixels contribute; images narrower than 3 pixels in
    either direction have no interior and score 0.
    """
    if lum.shape[0] < 3 or lum.shape[1] < 3:
        return 0.0

    centre = lum[1:-1, 1:-1]
    laplacian = (
        lum[:-2, 1:-1] + lum[2:, 1:-1] +
        lum[1:-1, :-2] + lum[1:-1, 2:] -
        4.0 * centre
    )
    return float(np.sqrt(np.mean(laplacian ** 2)) / 255.0)


def compute_quality_score(brightness: float, contrast: float, sharpness: float) -> float:
    """
    Combine the three quality metrics into one score in [0, 1].

    Starts at 0.5; a brightness inside the good band adds 0.2, otherwise
    the distance from mid-grey is penalized. Contrast adds up to 0.3 and
    sharpness up to 0.2.
    """
    score = 0.5

    low, high = GOOD_BRIGHTNESS_BAND
    if low <= brightness <= high:
        score += 0.2
    else:
        score -= abs(brightness - 0.5) * 0.4

    score += min(contrast * 2.0, 0.3)
    score += min(sharpness * 10.0, 0.2)

    return _clamp(score)


def analyze_quality(image: Image.Image) -> QualityAnalysis:
    """
    Measure brightness, contrast and sharpness of an image.

    Args:
        image: Decoded PIL image

    Returns:
        QualityAnalysis value
    """
    lum = luminance(to_rgb_array(image))

    brightness = float(lum.mean() / 255.0)
    contrast = float(lum.std() / 255.0)
    sharpness = laplacian_sharpness(lum)

    return QualityAnalysis(
        average_brightness=brightness,
        contrast=contrast,
        sharpness=sharpness,
        quality_score=compute_quality_score(brightness, contrast, sharpness),
        is_blurry=sharpness < BLUR_THRESHOLD,
        brightness_issue=brightness < DARK_THRESHOLD or brightness > BRIGHT_THRESHOLD
    )


def quality_insights(quality: QualityAnalysis) -> List[str]:
    """
    Name the quality problems worth reporting back to the photographer.

    Returns:
        Keys into constants.QUALITY_INSIGHTS, in a stable order
    """
    issues = []
    if quality.average_brightness < DARK_THRESHOLD:
        issues.append('too_dark')
    elif quality.average_brightness > BRIGHT_THRESHOLD:
        issues.append('too_bright')
    if quality.contrast < LOW_CONTRAST_THRESHOLD:
        issues.append('low_contrast')
    if quality.is_blurry:
        issues.append('blurry')
    return issues


# =============================================================================
# Environmental Factors
# =============================================================================

def analyze_environment(image: Image.Image) -> EnvironmentalFactors:
    """
    Detect shadows, highlights and a busy background.

    Edge pixels compare each pixel with its lower-right diagonal neighbour.
    """
    lum = luminance(to_rgb_array(image))
    total = lum.size

    shadow_ratio = float(np.count_nonzero(lum < SHADOW_LUMINANCE) / total)
    highlight_ratio = float(np.count_nonzero(lum > HIGHLIGHT_LUMINANCE) / total)

    if lum.shape[0] > 1 and lum.shape[1] > 1:
        diagonal = np.abs(lum[1:, 1:] - lum[:-1, :-1])
        edge_ratio = float(np.mean(diagonal > EDGE_DELTA))
    else:
        edge_ratio = 0.0

    return EnvironmentalFactors(
        has_shadow=shadow_ratio > SHADOW_RATIO_LIMIT,
        has_highlight=highlight_ratio > HIGHLIGHT_RATIO_LIMIT,
        complex_background=edge_ratio > BACKGROUND_EDGE_LIMIT,
        shadow_ratio=shadow_ratio,
        highlight_ratio=highlight_ratio,
        edge_density=edge_ratio
    )


# =============================================================================
# Leaf Features
# =============================================================================

def horizontal_texture(rgb: np.ndarray) -> float:
    """Mean absolute RGB difference between horizontally adjacent pixels."""
    if rgb.shape[1] < 2:
        return 0.0
    return float(np.abs(np.diff(rgb, axis=1)).sum(axis=2).mean())


def shape_complexity(lum: np.ndarray) -> float:
    """Mean over interior pixels of the summed 8-neighbour luminance deviation."""
    height, width = lum.shape
    if height < 3 or width < 3:
        return 0.0

    centre = lum[1:-1, 1:-1]
    total = np.zeros_like(centre)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dy == 0 and dx == 0:
                continue
            neighbour = lum[1 + dy:height - 1 + dy, 1 + dx:width - 1 + dx]
            total += np.abs(neighbour - centre)
    return float(total.mean())


def leaf_edge_density(lum: np.ndarray) -> float:
    """Fraction of pixels whose right or lower neighbour differs by more than 30."""
    if lum.shape[0] < 2 or lum.shape[1] < 2:
        return 0.0

    origin = lum[:-1, :-1]
    right = np.abs(lum[:-1, 1:] - origin) > EDGE_DELTA
    below = np.abs(lum[1:, :-1] - origin) > EDGE_DELTA
    return float(np.mean(right | below))


def compute_coffee_leaf_score(
    green_ratio: float,
    brown_ratio: float,
    avg_saturation: float,
    avg_texture: float,
    complexity: float,
    edge_density: float,
    environment: EnvironmentalFactors
) -> float:
    """
    Heuristic plausibility that the image shows a coffee leaf.

    Base 0.5 with bonuses for leaf colour, saturation, texture, structure,
    edge density, a clean background and even lighting. Images with no
    leaf colour and washed-out saturation are penalized so that grey or
    blank frames fall under the inference gate.

    Returns:
        Score clamped to [0, 1]
    """
    score = 0.5

    has_leaf_colour = green_ratio > 0.3 or brown_ratio > 0.2
    if has_leaf_colour:
        score += 0.15
    else:
        score -= NO_LEAF_COLOUR_PENALTY

    if avg_saturation > 0.3:
        score += 0.15
    elif avg_saturation <= LOW_SATURATION_LIMIT:
        score -= LOW_SATURATION_PENALTY

    if 10 < avg_texture < 100:
        score += 0.2
    if 5 < complexity < 50:
        score += 0.2
    if 0.1 < edge_density < 0.4:
        score += 0.15
    if not environment.complex_background:
        score += 0.1
    if not environment.has_shadow and not environment.has_highlight:
        score += 0.05

    return _clamp(score)


def extract_leaf_features(
    image: Image.Image,
    environment: Optional[EnvironmentalFactors] = None
) -> LeafFeatures:
    """
    Compute colour ratios, texture and structure of the leaf.

    Args:
        image: Decoded PIL image
        environment: Precomputed environmental factors (computed if None)

    Returns:
        LeafFeatures including the coffee-leaf score
    """
    if environment is None:
        environment = analyze_environment(image)

    rgb = to_rgb_array(image)
    hue, saturation, value = rgb_to_hsv(rgb)
    lum = luminance(rgb)

    green = (hue >= GREEN_HUE[0]) & (hue <= GREEN_HUE[1]) & (saturation > GREEN_MIN_SATURATION)
    brown = (hue >= BROWN_HUE[0]) & (hue < BROWN_HUE[1])
    yellow = (hue >= YELLOW_HUE[0]) & (hue <= YELLOW_HUE[1]) & (saturation > YELLOW_MIN_SATURATION)

    green_ratio = float(green.mean())
    brown_ratio = float(brown.mean())
    yellow_ratio = float(yellow.mean())
    avg_saturation = float(saturation.mean())

    texture = horizontal_texture(rgb)
    complexity = shape_complexity(lum)
    edges = leaf_edge_density(lum)

    return LeafFeatures(
        green_ratio=green_ratio,
        brown_ratio=brown_ratio,
        yellow_ratio=yellow_ratio,
        avg_hue=float(hue.mean()),
        avg_saturation=avg_saturation,
        avg_value=float(value.mean()),
        avg_texture=texture,
        shape_complexity=complexity,
        edge_density=edges,
        coffee_leaf_score=compute_coffee_leaf_score(
            green_ratio, brown_ratio, avg_saturation,
            texture, complexity, edges, environment
        )
    )


def analyze_image(image: Image.Image) -> ImageAnalysis:
    """Run quality, environment and leaf analysis on one image."""
    environment = analyze_environment(image)
    return ImageAnalysis(
        quality=analyze_quality(image),
        leaf=extract_leaf_features(image, environment),
        environment=environment
    )
