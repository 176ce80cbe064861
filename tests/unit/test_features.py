"""
Unit tests for image feature extraction (pure numpy, no mocks).
"""
import numpy as np
import pytest
from PIL import Image

from coffeeleaf.services.features import (
    EnvironmentalFactors,
    analyze_environment,
    analyze_image,
    analyze_quality,
    compute_coffee_leaf_score,
    compute_quality_score,
    extract_leaf_features,
    laplacian_sharpness,
    quality_insights,
    rgb_to_hsv,
)

from conftest import make_flat_image


def _calm_environment():
    return EnvironmentalFactors(
        has_shadow=False, has_highlight=False, complex_background=False,
        shadow_ratio=0.0, highlight_ratio=0.0, edge_density=0.0
    )


class TestRgbToHsv:
    """Tests for the vectorised HSV conversion"""

    def test_primary_hues(self):
        rgb = np.array([[[255, 0, 0], [0, 255, 0], [0, 0, 255]]], dtype=np.float64)
        hue, saturation, value = rgb_to_hsv(rgb)
        assert hue[0].tolist() == pytest.approx([0.0, 120.0, 240.0])
        assert saturation[0].tolist() == pytest.approx([1.0, 1.0, 1.0])
        assert value[0].tolist() == pytest.approx([1.0, 1.0, 1.0])

    def test_grey_has_no_hue_or_saturation(self):
        rgb = np.full((2, 2, 3), 128.0)
        hue, saturation, _ = rgb_to_hsv(rgb)
        assert np.all(hue == 0.0)
        assert np.all(saturation == 0.0)

    def test_leaf_green_falls_in_green_band(self):
        rgb = np.array([[[140, 180, 40]]], dtype=np.float64)
        hue, saturation, _ = rgb_to_hsv(rgb)
        assert 75.0 < hue[0, 0] < 80.0
        assert saturation[0, 0] == pytest.approx(140 / 180)


class TestQuality:
    """Tests for brightness/contrast/sharpness scoring"""

    def test_uniform_image_has_no_sharpness(self):
        lum = np.full((10, 10), 100.0)
        assert laplacian_sharpness(lum) == 0.0

    def test_tiny_image_has_no_interior(self):
        assert laplacian_sharpness(np.zeros((2, 50))) == 0.0

    def test_score_is_clamped(self):
        assert compute_quality_score(0.5, 1.0, 1.0) == 1.0
        assert 0.0 <= compute_quality_score(0.0, 0.0, 0.0) <= 1.0

    def test_out_of_band_brightness_is_penalized(self):
        in_band = compute_quality_score(0.5, 0.0, 0.0)
        dark = compute_quality_score(0.05, 0.0, 0.0)
        assert in_band == pytest.approx(0.7)
        assert dark == pytest.approx(0.5 - 0.45 * 0.4)

    def test_synthetic_leaf_quality(self, leaf_image):
        quality = analyze_quality(leaf_image)
        assert 0.4 < quality.average_brightness < 0.55
        assert quality.is_blurry is False
        assert quality.brightness_issue is False
        assert 0.85 < quality.quality_score < 0.95

    def test_dark_flat_image_insights(self):
        quality = analyze_quality(make_flat_image((10, 10, 10)))
        assert quality.brightness_issue is True
        assert quality.is_blurry is True
        assert quality_insights(quality) == ['too_dark', 'low_contrast', 'blurry']

    def test_bright_image_insight(self):
        quality = analyze_quality(make_flat_image((250, 250, 250)))
        assert quality_insights(quality)[0] == 'too_bright'


class TestEnvironment:
    """Tests for shadow, highlight and background detection"""

    def test_black_image_is_all_shadow(self):
        env = analyze_environment(make_flat_image((0, 0, 0)))
        assert env.shadow_ratio == 1.0
        assert env.has_shadow is True
        assert env.has_highlight is False

    def test_white_image_is_all_highlight(self):
        env = analyze_environment(make_flat_image((255, 255, 255)))
        assert env.highlight_ratio == 1.0
        assert env.has_highlight is True

    def test_striped_image_is_complex_background(self):
        stripes = np.zeros((20, 20, 3), dtype=np.uint8)
        stripes[:, ::2] = 255
        env = analyze_environment(Image.fromarray(stripes, 'RGB'))
        assert env.edge_density == 1.0
        assert env.complex_background is True


class TestCoffeeLeafScore:
    """Tests for the coffee-leaf plausibility heuristic"""

    def test_grey_frame_scores_below_gate(self):
        leaf = extract_leaf_features(make_flat_image())
        assert leaf.green_ratio == 0.0
        assert leaf.brown_ratio == 0.0
        assert leaf.coffee_leaf_score == pytest.approx(0.05)

    def test_synthetic_leaf_scores_high(self, leaf_image):
        leaf = extract_leaf_features(leaf_image)
        assert leaf.green_ratio > 0.95
        assert leaf.avg_saturation > 0.7
        assert 10 < leaf.avg_texture < 100
        assert 5 < leaf.shape_complexity < 50
        assert leaf.coffee_leaf_score >= 0.95

    def test_all_bonuses_clamp_to_one(self):
        score = compute_coffee_leaf_score(0.9, 0.0, 0.8, 40.0, 20.0, 0.2, _calm_environment())
        assert score == 1.0

    def test_brown_leaf_counts_as_leaf_colour(self):
        without = compute_coffee_leaf_score(0.0, 0.0, 0.5, 0.0, 0.0, 0.0, _calm_environment())
        with_brown = compute_coffee_leaf_score(0.0, 0.3, 0.5, 0.0, 0.0, 0.0, _calm_environment())
        assert with_brown - without == pytest.approx(0.6)

    def test_precomputed_environment_is_used(self):
        busy = EnvironmentalFactors(
            has_shadow=True, has_highlight=False, complex_background=True,
            shadow_ratio=0.5, highlight_ratio=0.0, edge_density=0.5
        )
        grey = make_flat_image()
        assert extract_leaf_features(grey, _calm_environment()).coffee_leaf_score == pytest.approx(0.05)
        assert extract_leaf_features(grey, busy).coffee_leaf_score == 0.0


class TestAnalyzeImage:

    def test_bundles_all_three_analyses(self, leaf_image):
        analysis = analyze_image(leaf_image)
        data = analysis.to_dict()
        assert set(data) == {'quality', 'leaf', 'environment'}
        assert data['leaf']['coffee_leaf_score'] == analysis.leaf.coffee_leaf_score
