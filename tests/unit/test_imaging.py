"""
Unit tests for decoding, enhancement and augmentation of uploaded images.
"""
import io

import pytest
from PIL import Image

from coffeeleaf.errors import DecodeFailed
from coffeeleaf.services.augmentation import AUGMENTATIONS, generate_augmentations
from coffeeleaf.services.enhancer import brightness_factor, enhance_image, needs_enhancement
from coffeeleaf.services.features import analyze_environment, analyze_quality
from coffeeleaf.services.imaging import compute_image_hash, decode_image, encode_png

from conftest import make_flat_image


class TestDecodeImage:
    """Tests for decode_image"""

    def test_png_round_trip(self, leaf_image):
        decoded = decode_image(encode_png(leaf_image))
        assert decoded.mode == 'RGB'
        assert decoded.size == (224, 224)

    def test_rgba_is_converted_to_rgb(self):
        buffer = io.BytesIO()
        Image.new('RGBA', (8, 8), (10, 200, 10, 128)).save(buffer, format='PNG')
        assert decode_image(buffer.getvalue()).mode == 'RGB'

    def test_empty_payload_fails(self):
        with pytest.raises(DecodeFailed):
            decode_image(b'')

    def test_garbage_fails(self):
        with pytest.raises(DecodeFailed):
            decode_image(b'definitely not an image')


class TestImageHash:

    def test_hash_is_sha256_hex(self, leaf_png):
        digest = compute_image_hash(leaf_png)
        assert len(digest) == 64
        assert digest == compute_image_hash(bytes(leaf_png))

    def test_different_bytes_different_hash(self, leaf_png, gray_png):
        assert compute_image_hash(leaf_png) != compute_image_hash(gray_png)


class TestEnhancer:
    """Tests for the adaptive enhancement sequence"""

    def test_only_low_quality_images_are_enhanced(self, leaf_image):
        good = analyze_quality(leaf_image)
        poor = analyze_quality(make_flat_image((10, 10, 10)))
        assert needs_enhancement(good) is False
        assert needs_enhancement(poor) is True
        assert needs_enhancement(good, threshold=0.99) is True

    def test_brightness_factor(self):
        assert brightness_factor(0.5) == 1.0
        assert brightness_factor(0.1) == 2.5
        assert brightness_factor(0.9) == pytest.approx(0.65 / 0.9)
        assert brightness_factor(0.0) == 2.5

    def test_dark_flat_image_gets_every_step(self):
        image = make_flat_image((30, 30, 30))
        enhanced, steps = enhance_image(image, analyze_quality(image), analyze_environment(image))

        assert steps == ['contrast', 'brightness', 'sharpen', 'lighting']
        assert image.getpixel((5, 5)) == (30, 30, 30)
        assert enhanced.getpixel((5, 5))[0] > 60

    def test_good_image_only_gets_contrast_boost(self, leaf_image):
        enhanced, steps = enhance_image(
            leaf_image, analyze_quality(leaf_image), analyze_environment(leaf_image)
        )
        assert steps == ['contrast']  # only the low-contrast boost applies
        assert enhanced is not leaf_image


class TestAugmentation:
    """Tests for the augmentation variants"""

    def test_fixed_order_and_count(self, leaf_image):
        variants = generate_augmentations(leaf_image)
        assert [v.name for v in variants] == [name for name, _ in AUGMENTATIONS]
        assert len(variants) == 8
        assert variants[0].name == 'identity'

    def test_variants_are_independent_copies(self, leaf_image):
        variants = generate_augmentations(leaf_image)
        images = [v.image for v in variants]
        assert len({id(image) for image in images}) == len(images)
        assert all(image is not leaf_image for image in images)
        assert variants[0].image.tobytes() == leaf_image.tobytes()

    def test_variants_keep_size(self, leaf_image):
        assert {v.image.size for v in generate_augmentations(leaf_image)} == {(224, 224)}
