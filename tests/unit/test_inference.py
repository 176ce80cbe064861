"""
Unit tests for tensor encoding, layout detection and the inference engine.
"""
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from coffeeleaf.constants import MEAN, MODEL_TYPE_IMAGE, STD
from coffeeleaf.errors import InferenceFailed, ModelNotFound
from coffeeleaf.services.inference import InferenceEngine, ModelCatalog, infer_layout
from coffeeleaf.services.tensor_codec import (
    CHANNEL_FIRST,
    CHANNEL_LAST,
    FLAT,
    decode_scores,
    encode_image,
    softmax,
    to_probabilities,
)

from conftest import FakeSession, write_model_file


class TestInferLayout:
    """Tests for infer_layout"""

    def test_nchw(self):
        assert infer_layout([1, 3, 224, 224]) == (CHANNEL_FIRST, (224, 224))

    def test_nhwc_with_other_size(self):
        assert infer_layout([1, 299, 320, 3]) == (CHANNEL_LAST, (320, 299))

    def test_dynamic_dims_use_default_size(self):
        assert infer_layout(['batch', 3, 'height', 'width']) == (CHANNEL_FIRST, (224, 224))
        assert infer_layout([None, None, None, 3]) == (CHANNEL_LAST, (224, 224))

    def test_non_4d_is_flat(self):
        assert infer_layout([1, 20])[0] == FLAT

    def test_unknown_channel_axis_defaults_to_channel_first(self):
        assert infer_layout([1, 5, 64, 64]) == (CHANNEL_FIRST, (224, 224))


class TestEncodeImage:
    """Tests for encode_image"""

    def test_channel_first_is_normalized(self):
        handle = SimpleNamespace(layout=CHANNEL_FIRST, input_size=(16, 16))
        tensor = encode_image(Image.new('RGB', (40, 30), (255, 255, 255)), handle)

        assert tensor.shape == (1, 3, 16, 16)
        assert tensor.dtype == np.float32
        expected = [(1.0 - m) / s for m, s in zip(MEAN, STD)]
        assert tensor[0, :, 0, 0].tolist() == pytest.approx(expected, rel=1e-5)

    def test_channel_last_is_scaled_only(self):
        handle = SimpleNamespace(layout=CHANNEL_LAST, input_size=(8, 12))
        tensor = encode_image(Image.new('RGB', (50, 50), (255, 0, 0)), handle)

        assert tensor.shape == (1, 12, 8, 3)
        assert tensor[0, 0, 0].tolist() == pytest.approx([1.0, 0.0, 0.0])


class TestScores:
    """Tests for softmax and score decoding"""

    def test_softmax_sums_to_one(self):
        probs = softmax([1.0, 2.0, 3.0])
        assert probs.sum() == pytest.approx(1.0)
        assert probs.argmax() == 2

    def test_softmax_is_stable_for_large_logits(self):
        probs = softmax([1000.0, 1000.0])
        assert probs.tolist() == pytest.approx([0.5, 0.5])

    def test_to_probabilities_keeps_distribution(self):
        assert to_probabilities([0.1, 0.2, 0.7]).tolist() == pytest.approx([0.1, 0.2, 0.7])

    def test_to_probabilities_softmaxes_logits(self):
        assert to_probabilities([2.0, -1.0]).sum() == pytest.approx(1.0)

    def test_decode_scores_sorted_with_class_names(self):
        ranked = decode_scores([0.0, 0.0, 0.0, 0.0, 5.0])
        assert ranked[0][0] == 'Rust'
        assert ranked[0][1] == pytest.approx(np.exp(5) / (4 + np.exp(5)))
        assert [p for _, p in ranked] == sorted([p for _, p in ranked], reverse=True)

    def test_decode_scores_ignores_extra_outputs(self):
        ranked = decode_scores([5.0, 0.0, 0.0, 0.0, 0.0, 99.0])
        assert len(ranked) == 5
        assert ranked[0][0] == 'Cercospora'

    def test_decode_scores_always_softmaxes_image_output(self):
        ranked = decode_scores([0.2, 0.2, 0.2, 0.2, 0.2])
        assert ranked[0][1] == pytest.approx(0.2)
        ranked = decode_scores([0.0, 1.0, 0.0, 0.0, 0.0])
        assert ranked[0][1] < 1.0

    def test_empty_scores(self):
        assert decode_scores([]) == []


class TestModelCatalog:

    def test_missing_file_lists_searched_paths(self, tmp_path):
        catalog = ModelCatalog([str(tmp_path / 'a'), str(tmp_path / 'b')])
        with pytest.raises(ModelNotFound) as exc_info:
            catalog.find_model_file(MODEL_TYPE_IMAGE)
        assert len(exc_info.value.searched) == 2

    def test_first_existing_candidate_wins(self, tmp_path):
        first, second = tmp_path / 'first', tmp_path / 'second'
        first.mkdir()
        second.mkdir()
        expected = write_model_file(second, 'coffee_resnet50_v1.1.onnx')
        catalog = ModelCatalog([str(first), str(second)])
        assert catalog.find_model_file(MODEL_TYPE_IMAGE) == expected

    def test_failing_listener_does_not_stop_others(self, tmp_path):
        catalog = ModelCatalog([str(tmp_path)])
        broken = MagicMock(side_effect=RuntimeError('boom'))
        healthy = MagicMock()
        catalog.subscribe(broken)
        catalog.subscribe(healthy)

        catalog.on_model_swapped(MODEL_TYPE_IMAGE, 'v1', 'v2')
        healthy.assert_called_once_with(MODEL_TYPE_IMAGE, 'v1', 'v2')


class TestInferenceEngine:
    """Tests for InferenceEngine loading, running and swapping"""

    def test_load_reads_handle_metadata(self, loaded_engine):
        handle = loaded_engine.handle
        assert loaded_engine.is_loaded()
        assert handle.version == 'coffee_resnet50_v1.1'
        assert handle.layout == CHANNEL_FIRST
        assert handle.input_name == 'input'
        assert handle.output_name == 'output'
        assert handle.input_size == (224, 224)

    def test_try_load_without_file_stays_in_mock_mode(self, empty_engine):
        assert empty_engine.try_load() is False
        assert empty_engine.handle is None
        assert empty_engine.health_check().healthy is False

    def test_run_returns_first_row(self, loaded_engine):
        scores = loaded_engine.run(np.zeros((1, 3, 224, 224), dtype=np.float32))
        assert scores.shape == (5,)
        assert loaded_engine.inference_count == 1

    def test_run_without_model_raises(self, empty_engine):
        with pytest.raises(ModelNotFound):
            empty_engine.run(np.zeros((1, 3, 224, 224), dtype=np.float32))

    def test_runtime_error_becomes_inference_failed(self, model_dir):
        write_model_file(model_dir, 'coffee_resnet50_v1.1.onnx')
        engine = InferenceEngine(MODEL_TYPE_IMAGE, ModelCatalog([str(model_dir)]),
                                 session_loader=lambda path: FakeSession(fail_always=True))
        engine.load()
        with pytest.raises(InferenceFailed):
            engine.run(np.zeros((1, 3, 224, 224), dtype=np.float32))
        assert engine.info()['failure_count'] == 1

    def test_model_without_outputs_is_rejected(self, model_dir):
        write_model_file(model_dir, 'coffee_resnet50_v1.1.onnx')
        session = MagicMock()
        session.get_inputs.return_value = []
        session.get_outputs.return_value = []
        engine = InferenceEngine(MODEL_TYPE_IMAGE, ModelCatalog([str(model_dir)]),
                                 session_loader=lambda path: session)
        assert engine.try_load() is False

    def test_swap_notifies_catalog_listeners(self, loaded_engine, model_dir):
        listener = MagicMock()
        loaded_engine.catalog.subscribe(listener)
        write_model_file(model_dir, 'coffee_resnet50_v1.2.onnx')

        handle = loaded_engine.swap(file_name='coffee_resnet50_v1.2.onnx')

        assert handle.version == 'coffee_resnet50_v1.2'
        assert loaded_engine.version == 'coffee_resnet50_v1.2'
        listener.assert_called_once_with(MODEL_TYPE_IMAGE, 'coffee_resnet50_v1.1', 'coffee_resnet50_v1.2')

    def test_swap_to_missing_file_keeps_old_model(self, loaded_engine):
        with pytest.raises(ModelNotFound):
            loaded_engine.swap(file_name='does_not_exist.onnx')
        assert loaded_engine.version == 'coffee_resnet50_v1.1'

    def test_snapshot_survives_swap(self, model_dir):
        old_session, new_session = FakeSession(), FakeSession(scores=[5.0, 0, 0, 0, 0])
        sessions = {'old.onnx': old_session, 'new.onnx': new_session}
        write_model_file(model_dir, 'old.onnx')
        write_model_file(model_dir, 'new.onnx')
        engine = InferenceEngine(MODEL_TYPE_IMAGE, ModelCatalog([str(model_dir)]),
                                 session_loader=lambda path: sessions[path.rsplit('/', 1)[-1]])
        engine.load(file_name='old.onnx')

        snapshot = engine.handle
        engine.swap(file_name='new.onnx')
        engine.run(np.zeros((1, 3, 224, 224), dtype=np.float32), snapshot)

        assert old_session.calls == 1
        assert new_session.calls == 0

    def test_readers_never_see_mixed_state_during_swaps(self, model_dir):
        for name in ('a.onnx', 'b.onnx'):
            write_model_file(model_dir, name)
        engine = InferenceEngine(MODEL_TYPE_IMAGE, ModelCatalog([str(model_dir)]),
                                 session_loader=lambda path: FakeSession())
        engine.load(file_name='a.onnx')

        stop = threading.Event()
        mismatches = []

        def reader():
            while not stop.is_set():
                handle = engine.handle
                if not handle.path.endswith(handle.version + '.onnx'):
                    mismatches.append(handle)

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for thread in readers:
            thread.start()
        for i in range(50):
            engine.swap(file_name='b.onnx' if i % 2 == 0 else 'a.onnx')
        stop.set()
        for thread in readers:
            thread.join()

        assert mismatches == []
        assert engine.info()['swap_count'] == 51

    def test_unload_returns_to_mock_mode(self, loaded_engine):
        listener = MagicMock()
        loaded_engine.catalog.subscribe(listener)
        loaded_engine.unload()
        assert loaded_engine.is_loaded() is False
        listener.assert_called_once_with(MODEL_TYPE_IMAGE, 'coffee_resnet50_v1.1', None)
