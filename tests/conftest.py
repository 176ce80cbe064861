"""
Shared pytest fixtures for CoffeeLeaf tests.

Synthetic leaf photos are generated with a seeded RNG so feature values are
stable across runs. Model runtimes are replaced by FakeSession, which speaks
the same get_inputs/get_outputs/run protocol as an ONNX Runtime session.
"""
import threading

import numpy as np
import pytest
from PIL import Image

from coffeeleaf.app import create_app
from coffeeleaf.constants import MODEL_TYPE_IMAGE
from coffeeleaf.extensions import db
from coffeeleaf.services.imaging import encode_png
from coffeeleaf.services.inference import InferenceEngine, ModelCatalog, TensorInfo

LEAF_RGB = (140, 180, 40)
RUST_LOGITS = [0.0, 0.0, 0.0, 0.0, 5.0]


# =============================================================================
# Synthetic images
# =============================================================================

def make_leaf_image(size=224, seed=7, rgb=LEAF_RGB, noise=6):
    """Saturated green field with small per-pixel noise (texture and sharpness)."""
    rng = np.random.RandomState(seed)
    base = np.array(rgb, dtype=np.int16)
    pixels = base + rng.randint(-noise, noise + 1, size=(size, size, 3))
    return Image.fromarray(np.clip(pixels, 0, 255).astype(np.uint8), 'RGB')


def make_flat_image(rgb=(128, 128, 128), size=224):
    return Image.new('RGB', (size, size), rgb)


@pytest.fixture
def leaf_image():
    return make_leaf_image()


@pytest.fixture
def leaf_png():
    return encode_png(make_leaf_image())


@pytest.fixture
def gray_png():
    return encode_png(make_flat_image())


# =============================================================================
# Fake model runtime
# =============================================================================

class FakeSession:
    """
    Stand-in for an onnxruntime.InferenceSession.

    Args:
        input_shape: Declared input shape
        scores: Output row returned for every call
        fail_first: Number of initial calls that raise
        fail_always: Raise on every call
    """

    def __init__(self, input_shape=(1, 3, 224, 224), scores=None, fail_first=0,
                 fail_always=False):
        self.input_shape = list(input_shape)
        self.scores = list(scores if scores is not None else RUST_LOGITS)
        self.fail_first = fail_first
        self.fail_always = fail_always
        self.calls = 0
        self.input_shapes = []
        self._lock = threading.Lock()

    def get_inputs(self):
        return [TensorInfo('input', self.input_shape)]

    def get_outputs(self):
        return [TensorInfo('output', [1, len(self.scores)])]

    def run(self, output_names, input_feed):
        tensor = input_feed['input']
        with self._lock:
            self.calls += 1
            call_number = self.calls
            self.input_shapes.append(tuple(tensor.shape))
        if self.fail_always or call_number <= self.fail_first:
            raise RuntimeError(f'fake runtime failure on call {call_number}')
        return [np.array([self.scores], dtype=np.float32)]


def write_model_file(directory, file_name):
    path = directory / file_name
    path.write_bytes(b'fake-model')
    return str(path)


@pytest.fixture
def model_dir(tmp_path):
    directory = tmp_path / 'models'
    directory.mkdir()
    return directory


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def loaded_engine(model_dir, fake_session):
    """Image engine with a FakeSession loaded as coffee_resnet50_v1.1."""
    write_model_file(model_dir, 'coffee_resnet50_v1.1.onnx')
    engine = InferenceEngine(MODEL_TYPE_IMAGE, ModelCatalog([str(model_dir)]),
                             session_loader=lambda path: fake_session)
    engine.load()
    return engine


@pytest.fixture
def empty_engine(model_dir):
    """Image engine with nothing loaded (mock mode)."""
    return InferenceEngine(MODEL_TYPE_IMAGE, ModelCatalog([str(model_dir)]),
                           session_loader=lambda path: FakeSession())


# =============================================================================
# Flask application
# =============================================================================

@pytest.fixture
def app(tmp_path):
    app = create_app('testing', config_overrides={
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'MODEL_SEARCH_PATHS': str(tmp_path / 'models'),
    })
    yield app
    with app.app_context():
        app.config['PREDICTION_SERVICES'].shutdown()
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.config['PREDICTION_SERVICES']


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield app
