# =============================================================================
# CoffeeLeaf Backend
# services/inference.py - Model Loading and Inference Engine
#
# Locates model files, wraps ONNX Runtime and TFLite sessions behind one
# interface, and keeps the active model in an immutable ModelHandle that is
# replaced atomically on hot swap.
# =============================================================================

import os
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort

from .health import HealthStatus
from .tensor_codec import CHANNEL_FIRST, CHANNEL_LAST, FLAT
from ..constants import IMAGE_SIZE, IMAGE_CHANNELS, MODEL_CONFIG
from ..errors import ModelNotFound, InferenceFailed

logger = logging.getLogger(__name__)


# =============================================================================
# Model Handle
# =============================================================================

@dataclass(frozen=True)
class ModelHandle:
    """
    Everything needed to run one loaded model.

    Instances are never modified; a swap builds a new handle and replaces
    the engine's reference in one assignment.
    """
    model_type: str
    version: str
    path: str
    session: Any = field(repr=False, compare=False)
    input_name: str = 'input'
    output_name: str = 'output'
    layout: str = CHANNEL_FIRST
    expected_shape: Tuple = ()
    input_size: Tuple[int, int] = (IMAGE_SIZE, IMAGE_SIZE)
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict:
        return {
            'model_type': self.model_type,
            'version': self.version,
            'path': self.path,
            'input_name': self.input_name,
            'output_name': self.output_name,
            'layout': self.layout,
            'expected_shape': [dim if isinstance(dim, int) else str(dim)
                               for dim in self.expected_shape],
            'input_size': list(self.input_size),
            'loaded_at': self.loaded_at.isoformat()
        }


def _static_dim(dim) -> Optional[int]:
    """Return a dimension as int, or None when it is symbolic/dynamic."""
    if isinstance(dim, (int, np.integer)) and dim > 0:
        return int(dim)
    return None


def infer_layout(shape: Sequence) -> Tuple[str, Tuple[int, int]]:
    """
    Work out tensor layout and spatial size from a declared input shape.

    A 4-D shape is channel-first when dimension 1 holds the 3 colour
    channels and channel-last when dimension 3 does. Anything else that is
    not 4-D is treated as a flat feature vector.

    Args:
        shape: Declared input shape, dynamic dims as None or strings

    Returns:
        Tuple of (layout, (width, height))
    """
    dims = [_static_dim(dim) for dim in shape]
    default_size = (IMAGE_SIZE, IMAGE_SIZE)

    if len(dims) != 4:
        return FLAT, default_size

    if dims[1] == IMAGE_CHANNELS:
        height, width = dims[2], dims[3]
        layout = CHANNEL_FIRST
    elif dims[3] == IMAGE_CHANNELS:
        height, width = dims[1], dims[2]
        layout = CHANNEL_LAST
    else:
        logger.warning(f"Cannot find channel axis in input shape {list(shape)}; "
                       f"assuming channel-first")
        return CHANNEL_FIRST, default_size

    return layout, (width or IMAGE_SIZE, height or IMAGE_SIZE)


# =============================================================================
# Session Adapters
# =============================================================================

class TensorInfo:
    """Name and shape of one model input or output."""

    def __init__(self, name: str, shape: Sequence):
        self.name = name
        self.shape = list(shape)


class TFLiteSession:
    """
    TensorFlow Lite interpreter exposed through the ONNX Runtime session API.

    The interpreter is not thread-safe, so every invocation is serialized.
    """

    def __init__(self, model_path: str, num_threads: int = 4):
        # Prefer the lite runtime when installed
        try:
            import tflite_runtime.interpreter as tflite
            logger.info("Using tflite-runtime")
        except ImportError:
            import tensorflow.lite as tflite
            logger.info("Using tensorflow.lite")

        self.interpreter = tflite.Interpreter(model_path=str(model_path), num_threads=num_threads)
        self.interpreter.allocate_tensors()
        self.input_details = self.interpreter.get_input_details()
        self.output_details = self.interpreter.get_output_details()
        self._lock = threading.Lock()

    def get_inputs(self) -> List[TensorInfo]:
        return [TensorInfo(d['name'], d['shape'].tolist()) for d in self.input_details]

    def get_outputs(self) -> List[TensorInfo]:
        return [TensorInfo(d['name'], d['shape'].tolist()) for d in self.output_details]

    def run(self, output_names, input_feed: Dict[str, np.ndarray]):
        tensor = next(iter(input_feed.values()))
        with self._lock:
            self.interpreter.set_tensor(self.input_details[0]['index'], tensor.astype(np.float32))
            self.interpreter.invoke()
            output = self.interpreter.get_tensor(self.output_details[0]['index'])
        return [np.array(output)]


def load_session(model_path: str):
    """
    Open a model file with the runtime matching its extension.

    Args:
        model_path: Path to a .onnx or .tflite file

    Returns:
        Session object with get_inputs/get_outputs/run
    """
    if model_path.lower().endswith('.tflite'):
        return TFLiteSession(model_path)

    return ort.InferenceSession(model_path, providers=['CPUExecutionProvider'])


# =============================================================================
# Model Catalog
# =============================================================================

class ModelCatalog:
    """
    Resolves model files and broadcasts swap notifications.

    Listeners registered with ``subscribe`` are called as
    ``listener(model_type, previous_version, new_version)``.
    """

    def __init__(self, search_paths: Sequence[str], file_names: Optional[Dict[str, str]] = None):
        self.search_paths = [path for path in search_paths if path]
        self.file_names = dict(MODEL_CONFIG)
        if file_names:
            self.file_names.update(file_names)
        self._listeners: List[Callable] = []

    def candidate_paths(self, model_type: str, file_name: Optional[str] = None) -> List[str]:
        """Ordered candidate locations for a model file."""
        file_name = file_name or self.file_names.get(model_type)
        if not file_name:
            return []
        if os.path.isabs(file_name):
            return [file_name]
        return [os.path.join(directory, file_name) for directory in self.search_paths]

    def find_model_file(self, model_type: str, file_name: Optional[str] = None) -> str:
        """
        Return the first existing candidate path.

        Raises:
            ModelNotFound: If no candidate exists
        """
        candidates = self.candidate_paths(model_type, file_name)
        for path in candidates:
            if os.path.isfile(path):
                return path
        raise ModelNotFound(model_type, candidates)

    def subscribe(self, listener: Callable) -> None:
        self._listeners.append(listener)

    def on_model_swapped(self, model_type: str, previous_version: Optional[str],
                         version: str) -> None:
        """Notify listeners; a failing listener never undoes the swap."""
        for listener in list(self._listeners):
            try:
                listener(model_type, previous_version, version)
            except Exception as e:
                logger.error(f"Model swap listener failed: {e}")


# =============================================================================
# Inference Engine
# =============================================================================

class InferenceEngine:
    """
    Owns the active ModelHandle for one model type.

    Readers take a snapshot of ``handle`` once and use it for the whole
    request, so a swap never exposes a mix of old and new metadata. Loading
    the replacement happens outside the swap lock; only the reference
    assignment is guarded.
    """

    def __init__(
        self,
        model_type: str,
        catalog: ModelCatalog,
        session_loader: Callable[[str], Any] = load_session
    ):
        self.model_type = model_type
        self.catalog = catalog
        self._session_loader = session_loader
        self._handle: Optional[ModelHandle] = None
        self._swap_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._inference_count = 0
        self._failure_count = 0
        self._swap_count = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def handle(self) -> Optional[ModelHandle]:
        """Current handle snapshot (None while in mock mode)."""
        return self._handle

    def is_loaded(self) -> bool:
        return self._handle is not None

    @property
    def version(self) -> Optional[str]:
        handle = self._handle
        return handle.version if handle else None

    @property
    def inference_count(self) -> int:
        return self._inference_count

    # ------------------------------------------------------------------
    # Loading and swapping
    # ------------------------------------------------------------------

    def build_handle(self, path: str, version: Optional[str] = None) -> ModelHandle:
        """
        Open a model file and read its input/output metadata.

        Args:
            path: Model file path
            version: Version tag (defaults to the file name without extension)

        Returns:
            New, unpublished ModelHandle
        """
        session = self._session_loader(path)

        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if not inputs or not outputs:
            raise InferenceFailed(f"Model {path} declares no inputs or outputs")
        if len(inputs) > 1 or len(outputs) > 1:
            logger.warning(f"Model {path} declares {len(inputs)} inputs and "
                           f"{len(outputs)} outputs; using the first of each")

        shape = tuple(inputs[0].shape)
        layout, input_size = infer_layout(shape)

        return ModelHandle(
            model_type=self.model_type,
            version=version or os.path.splitext(os.path.basename(path))[0],
            path=path,
            session=session,
            input_name=inputs[0].name,
            output_name=outputs[0].name,
            layout=layout,
            expected_shape=shape,
            input_size=input_size
        )

    def load(self, file_name: Optional[str] = None, version: Optional[str] = None) -> ModelHandle:
        """
        Locate and load the model for this engine's type.

        Raises:
            ModelNotFound: If no candidate file exists
        """
        path = self.catalog.find_model_file(self.model_type, file_name)
        return self.swap(path=path, version=version)

    def try_load(self) -> bool:
        """
        Load at startup; a missing or broken model leaves the engine in mock mode.

        Returns:
            True if a model is active afterwards
        """
        try:
            handle = self.load()
            logger.info(f"{self.model_type} model loaded: {handle.version} "
                        f"({handle.layout}, input {handle.input_name}{list(handle.expected_shape)})")
            return True
        except ModelNotFound as e:
            logger.warning(f"{e} - running without a {self.model_type} model")
        except Exception as e:
            logger.error(f"Could not load {self.model_type} model: {e}")
        return False

    def swap(self, path: Optional[str] = None, file_name: Optional[str] = None,
             version: Optional[str] = None) -> ModelHandle:
        """
        Replace the active model without interrupting in-flight requests.

        Args:
            path: Explicit model file path
            file_name: File name resolved through the catalog when path is None
            version: Version tag for the new handle

        Returns:
            The newly active handle
        """
        if path is None:
            path = self.catalog.find_model_file(self.model_type, file_name)
        elif not os.path.isfile(path):
            raise ModelNotFound(self.model_type, [path])

        new_handle = self.build_handle(path, version)

        with self._swap_lock:
            previous = self._handle
            self._handle = new_handle
            self._swap_count += 1

        previous_version = previous.version if previous else None
        logger.info(f"{self.model_type} model swapped: {previous_version} -> {new_handle.version}")
        self.catalog.on_model_swapped(self.model_type, previous_version, new_handle.version)

        return new_handle

    def unload(self) -> None:
        """Drop the active handle and fall back to mock mode."""
        with self._swap_lock:
            previous = self._handle
            self._handle = None
        if previous is not None:
            logger.info(f"{self.model_type} model unloaded: {previous.version}")
            self.catalog.on_model_swapped(self.model_type, previous.version, None)

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def run(self, tensor: np.ndarray, handle: Optional[ModelHandle] = None) -> np.ndarray:
        """
        Run one forward pass and return the raw score vector.

        Args:
            tensor: Encoded input tensor (batch of 1)
            handle: Handle snapshot to use; defaults to the active one

        Returns:
            1-D float array of raw class scores (no softmax applied)

        Raises:
            ModelNotFound: If no model is loaded
            InferenceFailed: If the runtime errors or returns nothing
        """
        handle = handle or self._handle
        if handle is None:
            raise ModelNotFound(self.model_type)

        try:
            outputs = handle.session.run([handle.output_name], {handle.input_name: tensor})
        except Exception as e:
            self._record(failed=True)
            raise InferenceFailed(f"{handle.version} inference error: {e}") from e

        if not outputs or outputs[0] is None:
            self._record(failed=True)
            raise InferenceFailed(f"{handle.version} returned no output")

        scores = np.asarray(outputs[0], dtype=np.float32)
        if scores.size == 0:
            self._record(failed=True)
            raise InferenceFailed(f"{handle.version} returned an empty output")

        self._record(failed=False)
        # First row of the batch
        return scores.reshape(scores.shape[0], -1)[0] if scores.ndim > 1 else scores

    def _record(self, failed: bool) -> None:
        with self._stats_lock:
            if failed:
                self._failure_count += 1
            else:
                self._inference_count += 1

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def info(self) -> Dict:
        handle = self._handle
        return {
            'model_type': self.model_type,
            'loaded': handle is not None,
            'handle': handle.to_dict() if handle else None,
            'inference_count': self._inference_count,
            'failure_count': self._failure_count,
            'swap_count': self._swap_count
        }

    def health_check(self) -> HealthStatus:
        handle = self._handle
        component = f"model:{self.model_type}"
        if handle is None:
            return HealthStatus.failed(component, 'no model loaded (mock mode)')
        return HealthStatus.ok(component, f"{handle.version} ({handle.layout})")
