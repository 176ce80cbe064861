# =============================================================================
# CoffeeLeaf Backend
# errors.py - Prediction Pipeline Errors
#
# Exception taxonomy shared by the services. Only DecodeFailed is meant to
# reach API callers; the others trigger a fallback inside the pipeline.
# =============================================================================


class PredictionError(Exception):
    """Base class for all prediction pipeline errors."""


class ModelNotFound(PredictionError):
    """No model file exists at any of the candidate paths."""

    def __init__(self, model_type, searched=None):
        self.model_type = model_type
        self.searched = list(searched or [])
        super().__init__(
            f"No {model_type} model file found (searched {len(self.searched)} paths)"
        )


class InferenceFailed(PredictionError):
    """The engine produced no usable output for a tensor."""


class EmptyEnsemble(InferenceFailed):
    """Every augmentation branch failed, nothing left to combine."""


class DecodeFailed(PredictionError):
    """The supplied bytes are not a decodable image."""


class CacheUnavailable(PredictionError):
    """The shared cache tier could not be reached."""


class QueueUnavailable(PredictionError):
    """The queue broker rejected or timed out a publish."""
