# =============================================================================
# CoffeeLeaf Backend
# services/symptoms.py - Symptom-Based Classifier
#
# Secondary classifier over caller-reported symptoms. Uses the MLP model when
# one is loaded and a weighted rule table otherwise.
# =============================================================================

import time
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import numpy as np

from .health import HealthStatus
from .tensor_codec import decode_scores
from ..constants import (
    DISEASE_CLASSES,
    SYMPTOMS,
    SYMPTOM_FEATURE_SIZE,
    SYMPTOM_RULE_FLOOR,
    MIN_RELIABLE_SYMPTOMS,
    MLP_VERSION,
    MLP_FALLBACK_VERSION
)
from ..errors import PredictionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SymptomPrediction:
    """Symptom classifier output."""
    disease_name: str
    confidence: float
    probabilities: Dict[str, float] = field(default_factory=dict)
    model_version: str = MLP_FALLBACK_VERSION
    total_symptoms: int = 0
    is_reliable: bool = False
    processing_time_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            'disease_name': self.disease_name,
            'confidence': round(self.confidence, 4),
            'probabilities': {k: round(v, 4) for k, v in self.probabilities.items()},
            'model_version': self.model_version,
            'total_symptoms': self.total_symptoms,
            'is_reliable': self.is_reliable,
            'processing_time_ms': self.processing_time_ms
        }


def known_symptom_ids(symptom_ids: Optional[Iterable]) -> List[int]:
    """
    Distinct symptom ids that fit an indicator slot, in first-seen order.

    Non-integer values and ids outside 1..20 are dropped.
    """
    seen = []
    for raw in symptom_ids or []:
        try:
            symptom_id = int(raw)
        except (TypeError, ValueError):
            continue
        if 1 <= symptom_id <= SYMPTOM_FEATURE_SIZE and symptom_id not in seen:
            seen.append(symptom_id)
    return seen


def encode_symptoms(symptom_ids: Optional[Iterable]) -> np.ndarray:
    """
    Indicator vector of shape (1, 20): slot ``id - 1`` is 1.0 when present.
    """
    vector = np.zeros((1, SYMPTOM_FEATURE_SIZE), dtype=np.float32)
    for symptom_id in known_symptom_ids(symptom_ids):
        vector[0, symptom_id - 1] = 1.0
    return vector


def rule_based_distribution(symptom_ids: Iterable[int]) -> Dict[str, float]:
    """
    Distribution over diseases from the symptom catalogue.

    Every class starts at the floor; each catalogued symptom adds its weight
    to its associated disease. With nothing catalogued the result is uniform.
    """
    scores = {disease: SYMPTOM_RULE_FLOOR for disease in DISEASE_CLASSES}
    for symptom_id in symptom_ids:
        entry = SYMPTOMS.get(symptom_id)
        if entry and entry['disease'] in scores:
            scores[entry['disease']] += entry['weight']

    total = sum(scores.values())
    return {disease: score / total for disease, score in scores.items()}


class SymptomClassifier:
    """
    Disease prediction from reported symptoms.

    Args:
        engine: InferenceEngine for the MLP model (may hold no model)
    """

    def __init__(self, engine=None):
        self.engine = engine

    def is_available(self) -> bool:
        return True

    def has_model(self) -> bool:
        return self.engine is not None and self.engine.is_loaded()

    def predict(self, symptom_ids: Optional[Iterable]) -> SymptomPrediction:
        """
        Classify a set of symptom ids.

        Args:
            symptom_ids: Caller-reported symptom ids

        Returns:
            SymptomPrediction for the most likely disease
        """
        start = time.perf_counter()
        known = known_symptom_ids(symptom_ids)

        handle = self.engine.handle if self.engine is not None else None
        if handle is not None and known:
            try:
                scores = self.engine.run(encode_symptoms(known), handle)
                ranked = decode_scores(scores, normalized=True)
                probabilities = dict(ranked)
                version = MLP_VERSION
            except PredictionError as e:
                logger.warning(f"Symptom model failed, using rule table: {e}")
                probabilities = rule_based_distribution(known)
                version = MLP_FALLBACK_VERSION
        else:
            probabilities = rule_based_distribution(known)
            version = MLP_FALLBACK_VERSION

        disease_name = max(probabilities, key=probabilities.get)

        return SymptomPrediction(
            disease_name=disease_name,
            confidence=float(probabilities[disease_name]),
            probabilities=probabilities,
            model_version=version,
            total_symptoms=len(known),
            is_reliable=len(known) >= MIN_RELIABLE_SYMPTOMS and version == MLP_VERSION,
            processing_time_ms=int((time.perf_counter() - start) * 1000)
        )

    def health_check(self) -> HealthStatus:
        if self.has_model():
            return HealthStatus.ok('symptom_classifier', f"model {self.engine.version}")
        return HealthStatus.ok('symptom_classifier', 'rule-based fallback')


class NullSymptomClassifier:
    """Stand-in used when symptom fusion is disabled."""

    def is_available(self) -> bool:
        return False

    def has_model(self) -> bool:
        return False

    def predict(self, symptom_ids) -> SymptomPrediction:
        raise PredictionError('Symptom classifier is disabled')

    def health_check(self) -> HealthStatus:
        return HealthStatus.ok('symptom_classifier', 'disabled')
