# =============================================================================
# CoffeeLeaf Backend
# services/fusion.py - Image/Symptom Confidence Fusion
# =============================================================================

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ..constants import IMAGE_FUSION_WEIGHT, SYMPTOM_FUSION_WEIGHT

logger = logging.getLogger(__name__)


def fuse_confidence(image_confidence: float, symptom_confidence: float,
                    image_weight: float = IMAGE_FUSION_WEIGHT,
                    symptom_weight: float = SYMPTOM_FUSION_WEIGHT) -> float:
    """Weighted combination of the two classifiers' confidences."""
    return image_weight * image_confidence + symptom_weight * symptom_confidence


@dataclass(frozen=True)
class FusionOutcome:
    confidence: float
    fused: bool
    symptom_confidence: Optional[float] = None
    symptom_disease: Optional[str] = None
    symptom_reliable: bool = False


class FusionPolicy:
    """
    Blends the symptom classifier into the image confidence.

    The symptom classifier is only consulted when symptom ids were given;
    any error it raises is logged and the image confidence is kept.
    """

    def __init__(self, symptom_classifier, image_weight: float = IMAGE_FUSION_WEIGHT,
                 symptom_weight: float = SYMPTOM_FUSION_WEIGHT):
        self.symptom_classifier = symptom_classifier
        self.image_weight = image_weight
        self.symptom_weight = symptom_weight

    def apply(self, image_confidence: float,
              symptom_ids: Optional[Sequence[int]]) -> FusionOutcome:
        if not symptom_ids or not self.symptom_classifier.is_available():
            return FusionOutcome(confidence=image_confidence, fused=False)

        try:
            symptom_result = self.symptom_classifier.predict(symptom_ids)
        except Exception as e:
            logger.warning(f"Symptom classifier failed, using image confidence only: {e}")
            return FusionOutcome(confidence=image_confidence, fused=False)

        final = fuse_confidence(image_confidence, symptom_result.confidence,
                                self.image_weight, self.symptom_weight)
        logger.debug(f"Fused confidence {image_confidence:.3f} + "
                     f"{symptom_result.confidence:.3f} -> {final:.3f}")

        return FusionOutcome(
            confidence=min(max(final, 0.0), 1.0),
            fused=True,
            symptom_confidence=symptom_result.confidence,
            symptom_disease=symptom_result.disease_name,
            symptom_reliable=symptom_result.is_reliable
        )
