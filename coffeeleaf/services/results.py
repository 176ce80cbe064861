# =============================================================================
# CoffeeLeaf Backend
# services/results.py - Prediction Result Types
#
# Value objects returned by the pipeline and their JSON form, shared by the
# cache, the persistence layer and the API.
# =============================================================================

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import IntEnum
from typing import Dict, List, Optional

from ..constants import (
    NOT_COFFEE_LEAF,
    SEVERITY_THRESHOLDS,
    SEVERITY_NOT_APPLICABLE
)


class SeverityLevel(IntEnum):
    """Ordinal severity derived from prediction confidence."""
    NOT_APPLICABLE = 0
    VERY_LOW = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    VERY_HIGH = 5

    @property
    def label(self) -> str:
        if self is SeverityLevel.NOT_APPLICABLE:
            return SEVERITY_NOT_APPLICABLE
        return self.name.replace('_', ' ').title()

    @classmethod
    def from_confidence(cls, confidence: float) -> 'SeverityLevel':
        for lower_bound, label in SEVERITY_THRESHOLDS:
            if confidence >= lower_bound:
                return cls[label.upper().replace(' ', '_')]
        return cls.VERY_LOW

    @classmethod
    def from_label(cls, label: str) -> 'SeverityLevel':
        if label == SEVERITY_NOT_APPLICABLE:
            return cls.NOT_APPLICABLE
        return cls[label.upper().replace(' ', '_')]


@dataclass(frozen=True)
class ClassProbability:
    """One class and its probability."""
    disease_name: str
    confidence: float

    def to_dict(self) -> Dict:
        return {'disease_name': self.disease_name, 'confidence': round(self.confidence, 4)}


@dataclass(frozen=True)
class PredictionResult:
    """
    Final answer for one image.

    ``final_confidence`` is only set when the symptom classifier was fused
    in. ``prediction_id`` is backfilled once the caller persists the result.
    """
    disease_name: str
    confidence: float
    severity: SeverityLevel
    model_version: str
    processing_time_ms: int
    description: str = ''
    treatment_suggestion: str = ''
    final_confidence: Optional[float] = None
    image_hash: Optional[str] = None
    probabilities: List[ClassProbability] = field(default_factory=list)
    quality_warnings: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    prediction_id: Optional[int] = None

    @property
    def is_coffee_leaf(self) -> bool:
        return self.disease_name != NOT_COFFEE_LEAF

    @property
    def effective_confidence(self) -> float:
        """Fused confidence when available, image confidence otherwise."""
        return self.final_confidence if self.final_confidence is not None else self.confidence

    def with_id(self, prediction_id: int) -> 'PredictionResult':
        return replace(self, prediction_id=prediction_id)

    def to_dict(self) -> Dict:
        """JSON-ready representation used by the API and the cache."""
        return {
            'prediction_id': self.prediction_id,
            'disease_name': self.disease_name,
            'confidence': round(self.confidence, 4),
            'final_confidence': (round(self.final_confidence, 4)
                                 if self.final_confidence is not None else None),
            'severity': self.severity.label,
            'severity_level': int(self.severity),
            'description': self.description,
            'treatment_suggestion': self.treatment_suggestion,
            'model_version': self.model_version,
            'processing_time_ms': self.processing_time_ms,
            'image_hash': self.image_hash,
            'is_coffee_leaf': self.is_coffee_leaf,
            'probabilities': [p.to_dict() for p in self.probabilities],
            'quality_warnings': list(self.quality_warnings),
            'created_at': self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PredictionResult':
        created_at = data.get('created_at')
        return cls(
            disease_name=data['disease_name'],
            confidence=float(data['confidence']),
            severity=SeverityLevel.from_label(data['severity']),
            model_version=data['model_version'],
            processing_time_ms=int(data.get('processing_time_ms') or 0),
            description=data.get('description') or '',
            treatment_suggestion=data.get('treatment_suggestion') or '',
            final_confidence=data.get('final_confidence'),
            image_hash=data.get('image_hash'),
            probabilities=[
                ClassProbability(p['disease_name'], float(p['confidence']))
                for p in data.get('probabilities') or []
            ],
            quality_warnings=list(data.get('quality_warnings') or []),
            created_at=(datetime.fromisoformat(created_at) if created_at
                        else datetime.now(timezone.utc)),
            prediction_id=data.get('prediction_id')
        )


@dataclass
class BatchPredictionResponse:
    """Outcome of a batch prediction call."""
    results: List[PredictionResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total_processing_time_ms: int = 0

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def failure_count(self) -> int:
        return len(self.errors)

    @property
    def total_processed(self) -> int:
        return self.success_count + self.failure_count

    def to_dict(self) -> Dict:
        return {
            'results': [result.to_dict() for result in self.results],
            'total_processed': self.total_processed,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'total_processing_time_ms': self.total_processing_time_ms,
            'errors': list(self.errors)
        }
