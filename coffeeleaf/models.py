# =============================================================================
# CoffeeLeaf Backend
# models.py - Database Models
#
# SQLAlchemy ORM models for uploaded leaf images, persisted predictions and
# the per-request processing log used for status polling.
# =============================================================================

import json
from datetime import datetime, timezone

from .extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class LeafImage(db.Model):
    """
    Uploaded leaf image metadata.

    The bytes themselves live in the image store; ``image_ref`` is the
    opaque reference returned by it.
    """
    __tablename__ = 'leaf_images'

    # Primary Key
    id = db.Column(db.Integer, primary_key=True)

    # Storage
    image_ref = db.Column(db.String(255), unique=True, nullable=False, index=True)
    file_name = db.Column(db.String(255), nullable=True)
    image_hash = db.Column(db.String(64), nullable=False, index=True)
    file_size = db.Column(db.Integer, nullable=False, default=0)
    width = db.Column(db.Integer, nullable=True)
    height = db.Column(db.Integer, nullable=True)

    # Uploaded | Processing | Processed | Failed
    status = db.Column(db.String(20), nullable=False, default='Uploaded')

    # Timestamps
    uploaded_at = db.Column(db.DateTime, default=_utcnow)

    # Relationships
    predictions = db.relationship(
        'PredictionRecord',
        backref='leaf_image',
        lazy='dynamic',
        cascade='all, delete-orphan'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'image_ref': self.image_ref,
            'file_name': self.file_name,
            'image_hash': self.image_hash,
            'file_size': self.file_size,
            'width': self.width,
            'height': self.height,
            'status': self.status,
            'uploaded_at': self.uploaded_at.isoformat() if self.uploaded_at else None
        }

    def __repr__(self):
        return f'<LeafImage {self.image_ref}>'


class PredictionRecord(db.Model):
    """
    Persisted prediction result.

    ``request_id`` is the idempotency key: a redelivered queue message for
    the same request finds the existing row instead of inserting another.
    """
    __tablename__ = 'predictions'

    # Primary Key
    id = db.Column(db.Integer, primary_key=True)

    # Idempotency key
    request_id = db.Column(db.String(64), unique=True, nullable=False, index=True)

    # Foreign Key to the uploaded image (optional for inline predictions)
    leaf_image_id = db.Column(
        db.Integer,
        db.ForeignKey('leaf_images.id'),
        nullable=True,
        index=True
    )

    # Prediction Results
    disease_name = db.Column(db.String(50), nullable=False, index=True)
    confidence = db.Column(db.Float, nullable=False)
    final_confidence = db.Column(db.Float, nullable=True)
    severity = db.Column(db.String(20), nullable=False)
    model_version = db.Column(db.String(100), nullable=False)
    processing_time_ms = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.Text, nullable=True)
    treatment_suggestion = db.Column(db.Text, nullable=True)

    # Symptom ids stored as JSON string
    symptom_ids = db.Column(db.Text, nullable=True)

    # Timestamps
    created_at = db.Column(db.DateTime, default=_utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'request_id': self.request_id,
            'leaf_image_id': self.leaf_image_id,
            'disease_name': self.disease_name,
            'confidence': self.confidence,
            'final_confidence': self.final_confidence,
            'severity': self.severity,
            'model_version': self.model_version,
            'processing_time_ms': self.processing_time_ms,
            'description': self.description,
            'treatment_suggestion': self.treatment_suggestion,
            'symptom_ids': json.loads(self.symptom_ids) if self.symptom_ids else [],
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

    def __repr__(self):
        return f'<PredictionRecord {self.request_id}: {self.disease_name}>'


class PredictionLog(db.Model):
    """
    Processing log for one prediction request (sync or async).

    Status moves Processing -> Success | Failed; the latest row answers
    status polls.
    """
    __tablename__ = 'prediction_logs'

    # Primary Key
    id = db.Column(db.Integer, primary_key=True)

    request_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    image_ref = db.Column(db.String(255), nullable=True, index=True)
    prediction_id = db.Column(db.Integer, db.ForeignKey('predictions.id'), nullable=True)

    # Processing | Success | Failed
    status = db.Column(db.String(20), nullable=False, default='Processing')
    mode = db.Column(db.String(10), nullable=False, default='sync')
    error_message = db.Column(db.String(500), nullable=True)
    processing_time_ms = db.Column(db.Integer, nullable=True)

    # Timestamps
    requested_at = db.Column(db.DateTime, default=_utcnow)
    responded_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'request_id': self.request_id,
            'image_ref': self.image_ref,
            'prediction_id': self.prediction_id,
            'status': self.status,
            'mode': self.mode,
            'error_message': self.error_message,
            'processing_time_ms': self.processing_time_ms,
            'requested_at': self.requested_at.isoformat() if self.requested_at else None,
            'responded_at': self.responded_at.isoformat() if self.responded_at else None
        }

    def __repr__(self):
        return f'<PredictionLog {self.request_id} {self.status}>'
