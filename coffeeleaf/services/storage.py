# =============================================================================
# CoffeeLeaf Backend
# services/storage.py - Image Store and Prediction Repository
#
# Filesystem image store and the SQLAlchemy repository behind the
# persistence contract (predictions, request status, image metadata).
# =============================================================================

import os
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.utils import secure_filename

from .health import HealthStatus
from .results import PredictionResult
from ..constants import MAX_ERROR_MESSAGE_LENGTH, STATUS_PROCESSING, STATUS_SUCCESS, STATUS_FAILED
from ..extensions import db
from ..models import LeafImage, PredictionRecord, PredictionLog
from ..utils import generate_unique_filename

logger = logging.getLogger(__name__)


# =============================================================================
# Image Store
# =============================================================================

class FileSystemImageStore:
    """
    Stores uploaded images as files under one directory.

    References are bare generated file names; nothing outside the root
    directory can be addressed.
    """

    def __init__(self, root: str):
        self.root = root
        os.makedirs(self.root, exist_ok=True)

    def _path(self, image_ref: str) -> str:
        safe_ref = secure_filename(image_ref)
        if not safe_ref or safe_ref != image_ref:
            raise KeyError(f"Invalid image reference: {image_ref!r}")
        return os.path.join(self.root, safe_ref)

    def save(self, image_data: bytes, file_name: Optional[str] = None) -> str:
        """
        Persist image bytes.

        Args:
            image_data: Raw image bytes
            file_name: Original upload name (only its extension is kept)

        Returns:
            Opaque image reference
        """
        image_ref = generate_unique_filename(file_name or 'upload.jpg')
        with open(self._path(image_ref), 'wb') as f:
            f.write(image_data)
        logger.debug(f"Stored image {image_ref} ({len(image_data)} bytes)")
        return image_ref

    def read(self, image_ref: str) -> bytes:
        """
        Load image bytes.

        Raises:
            KeyError: If the reference is unknown or invalid
        """
        path = self._path(image_ref)
        if not os.path.isfile(path):
            raise KeyError(f"Image not found: {image_ref}")
        with open(path, 'rb') as f:
            return f.read()

    def health_check(self) -> HealthStatus:
        if os.path.isdir(self.root) and os.access(self.root, os.W_OK):
            return HealthStatus.ok('image_store', self.root)
        return HealthStatus.failed('image_store', f"{self.root} is not writable")


# =============================================================================
# Prediction Repository
# =============================================================================

class PredictionRepository:
    """
    Persistence contract over Flask-SQLAlchemy.

    Must be used inside an application context.
    """

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def register_image(self, image_ref: str, image_hash: str, file_size: int,
                       file_name: Optional[str] = None,
                       dimensions: Optional[Tuple[int, int]] = None) -> LeafImage:
        width, height = dimensions if dimensions else (None, None)
        image = LeafImage(
            image_ref=image_ref,
            image_hash=image_hash,
            file_size=file_size,
            file_name=file_name,
            width=width,
            height=height
        )
        db.session.add(image)
        db.session.commit()
        return image

    def mark_image(self, image_ref: Optional[str], status: str) -> None:
        if not image_ref:
            return
        image = LeafImage.query.filter_by(image_ref=image_ref).first()
        if image is not None:
            image.status = status
            db.session.commit()

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def find_prediction(self, request_id: str) -> Optional[PredictionRecord]:
        return PredictionRecord.query.filter_by(request_id=request_id).first()

    def save_prediction(self, result: PredictionResult, image_ref: Optional[str],
                        request_id: str, symptom_ids: Optional[Iterable[int]] = None) -> int:
        """
        Persist a result once per request id.

        Returns:
            Id of the new row, or of the row already stored for this request
        """
        existing = self.find_prediction(request_id)
        if existing is not None:
            logger.info(f"Prediction for request {request_id} already stored (id={existing.id})")
            return existing.id

        image = LeafImage.query.filter_by(image_ref=image_ref).first() if image_ref else None

        record = PredictionRecord(
            request_id=request_id,
            leaf_image_id=image.id if image else None,
            disease_name=result.disease_name,
            confidence=result.confidence,
            final_confidence=result.final_confidence,
            severity=result.severity.label,
            model_version=result.model_version,
            processing_time_ms=result.processing_time_ms,
            description=result.description,
            treatment_suggestion=result.treatment_suggestion,
            symptom_ids=json.dumps(list(symptom_ids)) if symptom_ids else None
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            # Another worker stored the same request first
            db.session.rollback()
            existing = self.find_prediction(request_id)
            if existing is None:
                raise
            return existing.id

        return record.id

    # ------------------------------------------------------------------
    # Request status
    # ------------------------------------------------------------------

    def start_request(self, request_id: str, image_ref: Optional[str], mode: str) -> PredictionLog:
        """Create the Processing log row for a request, or return the existing one."""
        log = PredictionLog.query.filter_by(request_id=request_id).first()
        if log is not None:
            return log

        log = PredictionLog(
            request_id=request_id,
            image_ref=image_ref,
            status=STATUS_PROCESSING,
            mode=mode
        )
        db.session.add(log)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            log = PredictionLog.query.filter_by(request_id=request_id).first()
        return log

    def update_request_status(self, request_id: str, status: str, error: Optional[str] = None,
                              prediction_id: Optional[int] = None,
                              processing_time_ms: Optional[int] = None) -> None:
        log = PredictionLog.query.filter_by(request_id=request_id).first()
        if log is None:
            log = PredictionLog(request_id=request_id)
            db.session.add(log)

        log.status = status
        if error is not None:
            log.error_message = error[:MAX_ERROR_MESSAGE_LENGTH]
        if prediction_id is not None:
            log.prediction_id = prediction_id
        if processing_time_ms is not None:
            log.processing_time_ms = processing_time_ms
        if status in (STATUS_SUCCESS, STATUS_FAILED):
            log.responded_at = datetime.now(timezone.utc)

        db.session.commit()

    def get_request_status(self, request_id: str) -> Optional[Dict]:
        """
        Latest status of a request with its prediction when one exists.
        """
        log = PredictionLog.query.filter_by(request_id=request_id).first()
        record = self.find_prediction(request_id)
        if log is None and record is None:
            return None

        status = log.to_dict() if log else {
            'request_id': request_id,
            'status': STATUS_SUCCESS,
            'prediction_id': record.id
        }
        status['result'] = record.to_dict() if record else None
        return status

    def rollback(self) -> None:
        db.session.rollback()

    def health_check(self) -> HealthStatus:
        try:
            db.session.execute(db.text('SELECT 1'))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database health check failed: {e}")
            return HealthStatus.failed('database', 'error', critical=True)
        return HealthStatus.ok('database', 'connected', critical=True)
