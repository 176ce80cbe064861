# =============================================================================
# CoffeeLeaf Backend
# services/dispatcher.py - Synchronous and Queue-Backed Prediction Modes
#
# AsyncDispatcher accepts uploads and either queues them or, when the queue
# is unavailable, processes them inline. PredictionWorker consumes the queue
# and replays the synchronous path for every delivered request.
# =============================================================================

import time
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence, Tuple

from .broker import Delivery, consume
from .imaging import compute_image_hash, decode_image
from .results import PredictionResult
from .symptoms import known_symptom_ids
from ..constants import (
    MESSAGES,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_SUCCESS,
    STATUS_FAILED
)
from ..errors import QueueUnavailable
from ..utils import generate_request_id

logger = logging.getLogger(__name__)


# =============================================================================
# Messages
# =============================================================================

@dataclass(frozen=True)
class ProcessingRequest:
    """Queue payload for one asynchronous prediction."""
    request_id: str
    image_ref: str
    symptom_ids: Tuple[int, ...] = ()
    requested_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_payload(self) -> Dict:
        return {
            'request_id': self.request_id,
            'image_ref': self.image_ref,
            'symptom_ids': list(self.symptom_ids),
            'requested_at': self.requested_at
        }

    @classmethod
    def from_payload(cls, payload: Dict) -> 'ProcessingRequest':
        """
        Raises:
            ValueError: If required fields are missing or empty
        """
        if not isinstance(payload, dict):
            raise ValueError('Payload is not an object')
        request_id = payload.get('request_id')
        image_ref = payload.get('image_ref')
        if not request_id or not image_ref:
            raise ValueError('Payload needs request_id and image_ref')
        return cls(
            request_id=str(request_id),
            image_ref=str(image_ref),
            symptom_ids=tuple(known_symptom_ids(payload.get('symptom_ids'))),
            requested_at=payload.get('requested_at') or datetime.now(timezone.utc).isoformat()
        )


@dataclass
class SubmissionResponse:
    """
    Answer to an upload. ``status`` tells the caller whether to poll
    (Processing), read ``result`` right away (Completed) or resubmit
    a request that already failed (Failed).
    """
    request_id: str
    image_ref: Optional[str]
    status: str
    message: str
    result: Optional[PredictionResult] = None
    prediction_id: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            'request_id': self.request_id,
            'leaf_image_ref': self.image_ref,
            'status': self.status,
            'message': self.message,
            'prediction_id': self.prediction_id,
            'result': self.result.to_dict() if self.result else None
        }


# =============================================================================
# Dispatcher
# =============================================================================

class AsyncDispatcher:
    """
    Runs predictions inline or through the queue, recording status either way.

    Args:
        orchestrator: PredictionOrchestrator
        broker: Queue broker (Kafka, in-memory or null)
        image_store: Image store contract (save/read)
        repository: Persistence contract
        topic: Queue topic for processing requests
    """

    def __init__(self, orchestrator, broker, image_store, repository,
                 topic: str = 'image-processing'):
        self.orchestrator = orchestrator
        self.broker = broker
        self.image_store = image_store
        self.repository = repository
        self.topic = topic

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _store_upload(self, image_data: bytes, file_name: Optional[str],
                      dimensions: Optional[Tuple[int, int]] = None) -> str:
        image_ref = self.image_store.save(image_data, file_name)
        self.repository.register_image(
            image_ref=image_ref,
            image_hash=compute_image_hash(image_data),
            file_size=len(image_data),
            file_name=file_name,
            dimensions=dimensions
        )
        return image_ref

    def run_sync(self, image_data: bytes, file_name: Optional[str] = None,
                 symptom_ids: Optional[Sequence[int]] = None,
                 request_id: Optional[str] = None) -> SubmissionResponse:
        """
        Store, predict and persist an upload in the calling thread.

        Raises:
            DecodeFailed: If the upload is not an image
        """
        image = decode_image(image_data)
        request_id = request_id or generate_request_id()

        existing = self.repository.find_prediction(request_id)
        if existing is not None:
            return SubmissionResponse(
                request_id=request_id,
                image_ref=existing.leaf_image.image_ref if existing.leaf_image else None,
                status=STATUS_COMPLETED,
                message=MESSAGES['PREDICTION_SUCCESS'],
                prediction_id=existing.id
            )

        image_ref = self._store_upload(image_data, file_name, image.size)
        request = ProcessingRequest(request_id, image_ref, tuple(known_symptom_ids(symptom_ids)))
        self.repository.start_request(request_id, image_ref, mode='sync')

        return self._complete_inline(request, image_data, MESSAGES['PREDICTION_SUCCESS'])

    def submit(self, image_data: bytes, file_name: Optional[str] = None,
               symptom_ids: Optional[Sequence[int]] = None,
               request_id: Optional[str] = None) -> SubmissionResponse:
        """
        Queue an upload for a worker, or process it now if queueing fails.

        Resubmitting a known request id returns its current state instead
        of queueing it again.

        Raises:
            DecodeFailed: If the upload is not an image
        """
        image = decode_image(image_data)
        request_id = request_id or generate_request_id()

        known = self.repository.get_request_status(request_id)
        if known is not None:
            logger.info(f"Request {request_id} already submitted ({known['status']})")
            return self._known_submission(request_id, known)

        image_ref = self._store_upload(image_data, file_name, image.size)
        request = ProcessingRequest(request_id, image_ref, tuple(known_symptom_ids(symptom_ids)))
        self.repository.start_request(request_id, image_ref, mode='async')

        try:
            self.broker.publish(self.topic, request.to_payload())
        except (QueueUnavailable, OSError) as e:
            logger.warning(f"Queue unavailable, processing {request_id} synchronously: {e}")
            return self._complete_inline(request, image_data, MESSAGES['PREDICTION_COMPLETED'])

        logger.info(f"Queued request {request_id} for image {image_ref}")
        return SubmissionResponse(
            request_id=request_id,
            image_ref=image_ref,
            status=STATUS_PROCESSING,
            message=MESSAGES['PREDICTION_QUEUED']
        )

    @staticmethod
    def _known_submission(request_id: str, known: Dict) -> SubmissionResponse:
        # Failed is terminal: the caller must resubmit under a new request id
        status = known['status']
        if status == STATUS_FAILED:
            return SubmissionResponse(
                request_id=request_id,
                image_ref=known.get('image_ref'),
                status=STATUS_FAILED,
                message=known.get('error_message') or MESSAGES['PREDICTION_FAILED']
            )
        return SubmissionResponse(
            request_id=request_id,
            image_ref=known.get('image_ref'),
            status=STATUS_PROCESSING if status == STATUS_PROCESSING else STATUS_COMPLETED,
            message=f"Request already {status.lower()}",
            prediction_id=known.get('prediction_id')
        )

    def _complete_inline(self, request: ProcessingRequest, image_data: bytes,
                         message: str) -> SubmissionResponse:
        try:
            prediction_id, result = self.execute(request, image_data)
        except Exception as e:
            self.record_failure(request, e)
            raise

        return SubmissionResponse(
            request_id=request.request_id,
            image_ref=request.image_ref,
            status=STATUS_COMPLETED,
            message=message,
            result=result.with_id(prediction_id) if result else None,
            prediction_id=prediction_id
        )

    # ------------------------------------------------------------------
    # Execution (shared by inline and worker paths)
    # ------------------------------------------------------------------

    def execute(self, request: ProcessingRequest,
                image_data: Optional[bytes] = None) -> Tuple[int, Optional[PredictionResult]]:
        """
        Run and persist one request, idempotently.

        A request whose prediction is already stored is only marked
        successful again; no second row is written.

        Returns:
            Tuple of (prediction id, new result or None when already stored)
        """
        start = time.perf_counter()

        existing = self.repository.find_prediction(request.request_id)
        if existing is not None:
            logger.info(f"Request {request.request_id} already has prediction {existing.id}")
            self.repository.update_request_status(
                request.request_id, STATUS_SUCCESS, prediction_id=existing.id
            )
            return existing.id, None

        if image_data is None:
            image_data = self.image_store.read(request.image_ref)

        result = self.orchestrator.predict(image_data, list(request.symptom_ids))
        prediction_id = self.repository.save_prediction(
            result, request.image_ref, request.request_id, request.symptom_ids
        )

        self.repository.update_request_status(
            request.request_id,
            STATUS_SUCCESS,
            prediction_id=prediction_id,
            processing_time_ms=int((time.perf_counter() - start) * 1000)
        )
        self.repository.mark_image(request.image_ref, 'Processed')

        return prediction_id, result

    def record_failure(self, request: ProcessingRequest, error: Exception) -> None:
        """Store a terminal Failed status; bookkeeping errors are only logged."""
        try:
            self.repository.rollback()
            self.repository.update_request_status(request.request_id, STATUS_FAILED, error=str(error))
            self.repository.mark_image(request.image_ref, STATUS_FAILED)
        except Exception as e:
            logger.error(f"Could not record failure for {request.request_id}: {e}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self, request_id: str) -> Optional[Dict]:
        return self.repository.get_request_status(request_id)


# =============================================================================
# Worker
# =============================================================================

class PredictionWorker:
    """
    Queue consumer that replays the synchronous path for each request.

    Messages are acknowledged only after the result is persisted; failures
    are rejected without requeue and recorded as Failed.
    """

    def __init__(self, dispatcher: AsyncDispatcher, broker, topic: Optional[str] = None,
                 result_topic: Optional[str] = None):
        self.dispatcher = dispatcher
        self.broker = broker
        self.topic = topic or dispatcher.topic
        self.result_topic = result_topic
        self._stop_event = threading.Event()
        self.processed = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return not self._stop_event.is_set()

    def stop(self) -> None:
        """Finish the current message, then leave the loop."""
        if not self._stop_event.is_set():
            logger.info("Worker stop requested")
        self._stop_event.set()

    def run(self) -> None:
        """Consume until stop() is called."""
        logger.info(f"Prediction worker consuming from {self.topic}")
        for delivery in consume(self.broker, self.topic, self._stop_event):
            self.handle(delivery)
        logger.info(f"Prediction worker stopped (processed={self.processed}, failed={self.failed})")

    def drain(self, max_messages: Optional[int] = None) -> int:
        """
        Process messages until the queue is empty.

        Returns:
            Number of messages handled
        """
        handled = 0
        while max_messages is None or handled < max_messages:
            deliveries = self.broker.poll(self.topic)
            if not deliveries:
                break
            for delivery in deliveries:
                self.handle(delivery)
                handled += 1
        return handled

    def handle(self, delivery: Delivery) -> bool:
        """
        Process one delivery.

        Returns:
            True if the message was acknowledged
        """
        try:
            request = ProcessingRequest.from_payload(delivery.payload)
        except ValueError as e:
            logger.error(f"Rejecting malformed message {delivery.delivery_id}: {e}")
            self._settle(delivery.reject, 'reject', delivery)
            self.failed += 1
            return False

        logger.info(f"Processing request {request.request_id} ({delivery.delivery_id})")

        try:
            prediction_id, result = self.dispatcher.execute(request)
        except Exception as e:
            logger.error(f"Request {request.request_id} failed: {e}")
            self.dispatcher.record_failure(request, e)
            self._settle(delivery.reject, 'reject', delivery)
            self.failed += 1
            return False

        acked = self._settle(delivery.ack, 'ack', delivery)
        self.processed += 1
        self._publish_result(request, prediction_id, result)
        return acked

    @staticmethod
    def _settle(settle, action: str, delivery: Delivery) -> bool:
        # A redelivered request is recognised by its request id
        try:
            settle()
        except QueueUnavailable as e:
            logger.warning(f"Could not {action} {delivery.delivery_id}, it may be redelivered: {e}")
            return False
        return True

    def _publish_result(self, request: ProcessingRequest, prediction_id: int,
                        result: Optional[PredictionResult]) -> None:
        if not self.result_topic:
            return
        payload = {
            'request_id': request.request_id,
            'prediction_id': prediction_id,
            'status': STATUS_SUCCESS,
            'disease_name': result.disease_name if result else None,
            'confidence': result.effective_confidence if result else None
        }
        try:
            self.broker.publish(self.result_topic, payload)
        except (QueueUnavailable, OSError) as e:
            logger.warning(f"Could not publish result for {request.request_id}: {e}")
