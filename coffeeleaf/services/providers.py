# =============================================================================
# CoffeeLeaf Backend
# services/providers.py - Service Wiring
#
# Builds the prediction services from a config mapping once at startup.
# Every optional backend (Redis, Kafka, model files) degrades to a local
# stand-in when it is not configured or not reachable.
# =============================================================================

import os
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlparse

from .broker import InMemoryBroker, KafkaBroker, NullBroker
from .cache import MemoryTier, NullTier, RedisTier, ResultCache
from .dispatcher import AsyncDispatcher, PredictionWorker
from .fusion import FusionPolicy
from .health import HealthStatus
from .inference import InferenceEngine, ModelCatalog
from .prediction import PredictionOrchestrator
from .storage import FileSystemImageStore, PredictionRepository
from .symptoms import NullSymptomClassifier, SymptomClassifier
from ..constants import MODEL_CONFIG, MODEL_TYPE_IMAGE, MODEL_TYPE_SYMPTOM

logger = logging.getLogger(__name__)

PACKAGE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


@dataclass
class PredictionServices:
    """Everything the routes and the worker need, built once per process."""
    catalog: ModelCatalog
    image_engine: InferenceEngine
    symptom_engine: InferenceEngine
    cache: ResultCache
    orchestrator: PredictionOrchestrator
    broker: object
    image_store: FileSystemImageStore
    repository: PredictionRepository
    dispatcher: AsyncDispatcher
    result_topic: Optional[str] = None

    @property
    def engines(self) -> Dict[str, InferenceEngine]:
        return {MODEL_TYPE_IMAGE: self.image_engine, MODEL_TYPE_SYMPTOM: self.symptom_engine}

    def create_worker(self) -> PredictionWorker:
        return PredictionWorker(self.dispatcher, self.broker, result_topic=self.result_topic)

    def health_checks(self) -> List[HealthStatus]:
        statuses = self.orchestrator.health_check()
        statuses.append(self.broker.health_check())
        statuses.append(self.image_store.health_check())
        statuses.append(self.repository.health_check())
        return statuses

    def shutdown(self) -> None:
        self.orchestrator.shutdown()
        self.broker.close()


# =============================================================================
# Builders
# =============================================================================

def model_search_paths(config: Mapping) -> List[str]:
    """
    Directories searched for model files, in order.

    MODEL_SEARCH_PATHS (os.pathsep separated) wins; otherwise MODEL_PATH,
    ./models and the models directory next to the package.
    """
    configured = config.get('MODEL_SEARCH_PATHS')
    if configured:
        if isinstance(configured, str):
            return [path for path in configured.split(os.pathsep) if path]
        return list(configured)

    paths = [
        config.get('MODEL_PATH'),
        os.path.join(os.getcwd(), 'models'),
        os.path.join(os.path.dirname(PACKAGE_DIR), 'models')
    ]
    seen = []
    for path in paths:
        if path and path not in seen:
            seen.append(path)
    return seen


def build_cache(config: Mapping) -> ResultCache:
    memory = MemoryTier(
        max_size=int(config.get('CACHE_MEMORY_MAX_ENTRIES', 1000)),
        max_ttl=int(config.get('CACHE_MEMORY_TTL_SECONDS', 3600))
    )

    shared = NullTier()
    redis_url = config.get('REDIS_URL')
    if redis_url:
        try:
            shared = RedisTier.from_url(redis_url, timeout=float(config.get('CACHE_REDIS_TIMEOUT', 2.0)))
            logger.info(f"Shared cache tier: {urlparse(redis_url).hostname}")
        except Exception as e:
            logger.warning(f"Redis cache unavailable, using memory tier only: {e}")

    return ResultCache(memory, shared, default_ttl=int(config.get('CACHE_TTL_SECONDS', 7 * 24 * 3600)))


def build_broker(config: Mapping):
    """
    Queue backend from QUEUE_URL.

    ``kafka://host1:9092,host2:9092`` selects Kafka, ``memory://`` an
    in-process queue; an empty URL disables queueing so every async
    request is processed inline.
    """
    queue_url = (config.get('QUEUE_URL') or '').strip()
    if not queue_url:
        logger.info("No queue configured - async requests run synchronously")
        return NullBroker()

    scheme, _, rest = queue_url.partition('://')
    if scheme == 'memory':
        return InMemoryBroker()
    if scheme == 'kafka':
        servers = [server.strip() for server in rest.split(',') if server.strip()]
        if not servers:
            raise ValueError(f"QUEUE_URL has no Kafka servers: {queue_url}")
        return KafkaBroker(
            bootstrap_servers=servers,
            group_id=config.get('QUEUE_GROUP_ID', 'coffeeleaf-workers'),
            publish_timeout=float(config.get('QUEUE_PUBLISH_TIMEOUT', 5.0)),
            poll_timeout_ms=int(config.get('QUEUE_POLL_TIMEOUT_MS', 1000))
        )
    raise ValueError(f"Unsupported QUEUE_URL scheme: {scheme}")


def build_services(config: Mapping, session_loader=None) -> PredictionServices:
    """
    Wire up the prediction services.

    Args:
        config: Flask config (or any mapping with the same keys)
        session_loader: Optional replacement for the model session loader

    Returns:
        PredictionServices
    """
    catalog = ModelCatalog(
        model_search_paths(config),
        file_names={
            MODEL_TYPE_IMAGE: config.get('CNN_MODEL_FILE') or MODEL_CONFIG[MODEL_TYPE_IMAGE],
            MODEL_TYPE_SYMPTOM: config.get('MLP_MODEL_FILE') or MODEL_CONFIG[MODEL_TYPE_SYMPTOM]
        }
    )

    engine_kwargs = {'session_loader': session_loader} if session_loader else {}
    image_engine = InferenceEngine(MODEL_TYPE_IMAGE, catalog, **engine_kwargs)
    symptom_engine = InferenceEngine(MODEL_TYPE_SYMPTOM, catalog, **engine_kwargs)

    if config.get('LOAD_MODELS', True):
        image_engine.try_load()
        symptom_engine.try_load()

    cache = build_cache(config)
    catalog.subscribe(cache.on_model_swapped)

    if config.get('SYMPTOM_FUSION_ENABLED', True):
        symptom_classifier = SymptomClassifier(symptom_engine)
    else:
        symptom_classifier = NullSymptomClassifier()

    orchestrator = PredictionOrchestrator(
        engine=image_engine,
        cache=cache,
        fusion=FusionPolicy(symptom_classifier),
        leaf_score_threshold=float(config.get('LEAF_SCORE_THRESHOLD', 0.3)),
        enhance_threshold=float(config.get('ENHANCE_QUALITY_THRESHOLD', 0.7)),
        max_workers=int(config.get('ENSEMBLE_MAX_WORKERS', 4))
    )

    broker = build_broker(config)
    image_store = FileSystemImageStore(config.get('UPLOAD_FOLDER') or os.path.join(os.getcwd(), 'uploads'))
    repository = PredictionRepository()

    dispatcher = AsyncDispatcher(
        orchestrator,
        broker,
        image_store,
        repository,
        topic=config.get('QUEUE_TOPIC', 'image-processing')
    )

    logger.info(
        f"Prediction services ready (image model: {image_engine.version or 'mock'}, "
        f"symptom model: {symptom_engine.version or 'rules'}, broker: {type(broker).__name__})"
    )

    return PredictionServices(
        catalog=catalog,
        image_engine=image_engine,
        symptom_engine=symptom_engine,
        cache=cache,
        orchestrator=orchestrator,
        broker=broker,
        image_store=image_store,
        repository=repository,
        dispatcher=dispatcher,
        result_topic=config.get('QUEUE_RESULT_TOPIC') or None
    )
