# =============================================================================
# CoffeeLeaf Backend
# services/prediction.py - Prediction Orchestrator
#
# Sequences the whole pipeline for one image: cache lookup, image analysis,
# the coffee-leaf gate, enhancement, augmented ensemble inference, confidence
# adjustment, symptom fusion and cache write. Falls back to a deterministic
# feature-based mock whenever no model is loaded or a stage fails.
# =============================================================================

import time
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from .augmentation import generate_augmentations
from .cache import SYMPTOM_KEY_MARKER, make_cache_key
from .enhancer import enhance_image, needs_enhancement
from .ensemble import combine_ensemble, adjust_confidence
from .features import ImageAnalysis, analyze_image, quality_insights
from .fusion import FusionPolicy
from .imaging import compute_image_hash, decode_image
from .inference import InferenceEngine, ModelHandle
from .results import (
    BatchPredictionResponse,
    ClassProbability,
    PredictionResult,
    SeverityLevel
)
from .symptoms import known_symptom_ids
from .tensor_codec import encode_image, decode_scores
from ..constants import (
    DISEASE_CLASSES,
    DISEASE_INFO,
    DEFAULT_TREATMENT,
    QUALITY_INSIGHTS,
    NOT_COFFEE_LEAF,
    MOCK_NAMESPACE,
    LEAF_SCORE_THRESHOLD,
    ENHANCE_QUALITY_THRESHOLD,
    TAG_ENHANCED,
    TAG_SMART_MOCK,
    TAG_FALLBACK,
    TAG_LEAF_GATE
)
from ..errors import DecodeFailed, InferenceFailed

logger = logging.getLogger(__name__)


# =============================================================================
# Result Helpers
# =============================================================================

def describe(disease_name: str, warnings: Sequence[str] = ()) -> str:
    """Disease description followed by any image quality insights."""
    info = DISEASE_INFO.get(disease_name, {})
    parts = [info.get('description', disease_name)]
    parts.extend(QUALITY_INSIGHTS[key] for key in warnings if key in QUALITY_INSIGHTS)
    return ' '.join(parts)


def treatment_for(disease_name: str) -> str:
    return DISEASE_INFO.get(disease_name, {}).get('treatment', DEFAULT_TREATMENT)


def _elapsed_ms(start: float) -> int:
    return max(0, int((time.perf_counter() - start) * 1000))


def spread_probabilities(disease_name: str, confidence: float) -> List[ClassProbability]:
    """Give the winner its confidence and split the rest evenly."""
    others = [name for name in DISEASE_CLASSES if name != disease_name]
    remainder = max(0.0, 1.0 - confidence) / len(others)
    probabilities = [ClassProbability(disease_name, confidence)]
    probabilities.extend(ClassProbability(name, remainder) for name in others)
    return probabilities


# =============================================================================
# Mock Predictor
# =============================================================================

def smart_mock_prediction(analysis: ImageAnalysis) -> Tuple[str, float]:
    """
    Plausible label and confidence from image features alone.

    Placeholder policy used while no image model is loaded: lots of brown
    suggests a leaf spot, a clean green leaf is healthy, heavy texture
    suggests mines, anything else is reported as rust.

    Returns:
        Tuple of (disease_name, confidence in [0.5, 0.95])
    """
    leaf = analysis.leaf
    quality = analysis.quality

    if leaf.brown_ratio > 0.3:
        # Phoma lesions are darker than Cercospora spots
        disease = 'Phoma' if leaf.avg_value < 0.35 else 'Cercospora'
    elif leaf.green_ratio > 0.6 and quality.quality_score > 0.7:
        disease = 'Healthy'
    elif leaf.avg_texture > 50:
        disease = 'Miner'
    else:
        disease = 'Rust'

    confidence = 0.55 + quality.quality_score * 0.2 + leaf.coffee_leaf_score * 0.15
    return disease, min(max(confidence, 0.5), 0.95)


def fallback_prediction(image_hash: str) -> Tuple[str, float]:
    """Last-resort deterministic answer derived from the image digest."""
    index = int(image_hash[:8], 16) % len(DISEASE_CLASSES)
    return DISEASE_CLASSES[index], 0.5


# =============================================================================
# Orchestrator
# =============================================================================

class PredictionOrchestrator:
    """
    Single entry point for coffee leaf disease prediction.

    Args:
        engine: Image model InferenceEngine (may be in mock mode)
        cache: ResultCache
        fusion: FusionPolicy wrapping the symptom classifier
        leaf_score_threshold: Images scoring below this are not leaves
        enhance_threshold: Quality score under which images get enhanced
        max_workers: Threads used for augmentation branches
    """

    def __init__(
        self,
        engine: InferenceEngine,
        cache,
        fusion: FusionPolicy,
        leaf_score_threshold: float = LEAF_SCORE_THRESHOLD,
        enhance_threshold: float = ENHANCE_QUALITY_THRESHOLD,
        max_workers: int = 4
    ):
        self.engine = engine
        self.cache = cache
        self.fusion = fusion
        self.leaf_score_threshold = leaf_score_threshold
        self.enhance_threshold = enhance_threshold
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix='augment')

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_model_loaded(self) -> bool:
        return self.engine.is_loaded()

    def cache_key(self, image_hash: str, symptom_ids: Optional[Iterable] = None,
                  handle: Optional[ModelHandle] = None) -> str:
        """
        Cache key for an image under the active model version.

        Any reported symptom list triggers fusion, so a non-empty list always
        gets a ``:s`` suffix, even when none of its ids is catalogued. The
        suffix holds the catalogued ids only since fusion ignores the rest.
        """
        namespace = handle.version if handle else MOCK_NAMESPACE
        key = make_cache_key(image_hash, namespace)
        if symptom_ids:
            symptoms = sorted(known_symptom_ids(symptom_ids))
            key = f"{key}{SYMPTOM_KEY_MARKER}{'-'.join(str(s) for s in symptoms)}"
        return key

    def predict(self, image_data: bytes,
                symptom_ids: Optional[Sequence[int]] = None) -> PredictionResult:
        """
        Predict the disease shown in an image.

        Args:
            image_data: Raw image bytes
            symptom_ids: Optional caller-reported symptom ids

        Returns:
            PredictionResult (possibly the "Not Coffee Leaf" sentinel)

        Raises:
            DecodeFailed: If the bytes are not an image
        """
        start = time.perf_counter()
        image_hash = compute_image_hash(image_data)

        # One handle snapshot for the whole request
        handle = self.engine.handle
        key = self.cache_key(image_hash, symptom_ids, handle)

        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"Cache hit for {image_hash[:12]}: {cached.disease_name}")
            return cached

        image = decode_image(image_data)

        if handle is None:
            logger.warning("No image model loaded - using smart mock prediction")
            return self._mock(image, image_hash, start)

        try:
            result = self._run_pipeline(image, image_hash, handle, symptom_ids, start)
        except DecodeFailed:
            raise
        except Exception as e:
            logger.error(f"Prediction pipeline failed, using smart mock: {e}")
            return self._mock(image, image_hash, start)

        if result.is_coffee_leaf:
            self.cache.set(key, result)

        logger.info(
            f"Prediction completed: {result.disease_name} "
            f"({result.effective_confidence:.3f}, {result.model_version}, "
            f"{result.processing_time_ms}ms)"
        )
        return result

    def predict_batch(self, images: Sequence[Tuple[str, bytes]],
                      symptom_ids: Optional[Sequence[int]] = None) -> BatchPredictionResponse:
        """
        Predict several images; a bad image is reported, not raised.

        Args:
            images: (name, bytes) pairs
            symptom_ids: Symptoms applied to every image

        Returns:
            BatchPredictionResponse
        """
        start = time.perf_counter()
        response = BatchPredictionResponse()

        for name, image_data in images:
            try:
                response.results.append(self.predict(image_data, symptom_ids))
            except DecodeFailed as e:
                logger.warning(f"Batch item {name} rejected: {e}")
                response.errors.append(f"{name}: {e}")

        response.total_processing_time_ms = _elapsed_ms(start)
        logger.info(f"Batch prediction: {response.success_count} ok, "
                    f"{response.failure_count} failed")
        return response

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run_pipeline(self, image: Image.Image, image_hash: str, handle: ModelHandle,
                      symptom_ids: Optional[Sequence[int]], start: float) -> PredictionResult:
        analysis = analyze_image(image)
        leaf = analysis.leaf
        quality = analysis.quality
        warnings = quality_insights(quality)

        logger.debug(f"Quality {quality.quality_score:.2f}, "
                     f"leaf score {leaf.coffee_leaf_score:.2f}")

        if leaf.coffee_leaf_score < self.leaf_score_threshold:
            logger.info(f"Leaf score {leaf.coffee_leaf_score:.2f} below "
                        f"{self.leaf_score_threshold} - not a coffee leaf")
            return self._not_coffee_leaf(analysis, image_hash, warnings, start)

        model_version = handle.version
        base = image
        if needs_enhancement(quality, self.enhance_threshold):
            base, steps = enhance_image(image, quality, analysis.environment)
            if steps:
                model_version = f"{handle.version}+{TAG_ENHANCED}"

        branch_results = self._infer_variants(base, handle)
        decision = combine_ensemble([ranked[0] for ranked in branch_results], leaf)

        image_confidence = adjust_confidence(decision.confidence, quality, leaf)
        fusion = self.fusion.apply(image_confidence, symptom_ids)
        final_confidence = fusion.confidence if fusion.fused else None

        return PredictionResult(
            disease_name=decision.disease_name,
            confidence=image_confidence,
            final_confidence=final_confidence,
            severity=SeverityLevel.from_confidence(
                final_confidence if final_confidence is not None else image_confidence
            ),
            model_version=model_version,
            processing_time_ms=_elapsed_ms(start),
            description=describe(decision.disease_name, warnings),
            treatment_suggestion=treatment_for(decision.disease_name),
            image_hash=image_hash,
            probabilities=self._average_probabilities(branch_results),
            quality_warnings=warnings
        )

    def _infer_one(self, variant_image: Image.Image, handle: ModelHandle) -> List[tuple]:
        tensor = encode_image(variant_image, handle)
        scores = self.engine.run(tensor, handle)
        ranked = decode_scores(scores)
        if not ranked:
            raise InferenceFailed('Model output has no class scores')
        return ranked

    def _infer_variants(self, base: Image.Image, handle: ModelHandle) -> List[List[tuple]]:
        """
        Run every augmentation variant and wait for all of them.

        Branches that raise InferenceFailed are dropped.
        """
        variants = generate_augmentations(base)
        futures = [(variant.name, self._executor.submit(self._infer_one, variant.image, handle))
                   for variant in variants]
        wait([future for _, future in futures])

        results = []
        for name, future in futures:
            try:
                results.append(future.result())
            except InferenceFailed as e:
                logger.warning(f"Augmentation branch {name} dropped: {e}")
        return results

    @staticmethod
    def _average_probabilities(branch_results: List[List[tuple]]) -> List[ClassProbability]:
        if not branch_results:
            return []
        totals = {}
        for ranked in branch_results:
            for name, probability in ranked:
                totals[name] = totals.get(name, 0.0) + probability
        count = len(branch_results)
        averaged = [ClassProbability(name, total / count) for name, total in totals.items()]
        averaged.sort(key=lambda p: p.confidence, reverse=True)
        return averaged

    # ------------------------------------------------------------------
    # Short circuits and fallbacks
    # ------------------------------------------------------------------

    def _not_coffee_leaf(self, analysis: ImageAnalysis, image_hash: str,
                         warnings: List[str], start: float) -> PredictionResult:
        confidence = float(np.clip(1.0 - analysis.leaf.coffee_leaf_score, 0.0, 1.0))
        return PredictionResult(
            disease_name=NOT_COFFEE_LEAF,
            confidence=confidence,
            severity=SeverityLevel.NOT_APPLICABLE,
            model_version=TAG_LEAF_GATE,
            processing_time_ms=_elapsed_ms(start),
            description=describe(NOT_COFFEE_LEAF, warnings),
            treatment_suggestion=treatment_for(NOT_COFFEE_LEAF),
            image_hash=image_hash,
            quality_warnings=warnings
        )

    def _mock(self, image: Image.Image, image_hash: str, start: float) -> PredictionResult:
        try:
            analysis = analyze_image(image)
            disease, confidence = smart_mock_prediction(analysis)
            warnings = quality_insights(analysis.quality)
            version = TAG_SMART_MOCK
        except Exception as e:
            logger.error(f"Smart mock failed, using fallback: {e}")
            disease, confidence = fallback_prediction(image_hash)
            warnings = []
            version = TAG_FALLBACK

        return PredictionResult(
            disease_name=disease,
            confidence=confidence,
            severity=SeverityLevel.from_confidence(confidence),
            model_version=version,
            processing_time_ms=_elapsed_ms(start),
            description=describe(disease, warnings),
            treatment_suggestion=treatment_for(disease),
            image_hash=image_hash,
            probabilities=spread_probabilities(disease, confidence),
            quality_warnings=warnings
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def health_check(self) -> list:
        statuses = [self.engine.health_check()]
        statuses.extend(self.cache.health_check())
        statuses.append(self.fusion.symptom_classifier.health_check())
        return statuses

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
