# =============================================================================
# CoffeeLeaf Backend
# services/ensemble.py - Ensemble Combination and Confidence Adjustment
#
# Merges the top predictions of every augmentation branch into one decision
# and corrects its confidence with what the image analysis observed.
# =============================================================================

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from .features import LeafFeatures, QualityAnalysis
from ..constants import (
    HEALTHY,
    MINER,
    ENSEMBLE_MIN_BONUS_MEMBERS,
    ENSEMBLE_BONUS_SCALE,
    ENSEMBLE_CLAMP,
    ADJUSTED_CLAMP
)
from ..errors import EmptyEnsemble

logger = logging.getLogger(__name__)

# Context adjustments
HEALTHY_MIN_GREEN = 0.3
HEALTHY_PENALTY = 0.8
MINER_MIN_TEXTURE = 10.0
MINER_PENALTY = 0.7


@dataclass(frozen=True)
class EnsembleDecision:
    """Winning label of an ensemble round."""
    disease_name: str
    confidence: float
    mean_confidence: float
    stability_bonus: float
    member_count: int
    branch_count: int
    group_means: Dict[str, float]


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    low, high = bounds
    return min(max(value, low), high)


def stability_bonus(confidences: Sequence[float]) -> float:
    """
    Bonus for a label several branches agree on.

    ``(1 - (max - min)) * 0.1`` when at least three branches voted for it,
    otherwise 0.
    """
    if len(confidences) < ENSEMBLE_MIN_BONUS_MEMBERS:
        return 0.0
    spread = max(confidences) - min(confidences)
    return (1.0 - spread) * ENSEMBLE_BONUS_SCALE


def combine_ensemble(
    predictions: Sequence[Tuple[str, float]],
    leaf: LeafFeatures
) -> EnsembleDecision:
    """
    Combine per-branch (disease_name, confidence) pairs into one decision.

    Branches that failed inference are simply absent from ``predictions``.
    The group with the highest mean confidence wins; ties go to the label
    seen first.

    Args:
        predictions: Top prediction of each surviving branch
        leaf: Leaf features used for context adjustments

    Returns:
        EnsembleDecision with confidence clamped to [0.01, 0.99]

    Raises:
        EmptyEnsemble: If no branch produced a prediction
    """
    if not predictions:
        raise EmptyEnsemble('No augmentation branch produced a prediction')

    groups: Dict[str, List[float]] = defaultdict(list)
    for disease_name, confidence in predictions:
        groups[disease_name].append(float(confidence))

    means = {name: sum(values) / len(values) for name, values in groups.items()}
    winner = max(means, key=means.get)
    members = groups[winner]

    bonus = stability_bonus(members)
    confidence = means[winner] + bonus

    if winner == HEALTHY and leaf.green_ratio < HEALTHY_MIN_GREEN:
        confidence *= HEALTHY_PENALTY
        logger.debug(f"Healthy vote with green ratio {leaf.green_ratio:.2f}; penalized")
    elif winner == MINER and leaf.avg_texture < MINER_MIN_TEXTURE:
        confidence *= MINER_PENALTY
        logger.debug(f"Miner vote with texture {leaf.avg_texture:.1f}; penalized")

    return EnsembleDecision(
        disease_name=winner,
        confidence=_clamp(confidence, ENSEMBLE_CLAMP),
        mean_confidence=means[winner],
        stability_bonus=bonus,
        member_count=len(members),
        branch_count=len(predictions),
        group_means=means
    )


def adjust_confidence(confidence: float, quality: QualityAnalysis, leaf: LeafFeatures) -> float:
    """
    Shift confidence by image quality and leaf plausibility.

    +0.05 for quality above 0.8, -0.1 below 0.5; +0.03 for a leaf score
    above 0.8, -0.05 below 0.4. Clamped to [0.1, 0.98].
    """
    adjustment = 0.0

    if quality.quality_score > 0.8:
        adjustment += 0.05
    elif quality.quality_score < 0.5:
        adjustment -= 0.1

    if leaf.coffee_leaf_score > 0.8:
        adjustment += 0.03
    elif leaf.coffee_leaf_score < 0.4:
        adjustment -= 0.05

    return _clamp(confidence + adjustment, ADJUSTED_CLAMP)
