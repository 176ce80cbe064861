# =============================================================================
# CoffeeLeaf Backend
# services/__init__.py - Services Package
#
# This package contains the prediction pipeline: image analysis, model
# inference, caching, queueing and persistence.
# =============================================================================

from .prediction import PredictionOrchestrator
from .dispatcher import AsyncDispatcher, PredictionWorker
from .providers import PredictionServices, build_services

__all__ = [
    'PredictionOrchestrator',
    'AsyncDispatcher',
    'PredictionWorker',
    'PredictionServices',
    'build_services'
]
