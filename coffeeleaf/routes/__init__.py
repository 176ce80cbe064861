# =============================================================================
# CoffeeLeaf Backend
# routes/__init__.py - Routes Package
#
# This package contains all API route blueprints organized by feature.
# =============================================================================

from .predict import predict_bp
from .models import models_bp

__all__ = [
    'predict_bp',
    'models_bp'
]
