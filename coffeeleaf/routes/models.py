# =============================================================================
# CoffeeLeaf Backend
# routes/models.py - Model Management Routes
#
# Operational endpoints to inspect the active models, hot-swap a model file
# without restarting, and drop a cached prediction.
# =============================================================================

from flask import Blueprint, request, current_app

from ..constants import MOCK_NAMESPACE
from ..errors import ModelNotFound
from ..extensions import limiter
from ..utils import error_response, get_services, success_response

# Create blueprint
models_bp = Blueprint('models', __name__)


@models_bp.route('/', methods=['GET'])
@limiter.limit("60 per minute")
def list_models():
    """Active model handles, inference counters and cache statistics."""
    services = get_services()
    return success_response({
        'models': {model_type: engine.info() for model_type, engine in services.engines.items()},
        'cache': services.cache.stats()
    })


@models_bp.route('/<model_type>/swap', methods=['POST'])
@limiter.limit("5 per minute")
def swap_model(model_type):
    """
    Replace the active model of one type.

    Request Body:
        {
            "file_name": "coffee_resnet50_v1.2.onnx",   // resolved in the model directories
            "version": "coffee_resnet50_v1.2"          // optional
        }

    Returns:
        200: New handle
        400: Missing or unsafe file name
        404: Unknown model type or file not found
        422: The file could not be loaded as a model
    """
    services = get_services()
    engine = services.engines.get(model_type)
    if engine is None:
        return error_response(
            f"Unknown model type: '{model_type}'",
            details={'allowed': sorted(services.engines)},
            status_code=404
        )

    data = request.get_json(silent=True) or {}
    file_name = (data.get('file_name') or '').strip()
    if not file_name:
        return error_response('file_name is required', details={'field': 'file_name'}, status_code=400)
    # Only files inside the configured model directories can be loaded
    if '/' in file_name or '\\' in file_name or file_name.startswith('.'):
        return error_response('file_name must be a bare file name', status_code=400)

    try:
        handle = engine.swap(file_name=file_name, version=data.get('version') or None)
    except ModelNotFound as e:
        return error_response(str(e), details={'searched': e.searched}, status_code=404)
    except Exception as e:
        current_app.logger.error(f"Model swap failed for {model_type}/{file_name}: {e}")
        return error_response(
            'Model could not be loaded',
            details=str(e) if current_app.debug else None,
            status_code=422
        )

    current_app.config['MODEL_LOADED'] = services.image_engine.is_loaded()
    return success_response(handle.to_dict(), message=f"{model_type} model swapped")


@models_bp.route('/cache/<image_hash>', methods=['DELETE'])
@limiter.limit("30 per minute")
def invalidate_cached_prediction(image_hash):
    """
    Drop the cached prediction of an image under the active model.

    Returns:
        200: Number of removed entries
        400: Not a SHA-256 hex digest
    """
    image_hash = image_hash.lower()
    if len(image_hash) != 64 or any(c not in '0123456789abcdef' for c in image_hash):
        return error_response('image_hash must be a SHA-256 hex digest', status_code=400)

    services = get_services()
    namespaces = [services.image_engine.version or MOCK_NAMESPACE]
    removed = services.cache.invalidate_image(image_hash, namespaces)

    return success_response({'image_hash': image_hash, 'removed': removed})
