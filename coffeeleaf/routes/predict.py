# =============================================================================
# CoffeeLeaf Backend
# routes/predict.py - Disease Prediction Routes
#
# Handles coffee leaf disease prediction endpoints: synchronous and queued
# uploads, request status polling, batch prediction and reference data
# (treatments and the symptom catalogue).
# =============================================================================

from flask import Blueprint, request, current_app

from ..constants import (
    DISEASE_INFO,
    MESSAGES,
    NOT_COFFEE_LEAF,
    STATUS_FAILED,
    STATUS_PROCESSING,
    SYMPTOMS,
    SYMPTOM_FEATURE_SIZE
)
from ..decorators import handle_db_errors, log_request, validate_file_upload
from ..errors import DecodeFailed
from ..extensions import limiter
from ..utils import (
    allowed_file,
    error_response,
    get_services,
    parse_symptom_ids,
    success_response,
    validate_request_id
)

# Create blueprint
predict_bp = Blueprint('predict', __name__)


def _read_request_fields():
    """
    Symptom ids and the optional request id from the form.

    Returns:
        tuple: (symptom_ids, request_id, error response or None)
    """
    symptom_ids = parse_symptom_ids(request.form.getlist('symptom_ids'))

    request_id = request.form.get('request_id', '').strip() or None
    if request_id is not None and not validate_request_id(request_id):
        return symptom_ids, None, error_response(
            'Invalid request_id',
            details={'field': 'request_id', 'format': '8-64 characters of [A-Za-z0-9_.:-]'},
            status_code=400
        )
    return symptom_ids, request_id, None


def _invalid_image():
    return error_response(MESSAGES['INVALID_IMAGE'], details={'field': 'image'}, status_code=400)


# =============================================================================
# Synchronous Prediction
# =============================================================================

@predict_bp.route('/', methods=['POST'])
@limiter.limit("30 per minute")
@log_request
@handle_db_errors
@validate_file_upload()
def predict(file):
    """
    Analyze a coffee leaf image and return the prediction.

    Request:
        Content-Type: multipart/form-data

        Fields:
            image (file): Image file (jpg, jpeg, png, webp, bmp) - required
            symptom_ids (str): Observed symptom ids, repeated or comma separated - optional
            request_id (str): Idempotency token - optional

    Returns:
        200: Prediction result
        400: Missing or invalid image
        422: The image is not a coffee leaf
    """
    symptom_ids, request_id, error = _read_request_fields()
    if error:
        return error

    dispatcher = get_services().dispatcher

    try:
        submission = dispatcher.run_sync(
            image_data=file.read(),
            file_name=file.filename,
            symptom_ids=symptom_ids,
            request_id=request_id
        )
    except DecodeFailed as e:
        current_app.logger.warning(f"Rejected upload {file.filename}: {e}")
        return _invalid_image()

    data = submission.to_dict()
    if submission.result is None:
        # Request id already answered earlier
        data['result'] = (dispatcher.get_status(submission.request_id) or {}).get('result')

    if submission.result is not None and not submission.result.is_coffee_leaf:
        return error_response(MESSAGES['NOT_COFFEE_LEAF'], details=data, status_code=422)

    return success_response(data, message=submission.message)


# =============================================================================
# Queued Prediction
# =============================================================================

@predict_bp.route('/async', methods=['POST'])
@limiter.limit("60 per minute")
@log_request
@handle_db_errors
@validate_file_upload()
def predict_async(file):
    """
    Queue an image for background prediction.

    Same fields as the synchronous endpoint. When the queue is unavailable
    the image is processed immediately and the result is returned.

    Returns:
        202: {status: "Processing", request_id, leaf_image_ref}
        200: {status: "Completed", request_id, leaf_image_ref, result}
        400: Missing or invalid image
        409: The request id already failed
    """
    symptom_ids, request_id, error = _read_request_fields()
    if error:
        return error

    try:
        submission = get_services().dispatcher.submit(
            image_data=file.read(),
            file_name=file.filename,
            symptom_ids=symptom_ids,
            request_id=request_id
        )
    except DecodeFailed as e:
        current_app.logger.warning(f"Rejected upload {file.filename}: {e}")
        return _invalid_image()

    if submission.status == STATUS_FAILED:
        return error_response(submission.message, details=submission.to_dict(), status_code=409)

    status_code = 202 if submission.status == STATUS_PROCESSING else 200
    return success_response(submission.to_dict(), message=submission.message, status_code=status_code)


@predict_bp.route('/status/<request_id>', methods=['GET'])
@limiter.limit("120 per minute")
@handle_db_errors
def get_status(request_id):
    """
    Latest status of a submitted request.

    Returns:
        200: Status row, with the prediction once it exists
        400: Malformed request id
        404: Unknown request id
    """
    if not validate_request_id(request_id):
        return error_response('Invalid request_id', status_code=400)

    status = get_services().dispatcher.get_status(request_id)
    if status is None:
        return error_response(f"Request not found: '{request_id}'", status_code=404)

    return success_response(status)


# =============================================================================
# Batch Prediction
# =============================================================================

@predict_bp.route('/batch', methods=['POST'])
@limiter.limit("10 per minute")
@log_request
def predict_batch():
    """
    Predict several images in one call.

    Request:
        images (file, repeated): Image files - required
        symptom_ids (str): Applied to every image - optional

    Returns:
        200: BatchPredictionResponse (bad images are listed in ``errors``)
        400: No images or too many images
    """
    files = [f for f in request.files.getlist('images') if f and f.filename]
    if not files:
        return error_response('No image files provided', details={'field': 'images'}, status_code=400)

    max_images = current_app.config.get('BATCH_MAX_IMAGES', 10)
    if len(files) > max_images:
        return error_response(
            f'Too many images. Maximum is {max_images}',
            details={'received': len(files)},
            status_code=400
        )

    images = []
    rejected = []
    for file in files:
        if allowed_file(file.filename):
            images.append((file.filename, file.read()))
        else:
            rejected.append(f"{file.filename}: invalid file type")

    symptom_ids = parse_symptom_ids(request.form.getlist('symptom_ids'))
    response = get_services().orchestrator.predict_batch(images, symptom_ids)
    response.errors.extend(rejected)

    return success_response(response.to_dict())


# =============================================================================
# Reference Data
# =============================================================================

@predict_bp.route('/treatment', methods=['GET'])
@limiter.limit("100 per minute")
def get_treatment():
    """
    Description and treatment suggestion for a disease.

    Query Parameters:
        disease (str): Disease name, case-insensitive (required)

    Returns:
        200: Treatment information
        400: Missing disease parameter
        404: Disease not found
    """
    disease = request.args.get('disease', '').strip()
    if not disease:
        return error_response('Disease name is required', status_code=400)

    match = next((name for name in DISEASE_INFO if name.lower() == disease.lower()), None)
    if match is None or match == NOT_COFFEE_LEAF:
        return error_response(
            f"Treatment not found for disease: '{disease}'",
            details={'known': [name for name in DISEASE_INFO if name != NOT_COFFEE_LEAF]},
            status_code=404
        )

    return success_response({
        'disease': match,
        'description': DISEASE_INFO[match]['description'],
        'treatment': DISEASE_INFO[match]['treatment']
    })


@predict_bp.route('/symptoms', methods=['GET'])
@limiter.limit("100 per minute")
def get_symptoms():
    """Known symptoms that can be reported alongside an image."""
    symptoms = [
        {
            'id': symptom_id,
            'name': info['name'],
            'category': info['category'],
            'weight': info['weight'],
            'disease': info['disease'],
            'description': info['description']
        }
        for symptom_id, info in sorted(SYMPTOMS.items())
    ]
    return success_response({
        'symptoms': symptoms,
        'feature_size': SYMPTOM_FEATURE_SIZE
    })
