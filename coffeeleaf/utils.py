# =============================================================================
# CoffeeLeaf Backend
# utils.py - Utility Functions
#
# Common utility functions used across the application including
# upload validation, identifiers and standardized API responses.
# =============================================================================

import re
import uuid
import random
import string
from datetime import datetime
from typing import List

from flask import jsonify, current_app


# =============================================================================
# Validation Functions
# =============================================================================

REQUEST_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.:-]{8,64}$')


def validate_request_id(request_id: str) -> bool:
    """
    Check a caller-supplied idempotency token.

    Args:
        request_id: Token from the client

    Returns:
        bool: True if 8-64 characters of letters, digits and ``_.:-``
    """
    return bool(request_id) and REQUEST_ID_PATTERN.match(request_id) is not None


def parse_symptom_ids(values: List[str]) -> List[int]:
    """
    Parse symptom ids from form values.

    Accepts repeated fields (``symptom_ids=1&symptom_ids=4``) and comma
    separated lists (``symptom_ids=1,4``). Non-numeric parts are skipped.

    Args:
        values: Raw form values

    Returns:
        list: Integer ids in the order given
    """
    ids = []
    for value in values or []:
        for part in str(value).split(','):
            part = part.strip()
            if part.lstrip('-').isdigit():
                ids.append(int(part))
    return ids


# =============================================================================
# File Handling Functions
# =============================================================================

def allowed_file(filename: str) -> bool:
    """
    Check if uploaded file has an allowed extension.

    Args:
        filename: Name of the uploaded file

    Returns:
        bool: True if extension is allowed, False otherwise
    """
    allowed_extensions = current_app.config.get(
        'ALLOWED_EXTENSIONS',
        {'png', 'jpg', 'jpeg', 'webp'}
    )
    return '.' in filename and \
           filename.rsplit('.', 1)[1].lower() in allowed_extensions


def generate_unique_filename(original_filename: str) -> str:
    """
    Generate a unique filename with timestamp and random suffix.

    Args:
        original_filename: Original filename with extension

    Returns:
        str: Unique filename
    """
    # Get file extension
    ext = original_filename.rsplit('.', 1)[1].lower() if '.' in original_filename else 'jpg'
    ext = re.sub(r'[^a-z0-9]', '', ext) or 'jpg'

    # Generate unique name
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    random_suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=12))

    return f"{timestamp}_{random_suffix}.{ext}"


def generate_request_id() -> str:
    """Server-side idempotency token for requests that did not bring one."""
    return uuid.uuid4().hex


# =============================================================================
# Response Helpers
# =============================================================================

def success_response(data=None, message=None, status_code=200):
    """
    Create a standardized success response.

    Args:
        data: Response data (dict or list)
        message: Success message
        status_code: HTTP status code (default 200)

    Returns:
        tuple: (response, status_code)
    """
    response = {
        'success': True,
        'status': 'success'
    }

    if data is not None:
        response['data'] = data
    if message:
        response['message'] = message

    return jsonify(response), status_code


def error_response(error, details=None, status_code=400):
    """
    Create a standardized error response.

    Args:
        error: Error message
        details: Additional error details
        status_code: HTTP status code (default 400)

    Returns:
        tuple: (response, status_code)
    """
    response = {
        'success': False,
        'status': 'error',
        'error': error
    }

    if details:
        response['details'] = details

    return jsonify(response), status_code


def get_services(app=None):
    """Prediction services built at startup (see app.init_prediction_services)."""
    app = app or current_app
    return app.config['PREDICTION_SERVICES']
