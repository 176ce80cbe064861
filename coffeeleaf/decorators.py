# =============================================================================
# CoffeeLeaf Backend
# decorators.py - Reusable Decorators
#
# Custom decorators for upload validation, database error handling and
# request logging shared by the API blueprints.
# =============================================================================

from functools import wraps
from flask import request, current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from .extensions import db
from .utils import error_response


def handle_db_errors(f):
    """
    Handle common database errors and return appropriate responses.

    Catches IntegrityError, OperationalError, and other SQLAlchemy errors.
    Automatically rolls back the session on error.

    Usage:
        @predict_bp.route('/async', methods=['POST'])
        @handle_db_errors
        def submit_async():
            ...
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)

        except IntegrityError as e:
            db.session.rollback()
            current_app.logger.error(f"Database integrity error: {e}")

            error_msg = str(e.orig).lower()
            if 'unique' in error_msg or 'duplicate' in error_msg:
                return error_response(
                    'A record with this value already exists',
                    details={'type': 'duplicate_entry'},
                    status_code=409
                )
            return error_response(
                'Database constraint violation',
                details={'type': 'integrity_error'},
                status_code=400
            )

        except OperationalError as e:
            db.session.rollback()
            current_app.logger.error(f"Database operational error: {e}")
            return error_response(
                'Database is temporarily unavailable',
                details={'type': 'database_error'},
                status_code=503
            )

        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Unexpected database error: {e}")
            return error_response(
                'An unexpected database error occurred',
                details={'type': 'internal_error'},
                status_code=500
            )

    return decorated_function


def validate_file_upload(required=True, allowed_extensions=None):
    """
    Validate a single image upload in the request.

    Checks for file presence and extension. Size is enforced by Flask
    through MAX_CONTENT_LENGTH. Passes the file object to the decorated
    function as ``file``.

    Args:
        required: Whether file upload is required
        allowed_extensions: Set of allowed file extensions (uses config if None)

    Usage:
        @predict_bp.route('/', methods=['POST'])
        @validate_file_upload()
        def predict(file):
            ...
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Get file (try both common field names)
            file = request.files.get('image') or request.files.get('file')

            if file is None or file.filename == '':
                if required:
                    return error_response(
                        'No image file provided',
                        details={'field': 'image'},
                        status_code=400
                    )
                kwargs['file'] = None
                return f(*args, **kwargs)

            extensions = allowed_extensions or current_app.config.get(
                'ALLOWED_EXTENSIONS',
                {'png', 'jpg', 'jpeg', 'webp'}
            )

            if not ('.' in file.filename and
                    file.filename.rsplit('.', 1)[1].lower() in extensions):
                return error_response(
                    'Invalid file type',
                    details={'allowed': sorted(extensions)},
                    status_code=400
                )

            kwargs['file'] = file
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def log_request(f):
    """
    Log incoming request details for debugging and monitoring.

    Logs method, path, remote address, and response status code.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        current_app.logger.info(
            f"Request: {request.method} {request.path} "
            f"from {request.remote_addr}"
        )

        response = f(*args, **kwargs)

        if isinstance(response, tuple):
            status_code = response[1] if len(response) > 1 else 200
        else:
            status_code = getattr(response, 'status_code', 200)

        current_app.logger.info(
            f"Response: {status_code} for {request.method} {request.path}"
        )

        return response
    return decorated_function
