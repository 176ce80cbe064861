# =============================================================================
# CoffeeLeaf Backend
# app.py - Application Factory & Entry Point
#
# Flask application factory pattern implementation with extension initialization,
# blueprint registration, error handlers, and prediction service wiring.
# =============================================================================

import os
import atexit
import logging
from flask import Flask, jsonify

from . import __version__
from .config import get_config
from .extensions import db, migrate, cors, limiter
from .logger_config import setup_logger
from .services.health import overall_healthy, summarize


def create_app(config_name=None, config_overrides=None, session_loader=None):
    """
    Application factory function.

    Creates and configures the Flask application with all extensions,
    blueprints, error handlers and prediction services.

    Args:
        config_name: Configuration environment ('development', 'testing', 'production')
                    Defaults to FLASK_ENV environment variable or 'development'
        config_overrides: Optional mapping applied on top of the config class
        session_loader: Optional model session loader passed to the engines

    Returns:
        Flask: Configured Flask application instance
    """
    # Determine configuration
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Create Flask app instance
    app = Flask(__name__)

    # Load configuration
    app.config.from_object(get_config(config_name))
    if config_overrides:
        app.config.update(config_overrides)

    # Setup logging
    setup_logging(app)

    # Initialize extensions
    init_extensions(app)

    # Register blueprints
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Setup database session handling
    setup_database_handlers(app)

    # Build the prediction pipeline once per process
    with app.app_context():
        init_prediction_services(app, session_loader)

    app.logger.info(f"CoffeeLeaf API started in {config_name} mode")

    return app


def setup_logging(app):
    """
    Configure application logging.

    Sets up logging format, level, and handlers based on environment.
    A rotating file handler is added for the package when LOG_DIR is set.
    """
    log_level = logging.DEBUG if app.config['DEBUG'] else logging.INFO

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if app.config.get('LOG_DIR'):
        setup_logger('coffeeleaf', level=log_level, log_dir=app.config['LOG_DIR'],
                     log_file='api.log')

    # Set Flask app logger level
    app.logger.setLevel(log_level)


def init_extensions(app):
    """
    Initialize Flask extensions with the application instance.

    Extensions are created in extensions.py without app context,
    then initialized here with the app instance.
    """
    # Database ORM
    db.init_app(app)

    # Database migrations
    migrate.init_app(app, db)

    # CORS - Cross Origin Resource Sharing
    cors.init_app(
        app,
        origins=app.config.get('CORS_ORIGINS', ['http://localhost:5173']),
        supports_credentials=app.config.get('CORS_SUPPORTS_CREDENTIALS', True),
        allow_headers=['Content-Type'],
        methods=['GET', 'POST', 'DELETE', 'OPTIONS']
    )

    # Rate limiting
    limiter.init_app(app)

    app.logger.info("Flask extensions initialized")


def register_blueprints(app):
    """
    Register all API route blueprints.

    All API routes are prefixed with '/api'.
    """
    from .routes import predict_bp, models_bp

    app.register_blueprint(predict_bp, url_prefix='/api/predict')
    app.register_blueprint(models_bp, url_prefix='/api/models')

    # Health check endpoint at root level
    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """
        Health check endpoint for monitoring and load balancers.

        Returns:
            JSON response with one entry per component; 503 when a
            critical component (the database) is down
        """
        services = app.config.get('PREDICTION_SERVICES')
        statuses = services.health_checks() if services else []
        healthy = overall_healthy(statuses) and services is not None

        return jsonify({
            'status': summarize(statuses) if services else 'unhealthy',
            'message': 'CoffeeLeaf API is running',
            'version': __version__,
            'model_loaded': app.config.get('MODEL_LOADED', False),
            'components': [status.to_dict() for status in statuses]
        }), 200 if healthy else 503

    # Root endpoint
    @app.route('/', methods=['GET'])
    def index():
        """Root endpoint with API information."""
        return jsonify({
            'name': 'CoffeeLeaf API',
            'description': 'Coffee Leaf Disease Prediction Service',
            'version': __version__,
            'health': '/health'
        })

    app.logger.info("Blueprints registered")


def register_error_handlers(app):
    """
    Register global error handlers for common HTTP errors.

    Provides consistent JSON error responses across the API.
    """

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'success': False,
            'error': 'Bad Request',
            'message': str(error.description) if hasattr(error, 'description') else 'Invalid request'
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'Not Found',
            'message': 'The requested resource was not found'
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'success': False,
            'error': 'Method Not Allowed',
            'message': 'The method is not allowed for this endpoint'
        }), 405

    @app.errorhandler(413)
    def request_entity_too_large(error):
        return jsonify({
            'success': False,
            'error': 'File Too Large',
            'message': 'The uploaded file exceeds the maximum allowed size'
        }), 413

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        return jsonify({
            'success': False,
            'error': 'Rate Limit Exceeded',
            'message': 'Too many requests. Please try again later.'
        }), 429

    @app.errorhandler(500)
    def internal_server_error(error):
        db.session.rollback()
        app.logger.error(f"Internal server error: {error}")
        return jsonify({
            'success': False,
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred. Please try again later.'
        }), 500

    app.logger.info("Error handlers registered")


def setup_database_handlers(app):
    """
    Setup database session handling for request lifecycle.

    Rolls back on exceptions and removes the session at the end of
    every application context.
    """

    @app.teardown_appcontext
    def shutdown_session(exception=None):
        """Remove database session at the end of request context."""
        if exception:
            db.session.rollback()
        db.session.remove()


def init_prediction_services(app, session_loader=None):
    """
    Create tables and build the prediction services.

    A missing model leaves the pipeline in mock mode; the API still
    answers every request.
    """
    from .services.providers import build_services

    db.create_all()

    services = build_services(app.config, session_loader=session_loader)
    app.config['PREDICTION_SERVICES'] = services
    app.config['MODEL_LOADED'] = services.image_engine.is_loaded()

    if services.image_engine.is_loaded():
        app.logger.info("Image model loaded successfully")
    else:
        app.logger.warning("Image model not loaded - using smart mock predictions")

    if not app.config.get('TESTING'):
        atexit.register(services.shutdown)


# =============================================================================
# Application Entry Point
# =============================================================================

if __name__ == '__main__':
    app = create_app()

    # Get port from environment or default to 5000
    port = int(os.getenv('PORT', 5000))

    # Run the development server
    app.run(
        host='0.0.0.0',
        port=port,
        debug=app.config['DEBUG']
    )
