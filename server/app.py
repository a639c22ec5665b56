"""
Flask Application Factory.

Creates and configures the Flask app with the lab service and blueprints.
"""

import uuid
import time
import logging

from flask import Flask, jsonify, request, g
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)

# Uploaded templates are small Terraform archives
MAX_UPLOAD_BYTES = 50 * 1024 * 1024


def create_app(config=None, lab_manager=None):
    """Create and configure the Flask application.

    Args:
        config: Optional dict of config overrides (e.g. {'TESTING': True}).
        lab_manager: LabManager to serve; built from settings when omitted.

    Returns:
        Configured Flask app instance.
    """
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = MAX_UPLOAD_BYTES

    if config:
        app.config.update(config)

    # Configure logging (tests keep pytest's handlers)
    if not app.config.get('TESTING'):
        from server.logging_config import configure_logging
        configure_logging(app)

    # Register custom error handlers for APIError hierarchy
    from core.errors import register_error_handlers
    register_error_handlers(app)

    if lab_manager is None:
        from config.settings import get_settings
        from core.jobs.labs import LabManager
        lab_manager = LabManager.from_settings(get_settings())
    app.extensions['lab_manager'] = lab_manager

    # Register blueprints
    _register_blueprints(app)

    # Register middleware
    _register_middleware(app)

    # Register global error handlers
    _register_error_handlers(app)

    return app


def _register_blueprints(app):
    """Register all route blueprints."""
    from server.routes import health_bp, labs_bp, jobs_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(labs_bp)
    app.register_blueprint(jobs_bp)


def _register_middleware(app):
    """Register request tracking middleware."""
    from server.lifecycle import increment_active_requests, decrement_active_requests

    @app.before_request
    def before_request_tracking():
        """Track request start and assign request ID."""
        increment_active_requests()
        g.request_id = request.headers.get('X-Request-ID', str(uuid.uuid4())[:8])
        g.start_time = time.time()

    @app.after_request
    def after_request_tracking(response):
        """Log request completion with timing."""
        decrement_active_requests()

        duration_ms = 0
        if hasattr(g, 'start_time'):
            duration_ms = (time.time() - g.start_time) * 1000

        if hasattr(g, 'request_id'):
            response.headers['X-Request-ID'] = g.request_id

        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        # Job polling and probes are high-volume
        if request.path in ['/healthz', '/readyz'] or (
            request.method == 'GET' and request.path.startswith('/api/jobs')
            and response.status_code < 400
        ):
            log_level = logging.DEBUG

        logger.log(
            log_level,
            f"{request.method} {request.path} -> {response.status_code} ({duration_ms:.1f}ms)",
            extra={
                'request_id': getattr(g, 'request_id', 'unknown'),
                'method': request.method,
                'endpoint': request.path,
                'status_code': response.status_code,
                'duration_ms': round(duration_ms, 2),
                'remote_addr': request.remote_addr,
            }
        )

        response.headers['X-Content-Type-Options'] = 'nosniff'
        return response


def _register_error_handlers(app):
    """Register global exception handler."""

    @app.errorhandler(Exception)
    def handle_exception(e):
        if isinstance(e, HTTPException):
            return jsonify({
                'error': e.description,
                'request_id': getattr(g, 'request_id', 'unknown'),
            }), e.code

        logger.exception(
            f"Unhandled exception: {str(e)}",
            extra={
                'request_id': getattr(g, 'request_id', 'unknown'),
                'method': request.method,
                'endpoint': request.path,
                'remote_addr': request.remote_addr,
            }
        )
        return jsonify({
            'error': 'Internal server error',
            'request_id': getattr(g, 'request_id', 'unknown'),
        }), 500
