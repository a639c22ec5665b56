"""
Centralized error handling for the lab job API.

Error Hierarchy:
- APIError (4xx): Expected errors with messages safe to expose to clients
    - JobNotFoundError: operation referenced an unknown job id
    - InvalidTransitionError: status mutation on a terminal job
    - JobAlreadyRunningError: a second execution requested for a live job
- InternalError (5xx): Unexpected errors - never expose internal details
    - PersistenceError: job file could not be written/removed
    - ExecutionError: provisioning program failed (recorded into the job)

Usage:
    from core.errors import safe_error_response, JobNotFoundError

    # For expected errors (4xx) - raise with safe message
    raise JobNotFoundError(job_id)

    # For unexpected errors (5xx) - use safe_error_response
    except Exception as e:
        return safe_error_response(e, "create lab")
"""

import logging
import uuid
from flask import jsonify
from typing import Tuple, Any

logger = logging.getLogger(__name__)


# =============================================================================
# Exception Classes (4xx - Expected Errors)
# =============================================================================

class APIError(Exception):
    """
    Base class for expected API errors (4xx status codes).
    Messages are safe to expose to clients.
    """
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(APIError):
    """Resource not found (404)."""
    status_code = 404


class ValidationError(APIError):
    """Request validation failed (400)."""
    status_code = 400


class ConflictError(APIError):
    """Resource conflict (409)."""
    status_code = 409


class ServiceUnavailableError(APIError):
    """Service temporarily unavailable (503)."""
    status_code = 503


class JobNotFoundError(NotFoundError):
    """Operation referenced a job id the store does not know."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(ConflictError):
    """Status or output mutation attempted that the job lifecycle forbids."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {requested}"
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobAlreadyRunningError(InvalidTransitionError):
    """The orchestrator already has a live execution for this job."""

    def __init__(self, job_id: str):
        super().__init__(job_id, "running", "running")
        self.args = (f"Job {job_id} is already executing",)


# =============================================================================
# Internal Error (5xx - Never Expose)
# =============================================================================

class InternalError(Exception):
    """
    Unexpected internal errors (5xx status codes).
    Message should NEVER be exposed to clients.
    """
    pass


class PersistenceError(InternalError):
    """Disk I/O failure while saving, loading or removing a job file."""

    def __init__(self, message: str, job_id: str = None):
        super().__init__(message)
        self.job_id = job_id


class ExecutionError(InternalError):
    """
    Provisioning program failure.

    Raised inside the orchestrator thread and recorded into the job's
    error field; it never reaches an HTTP caller.
    """

    def __init__(self, message: str, returncode: int = None):
        super().__init__(message)
        self.returncode = returncode


# =============================================================================
# Safe Error Response Helper
# =============================================================================

def safe_error_response(
    e: Exception,
    operation: str,
    include_error_id: bool = True
) -> Tuple[Any, int]:
    """
    Create a safe error response for API endpoints.

    For APIError subclasses (expected errors):
        - Returns the error message (safe to expose)
        - Uses the exception's status_code
        - Logs at WARNING level

    For all other exceptions (unexpected errors):
        - Returns generic message (never exposes internal details)
        - Returns 500 status code
        - Logs full exception at ERROR level

    Args:
        e: The exception that was caught
        operation: Human-readable description of what failed (e.g., "create lab")
        include_error_id: Whether to include error_id for support reference

    Returns:
        Tuple of (json_response, status_code)
    """
    error_id = str(uuid.uuid4())[:8] if include_error_id else None
    log_extra = {'error_id': error_id} if error_id else {}

    if isinstance(e, APIError):
        logger.warning(f"{operation}: {e}", extra=log_extra)

        response = {"error": str(e)}
        if error_id:
            response["error_id"] = error_id

        return jsonify(response), e.status_code

    logger.exception(f"{operation} failed", extra=log_extra)

    response = {"error": f"{operation} failed"}
    if error_id:
        response["error_id"] = error_id

    return jsonify(response), 500


def register_error_handlers(app):
    """
    Register Flask error handlers for APIError exceptions.

    Call this in the app factory:
        from core.errors import register_error_handlers
        register_error_handlers(app)
    """

    @app.errorhandler(APIError)
    def handle_api_error(e):
        """Handle all APIError subclasses."""
        error_id = str(uuid.uuid4())[:8]
        logger.warning(f"API error: {e}", extra={'error_id': error_id})
        return jsonify({
            "error": str(e),
            "error_id": error_id
        }), e.status_code

    @app.errorhandler(InternalError)
    def handle_internal_error(e):
        """Handle persistence/execution failures that escape a route."""
        error_id = str(uuid.uuid4())[:8]
        logger.exception("Internal server error", extra={'error_id': error_id})
        return jsonify({
            "error": "Internal server error",
            "error_id": error_id
        }), 500
