"""
Health check endpoints for the lab server.

Provides Kubernetes-compatible liveness and readiness probes.
"""

import os
import logging
from datetime import datetime, timezone
from flask import Blueprint, jsonify

from server.lifecycle import is_shutting_down
from server.shared import get_lab_manager

logger = logging.getLogger(__name__)

# Create blueprint
health_bp = Blueprint('health', __name__)


# =============================================================================
# Liveness Probe
# =============================================================================

@health_bp.route('/healthz')
def liveness():
    """
    Liveness probe - is the process running?

    Used by Kubernetes to determine if container should be restarted.
    """
    return jsonify({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "easylab-server",
        "version": os.getenv("APP_VERSION", "0.1.0"),
    })


# =============================================================================
# Readiness Probe
# =============================================================================

@health_bp.route('/readyz')
def readiness():
    """
    Readiness probe - is the service ready to accept jobs?

    Not ready until persisted jobs have been recovered, and again once
    shutdown has begun. Jobs left over from a previous run are reported
    but do not block readiness.
    """
    lab_manager = get_lab_manager()
    executor = lab_manager.executor

    recovered = lab_manager.ready
    accepting = not (executor.shutting_down or is_shutting_down())
    interrupted = [job.id for job in lab_manager.interrupted_jobs()]

    checks = {
        "jobs_recovered": {"healthy": recovered, "message": "loaded" if recovered else "loading"},
        "executor": {"healthy": accepting, "message": "accepting" if accepting else "shutting down"},
    }

    if recovered and accepting:
        status = "ok"
        http_status = 200
    else:
        status = "unavailable"
        http_status = 503

    return jsonify({
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "active_jobs": executor.active_job_ids(),
        "interrupted_jobs": interrupted,
        "stats": lab_manager.store.get_stats(),
    }), http_status
