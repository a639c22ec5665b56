"""
Shared utilities for server routes.

Kept separate from the blueprints so they can import these helpers
without circular imports.
"""

from typing import Any, Dict, Optional

from flask import current_app

from core.errors import ServiceUnavailableError
from core.timestamps import to_iso

REDACTED = "********"
SECRET_KEY_MARKERS = ("password", "secret", "token", "application_key", "consumer_key")


def get_lab_manager():
    """Return the LabManager bound to the current app."""
    lab_manager = current_app.extensions.get("lab_manager")
    if lab_manager is None:
        raise ServiceUnavailableError("Lab service not initialized")
    return lab_manager


def redact_config(config: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of a config payload with secret-looking values masked."""
    if not isinstance(config, dict):
        return config

    redacted = {}
    for key, value in config.items():
        if isinstance(value, dict):
            redacted[key] = redact_config(value)
        elif any(marker in str(key).lower() for marker in SECRET_KEY_MARKERS) and value:
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted


def serialize_job(job, include_output: bool = True) -> Dict[str, Any]:
    """JSON view of a job for API responses.

    Config secrets are masked and the kubeconfig body is replaced by a flag;
    it is served by the dedicated kubeconfig endpoint.
    """
    artifacts = None
    if job.artifacts is not None:
        artifacts = {k: v for k, v in job.artifacts.items() if k != "kubeconfig"}
        artifacts["kubeconfig_available"] = bool(job.artifacts.get("kubeconfig"))

    data = {
        "id": job.id,
        "status": job.status.value,
        "action": job.action,
        "source_job_id": job.source_job_id,
        "created_at": to_iso(job.created_at),
        "updated_at": to_iso(job.updated_at),
        "config": redact_config(job.config),
        "error": job.error,
        "artifacts": artifacts,
        "output_lines": len(job.output),
    }
    if include_output:
        data["output"] = list(job.output)
    return data
