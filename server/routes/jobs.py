"""
Job API Routes.

Read-only job views for polling progress, kubeconfig download, and job
removal.
"""

import logging

from flask import Blueprint, Response, jsonify, request

from core.errors import safe_error_response, ValidationError
from core.jobs.state import ACTIONS, JobStatus
from server.shared import get_lab_manager, serialize_job

logger = logging.getLogger(__name__)

jobs_bp = Blueprint("jobs", __name__)


def _int_arg(name: str, minimum: int = 0):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    return value


@jobs_bp.route("/api/jobs")
def list_jobs():
    """
    List jobs, newest first.

    Query params:
        status: pending, running, completed or failed
        action: up, preview or destroy
        limit: maximum number of jobs
    """
    try:
        status = request.args.get("status")
        action = request.args.get("action")
        limit = _int_arg("limit", minimum=1)

        if status:
            try:
                status = JobStatus(status)
            except ValueError:
                raise ValidationError(f"Invalid status: {status}")
        else:
            status = None

        if action and action not in ACTIONS:
            raise ValidationError(f"Invalid action: {action}")

        jobs = get_lab_manager().list_jobs(status=status, action=action or None, limit=limit)
        return jsonify({
            "jobs": [serialize_job(job, include_output=False) for job in jobs],
            "count": len(jobs),
        })
    except Exception as e:
        return safe_error_response(e, "list jobs")


@jobs_bp.route("/api/jobs/<job_id>")
def get_job(job_id):
    """
    Get a job with its output.

    `since=N` returns only output lines from index N on, for incremental
    polling.
    """
    try:
        job = get_lab_manager().get_job(job_id)
        since = _int_arg("since") or 0

        data = serialize_job(job)
        data["output"] = data["output"][since:]
        data["output_offset"] = min(since, len(job.output))
        return jsonify(data)
    except Exception as e:
        return safe_error_response(e, "get job")


@jobs_bp.route("/api/jobs/<job_id>/kubeconfig")
def download_kubeconfig(job_id):
    """Download the kubeconfig of a completed lab."""
    try:
        kubeconfig = get_lab_manager().get_kubeconfig(job_id)
        return Response(
            kubeconfig,
            mimetype="application/x-yaml",
            headers={"Content-Disposition": f"attachment; filename=kubeconfig-{job_id}.yaml"},
        )
    except Exception as e:
        return safe_error_response(e, "download kubeconfig")


@jobs_bp.route("/api/jobs/<job_id>", methods=["DELETE"])
def delete_job(job_id):
    """Remove a finished job, its file and its workspace."""
    try:
        removed = get_lab_manager().remove_lab(job_id)
        return jsonify({"job_id": job_id, "removed": removed})
    except Exception as e:
        return safe_error_response(e, "delete job")
