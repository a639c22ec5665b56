"""
Lab API Routes.

Endpoints to create, dry-run, launch, recreate and destroy labs. Every call
returns 202 with a job id immediately; provisioning runs in the background and is
polled through the jobs endpoints.
"""

import json
import logging

from flask import Blueprint, jsonify, request

from core.errors import safe_error_response, ValidationError
from server.shared import get_lab_manager

logger = logging.getLogger(__name__)

labs_bp = Blueprint("labs", __name__)


def _accepted(job_id: str):
    job = get_lab_manager().get_job(job_id)
    return jsonify({
        "job_id": job_id,
        "status": job.status.value,
        "action": job.action,
        "status_url": f"/api/jobs/{job_id}",
    }), 202


def _parse_lab_request():
    """
    Read a lab config and optional template from the request.

    JSON bodies are the config itself. Multipart forms carry config fields
    (or a JSON `config` field) plus an optional `template_file` upload.

    Returns:
        (config, template) where template is (filename, bytes) or None
    """
    if request.mimetype == "multipart/form-data":
        if "config" in request.form:
            try:
                config = json.loads(request.form["config"])
            except json.JSONDecodeError:
                raise ValidationError("config field is not valid JSON")
        else:
            config = {k: v for k, v in request.form.items()}

        template = None
        upload = request.files.get("template_file")
        if upload is not None and upload.filename:
            template = (upload.filename, upload.read())
        return config, template

    if not request.get_data():
        return None, None

    config = request.get_json(silent=True)
    if config is None:
        raise ValidationError("Request body must be valid JSON")
    return config, None


@labs_bp.route("/api/labs", methods=["POST"])
def create_lab():
    """
    Create a lab (pulumi up) in the background.

    Returns 202 with the new job id.
    """
    try:
        config, template = _parse_lab_request()
        job_id = get_lab_manager().create_lab(config, action="up", template=template)
        return _accepted(job_id)
    except Exception as e:
        return safe_error_response(e, "create lab")


@labs_bp.route("/api/labs/dry-run", methods=["POST"])
def dry_run_lab():
    """Preview a lab (pulumi preview) without changing infrastructure."""
    try:
        config, template = _parse_lab_request()
        job_id = get_lab_manager().create_lab(config, action="preview", template=template)
        return _accepted(job_id)
    except Exception as e:
        return safe_error_response(e, "dry-run lab")


@labs_bp.route("/api/labs/<job_id>/recreate", methods=["POST"])
def recreate_lab(job_id):
    """Start a new lab from a finished job's configuration."""
    try:
        new_id = get_lab_manager().recreate_lab(job_id)
        return _accepted(new_id)
    except Exception as e:
        return safe_error_response(e, "recreate lab")


@labs_bp.route("/api/labs/<job_id>/destroy", methods=["POST"])
def destroy_lab(job_id):
    """Tear down the stack a finished job created."""
    try:
        new_id = get_lab_manager().destroy_lab(job_id)
        return _accepted(new_id)
    except Exception as e:
        return safe_error_response(e, "destroy lab")


@labs_bp.route("/api/labs/<job_id>/launch", methods=["POST"])
def launch_lab(job_id):
    """Provision the lab a successful dry run previewed."""
    try:
        new_id = get_lab_manager().launch_lab(job_id)
        return _accepted(new_id)
    except Exception as e:
        return safe_error_response(e, "launch lab")
