"""
Per-job working directories.

Each job gets <work_dir>/<job_id>. Directory names come only from job ids,
never from user-supplied names, so concurrently created jobs never collide.
"""

import logging
import re
import shutil
import zipfile
from pathlib import Path
from typing import Union

from core.errors import ValidationError

logger = logging.getLogger(__name__)

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

TEMPLATE_ARCHIVE = "template.zip"
ALLOWED_TEMPLATE_SUFFIXES = (".zip", ".tf")


class WorkspaceManager:
    """
    Allocates and reclaims job workspaces under a root directory.

    Usage:
        workspaces = WorkspaceManager("/tmp/easylab-jobs")
        path = workspaces.allocate(job_id)
        workspaces.write_template(job_id, "main.tf", data)
        workspaces.reclaim(job_id)
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, job_id: str) -> Path:
        """Workspace path for a job (not created)."""
        if not job_id or not _JOB_ID_RE.match(job_id):
            raise ValidationError(f"Invalid job id for workspace: {job_id!r}")
        return self.root / job_id

    def exists(self, job_id: str) -> bool:
        return self.path_for(job_id).is_dir()

    def allocate(self, job_id: str) -> Path:
        """Create the job's workspace if absent. Idempotent."""
        path = self.path_for(job_id)
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"[{job_id}] Workspace ready at {path}", extra={"job_id": job_id})
        return path

    def reclaim(self, job_id: str) -> bool:
        """
        Remove the job's workspace tree. Idempotent.

        Returns:
            True if a directory was removed
        """
        path = self.path_for(job_id)
        if not path.exists():
            return False
        shutil.rmtree(path)
        logger.info(f"[{job_id}] Reclaimed workspace {path}", extra={"job_id": job_id})
        return True

    def write_template(self, job_id: str, filename: str, data: bytes) -> str:
        """
        Store an uploaded Coder template in the job's workspace.

        A .zip is stored as template.zip. A single .tf file is zipped into
        template.zip so the program always receives an archive.

        Returns:
            Archive path relative to the workspace

        Raises:
            ValidationError: unsupported file type
        """
        suffix = Path(filename or "").suffix.lower()
        if suffix not in ALLOWED_TEMPLATE_SUFFIXES:
            raise ValidationError("Invalid file type: only .zip and .tf files are allowed")

        workspace = self.allocate(job_id)
        archive = workspace / TEMPLATE_ARCHIVE

        if suffix == ".zip":
            archive.write_bytes(data)
        else:
            with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.writestr("main.tf", data)

        logger.info(
            f"[{job_id}] Stored template {filename} as {TEMPLATE_ARCHIVE}",
            extra={"job_id": job_id},
        )
        return TEMPLATE_ARCHIVE
