"""
Lab service.

Ties the job store, executor and workspaces together into the operations
the HTTP layer exposes: create, dry run, recreate, destroy, remove, and
startup recovery. A successful dry run can be launched as a real lab.
"""

import copy
import logging
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from core.errors import (
    ConflictError,
    JobNotFoundError,
    NotFoundError,
    PersistenceError,
    ServiceUnavailableError,
    ValidationError,
)
from core.credentials import InMemoryCredentialProvider
from core.jobs.executor import JobExecutor
from core.jobs.persistence import JobPersistence
from core.jobs.programs import PulumiProgram
from core.jobs.runner import ProcessRunner
from core.jobs.state import ACTIONS, Job, JobStatus, JobStore
from core.jobs.workspace import ALLOWED_TEMPLATE_SUFFIXES, TEMPLATE_ARCHIVE, WorkspaceManager

logger = logging.getLogger(__name__)

INTERRUPTED_JOB_POLICIES = ("leave", "fail")
INTERRUPTED_ERROR = "interrupted by server restart"


class LabManager:
    """
    Lab lifecycle operations on top of the job subsystem.

    Usage:
        labs = LabManager(store, executor, workspaces)
        labs.recover_jobs()

        job_id = labs.create_lab({"stack_name": "team-a"})
        preview_id = labs.create_lab(config, action="preview")
        new_id = labs.recreate_lab(job_id)
        launched_id = labs.launch_lab(preview_id)
        destroy_id = labs.destroy_lab(job_id)
        labs.remove_lab(job_id)
    """

    def __init__(
        self,
        store: JobStore,
        executor: JobExecutor,
        workspaces: WorkspaceManager,
        interrupted_job_policy: str = "leave",
    ):
        if interrupted_job_policy not in INTERRUPTED_JOB_POLICIES:
            raise ValueError(f"Unknown interrupted job policy: {interrupted_job_policy}")
        self.store = store
        self.executor = executor
        self.workspaces = workspaces
        self.interrupted_job_policy = interrupted_job_policy
        self._ready = threading.Event()

    @classmethod
    def from_settings(cls, settings, credentials=None) -> "LabManager":
        """
        Wire the full job subsystem from AppSettings.

        Nothing is loaded from disk here; call recover_jobs() afterwards.
        """
        jobs = settings.jobs
        store = JobStore(persistence=JobPersistence(jobs.data_dir))
        workspaces = WorkspaceManager(jobs.work_dir)
        runner = ProcessRunner()
        program = PulumiProgram.from_settings(settings.pulumi, runner=runner)
        if credentials is None:
            credentials = InMemoryCredentialProvider.from_settings(settings)

        executor = JobExecutor(store, workspaces, program, credentials=credentials, runner=runner)
        return cls(store, executor, workspaces, interrupted_job_policy=jobs.interrupted_job_policy)

    @property
    def ready(self) -> bool:
        """True once persisted jobs have been recovered."""
        return self._ready.is_set()

    # =========================================================================
    # Launching
    # =========================================================================

    def _launch(self, job_id: str) -> None:
        """Hand a pending job to the executor; fail it if that is refused."""
        try:
            self.executor.run(job_id)
        except ServiceUnavailableError as e:
            self.store.set_error(job_id, str(e))
            self._save_quietly(job_id)
            raise

    def _save_quietly(self, job_id: str) -> None:
        try:
            self.store.save_job(job_id)
        except PersistenceError as e:
            logger.error(f"[{job_id}] Failed to persist job: {e}", extra={"job_id": job_id})

    def create_lab(
        self,
        config: Optional[Dict[str, Any]],
        action: str = "up",
        template: Optional[Tuple[str, bytes]] = None,
        source_job_id: Optional[str] = None,
    ) -> str:
        """
        Create a job and start it in the background.

        Args:
            config: Lab configuration payload
            action: "up", "preview" or "destroy"
            template: Optional uploaded Coder template as (filename, data)
            source_job_id: Job this one was derived from

        Returns:
            New job id

        Raises:
            ValidationError: bad action, config or template
        """
        if action not in ACTIONS:
            raise ValidationError(f"Unknown action: {action}")
        if config is not None and not isinstance(config, dict):
            raise ValidationError("Lab config must be a JSON object")
        if action == "destroy" and not (config or {}).get("stack_name"):
            raise ValidationError("stack_name is required to destroy a lab")

        if template is not None:
            filename, _ = template
            if Path(filename or "").suffix.lower() not in ALLOWED_TEMPLATE_SUFFIXES:
                raise ValidationError("Invalid file type: only .zip and .tf files are allowed")
            config = copy.deepcopy(config) if config is not None else {}
            config.setdefault("template_source", "upload")

        job_id = self.store.create_job(config, action=action, source_job_id=source_job_id)

        if template is not None:
            filename, data = template
            try:
                self.workspaces.write_template(job_id, filename, data)
            except OSError as e:
                self.store.set_error(job_id, f"failed to store template: {e}")
                self._save_quietly(job_id)
                raise

        self._launch(job_id)
        return job_id

    def _require_job(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _require_finished(self, job: Job) -> None:
        if self.executor.is_job_running(job.id) or not job.status.is_terminal:
            raise ConflictError(f"Job {job.id} is still in progress")

    def _derive_up_job(self, source: Job) -> str:
        """Create a pending up job from source, carrying its uploaded template."""
        new_id = self.store.create_job(source.config, action="up", source_job_id=source.id)

        source_template = self.workspaces.path_for(source.id) / TEMPLATE_ARCHIVE
        if source_template.is_file():
            target = self.workspaces.allocate(new_id) / TEMPLATE_ARCHIVE
            shutil.copy2(source_template, target)
        return new_id

    def recreate_lab(self, job_id: str) -> str:
        """
        Start a new up job with the config of a finished job.

        An uploaded template is carried over to the new workspace.
        """
        source = self._require_job(job_id)
        self._require_finished(source)

        new_id = self._derive_up_job(source)
        logger.info(f"[{new_id}] Recreating lab from {job_id}", extra={"job_id": new_id})
        self._launch(new_id)
        return new_id

    def launch_lab(self, job_id: str) -> str:
        """
        Provision a lab from a successful dry run.

        Raises:
            JobNotFoundError: unknown job id
            ConflictError: the preview has not completed successfully
            ValidationError: the source job is not a preview
        """
        source = self._require_job(job_id)
        if source.action != "preview":
            raise ValidationError(f"Job {job_id} is not a dry run")
        self._require_finished(source)
        if source.status != JobStatus.COMPLETED:
            raise ConflictError(f"Dry run {job_id} did not complete successfully")

        new_id = self._derive_up_job(source)
        logger.info(f"[{new_id}] Launching lab from dry run {job_id}", extra={"job_id": new_id})
        self._launch(new_id)
        return new_id

    def destroy_lab(self, job_id: str) -> str:
        """
        Start a destroy job for the stack another job created.

        Raises:
            JobNotFoundError: unknown job id
            ConflictError: the source job has not finished
            ValidationError: the source job has no stack name
        """
        source = self._require_job(job_id)
        self._require_finished(source)
        return self.create_lab(source.config, action="destroy", source_job_id=job_id)

    def remove_lab(self, job_id: str) -> bool:
        """
        Delete a job record, its file and its workspace.

        Returns:
            True if a record existed

        Raises:
            ConflictError: the job is still executing
        """
        if self.executor.is_job_running(job_id):
            raise ConflictError(f"Job {job_id} is still executing")

        existed = self.store.remove_job(job_id)
        self.workspaces.reclaim(job_id)
        return existed

    # =========================================================================
    # Reads
    # =========================================================================

    def get_job(self, job_id: str) -> Job:
        return self._require_job(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, action: Optional[str] = None,
                  limit: Optional[int] = None) -> List[Job]:
        return self.store.list_jobs(status=status, action=action, limit=limit)

    def get_kubeconfig(self, job_id: str) -> str:
        job = self._require_job(job_id)
        kubeconfig = (job.artifacts or {}).get("kubeconfig")
        if job.status != JobStatus.COMPLETED or not kubeconfig:
            raise NotFoundError(f"Kubeconfig not available for job {job_id}")
        return kubeconfig

    def interrupted_jobs(self) -> List[Job]:
        return self.store.get_interrupted_jobs(executing=set(self.executor.active_job_ids()))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def recover_jobs(self) -> Dict[str, Any]:
        """
        Load persisted jobs and apply the interrupted-job policy.

        Jobs found pending or running have no live execution behind them.
        With "leave" they are only reported; with "fail" they are marked
        failed and saved.

        Returns:
            {"loaded": count, "interrupted": [job ids]}
        """
        loaded = self.store.load_jobs()
        interrupted = self.interrupted_jobs()

        for job in interrupted:
            logger.warning(
                f"[{job.id}] Found {job.status.value} job from a previous run",
                extra={"job_id": job.id},
            )
            if self.interrupted_job_policy == "fail":
                try:
                    self.store.set_error(job.id, INTERRUPTED_ERROR)
                except (JobNotFoundError, ConflictError) as e:
                    logger.warning(f"[{job.id}] Could not mark interrupted job: {e}")
                    continue
                self._save_quietly(job.id)

        self._ready.set()
        logger.info(f"Recovered {loaded} job(s), {len(interrupted)} interrupted")
        return {"loaded": loaded, "interrupted": [j.id for j in interrupted]}

    def shutdown(self, grace_period: float = 30.0) -> List[str]:
        return self.executor.shutdown(grace_period)
