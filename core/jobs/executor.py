"""
Async lab job execution.

Runs each job's provisioning program in its own background thread,
streaming program output into the job record as it arrives and recording
the outcome (artifacts or error) when the program returns.
"""

import logging
import os
import threading
import time
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.errors import (
    ExecutionError,
    InvalidTransitionError,
    JobAlreadyRunningError,
    JobNotFoundError,
    PersistenceError,
    ServiceUnavailableError,
    ValidationError,
)
from core.jobs.programs import ExecutionContext
from core.jobs.state import JobStatus, JobStore
from core.jobs.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class JobExecutor:
    """
    Executes lab jobs asynchronously.

    At most one execution per job id is live at a time. Store calls never
    happen while holding anything across child-process I/O.

    Usage:
        executor = JobExecutor(store, workspaces, PulumiProgram(runner))
        thread = executor.run(job_id)
        executor.wait(job_id, timeout=600)
        executor.shutdown(grace_period=30)
    """

    def __init__(
        self,
        store: JobStore,
        workspaces: WorkspaceManager,
        program,
        credentials=None,
        base_env: Optional[Dict[str, str]] = None,
        runner=None,
    ):
        """
        Initialize executor.

        Args:
            store: Job record store
            workspaces: Workspace manager for per-job directories
            program: Object with execute(ExecutionContext) -> artifacts
            credentials: Optional CredentialProvider merged into the environment
            base_env: Base environment (defaults to os.environ at launch time)
            runner: ProcessRunner to terminate on shutdown (defaults to program.runner)
        """
        self.store = store
        self.workspaces = workspaces
        self.program = program
        self.credentials = credentials
        self.base_env = base_env
        self.runner = runner if runner is not None else getattr(program, "runner", None)
        self._active_threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._shutting_down = threading.Event()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down.is_set()

    def run(
        self,
        job_id: str,
        config: Optional[Dict[str, Any]] = None,
        work_dir=None,
        input_files: Optional[Dict[str, bytes]] = None,
    ) -> threading.Thread:
        """
        Start executing a pending job in the background.

        Validation and the move to running happen before returning, so a
        caller sees those errors directly.

        Args:
            job_id: Job to execute
            config: Config override (defaults to the job's stored config)
            work_dir: Workspace override (defaults to the managed workspace)
            input_files: Extra files (name -> bytes) written into the workspace

        Raises:
            JobNotFoundError: unknown job id
            JobAlreadyRunningError: job already has a live execution
            InvalidTransitionError: job is not pending
            ServiceUnavailableError: executor is shutting down
        """
        if self._shutting_down.is_set():
            raise ServiceUnavailableError("Server is shutting down")

        with self._lock:
            current = self._active_threads.get(job_id)
            if current is not None and current.is_alive():
                raise JobAlreadyRunningError(job_id)

            job = self.store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            self.store.update_status(job_id, JobStatus.RUNNING)

            thread = threading.Thread(
                target=self._execute,
                args=(
                    job_id,
                    job.action,
                    config if config is not None else job.config,
                    work_dir,
                    dict(input_files or {}),
                ),
                name=f"lab-{job_id}",
                daemon=True,
            )
            self._active_threads[job_id] = thread

        thread.start()
        return thread

    # =========================================================================
    # Background execution
    # =========================================================================

    def _emit(self, job_id: str, line: str) -> None:
        self.store.append_output(job_id, line)

    def _save(self, job_id: str) -> None:
        try:
            self.store.save_job(job_id)
        except JobNotFoundError:
            pass
        except PersistenceError as e:
            logger.error(f"[{job_id}] Failed to persist job: {e}", extra={"job_id": job_id})

    def _build_env(self, config: Optional[Dict[str, Any]]) -> Dict[str, str]:
        env = dict(self.base_env if self.base_env is not None else os.environ)
        if self.credentials is not None:
            provider = "ovh"
            if isinstance(config, dict) and config.get("provider"):
                provider = str(config["provider"])
            env.update(self.credentials.environment(provider))
        return env

    def _prepare_workspace(
        self,
        job_id: str,
        work_dir,
        input_files: Dict[str, bytes],
    ) -> Path:
        if work_dir is not None:
            workspace = Path(work_dir)
            workspace.mkdir(parents=True, exist_ok=True)
        else:
            workspace = self.workspaces.allocate(job_id)

        for name, data in input_files.items():
            if not name or Path(name).name != name or name in (".", ".."):
                raise ValidationError(f"Invalid input file name: {name!r}")
            (workspace / name).write_bytes(data)

        return workspace

    def _execute(
        self,
        job_id: str,
        action: str,
        config: Optional[Dict[str, Any]],
        work_dir,
        input_files: Dict[str, bytes],
    ) -> None:
        """Run the program for one job and record its outcome."""
        log_prefix = f"[{job_id}]"
        try:
            self._emit(job_id, f"Starting {action} for job {job_id}")
            self._save(job_id)

            workspace = self._prepare_workspace(job_id, work_dir, input_files)
            ctx = ExecutionContext(
                job_id=job_id,
                action=action,
                config=config,
                work_dir=workspace,
                env=self._build_env(config),
                emit=partial(self._emit, job_id),
                cancelled=self._shutting_down.is_set,
            )

            artifacts = self.program.execute(ctx)

            self.store.set_artifact(job_id, artifacts or {})
            self.store.update_status(job_id, JobStatus.COMPLETED)
            logger.info(f"{log_prefix} Lab {action} completed", extra={"job_id": job_id})

        except JobNotFoundError:
            logger.warning(
                f"{log_prefix} Job removed while executing, abandoning",
                extra={"job_id": job_id},
            )

        except Exception as e:
            if self._shutting_down.is_set():
                logger.warning(
                    f"{log_prefix} Interrupted by shutdown, leaving job running: {e}",
                    extra={"job_id": job_id},
                )
            else:
                self._fail(job_id, e)

        finally:
            self._save(job_id)
            with self._lock:
                if self._active_threads.get(job_id) is threading.current_thread():
                    del self._active_threads[job_id]

    def _fail(self, job_id: str, error: Exception) -> None:
        if isinstance(error, ExecutionError):
            message = str(error)
            logger.error(f"[{job_id}] Lab execution failed: {message}", extra={"job_id": job_id})
        else:
            message = f"{type(error).__name__}: {error}"
            logger.exception(f"[{job_id}] Unexpected error during execution", extra={"job_id": job_id})

        try:
            self.store.append_output(job_id, f"Error: {message}")
            self.store.set_error(job_id, message)
        except JobNotFoundError:
            pass
        except InvalidTransitionError as e:
            logger.warning(f"[{job_id}] Could not record failure: {e}", extra={"job_id": job_id})

    # =========================================================================
    # Introspection and shutdown
    # =========================================================================

    def is_job_running(self, job_id: str) -> bool:
        with self._lock:
            thread = self._active_threads.get(job_id)
        return thread is not None and thread.is_alive()

    def active_job_ids(self) -> List[str]:
        with self._lock:
            return [job_id for job_id, t in self._active_threads.items() if t.is_alive()]

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """
        Block until the job's execution thread exits.

        Returns:
            True if no execution is live when this returns
        """
        with self._lock:
            thread = self._active_threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, grace_period: float = 30.0) -> List[str]:
        """
        Stop accepting work and terminate live programs.

        Children get SIGTERM, then SIGKILL once the grace period runs out.
        Interrupted jobs stay running and are saved as such.

        Returns:
            Ids of jobs that were executing when shutdown began
        """
        self._shutting_down.set()
        interrupted = self.active_job_ids()
        if not interrupted:
            return []

        logger.warning(f"Shutting down with {len(interrupted)} job(s) executing: {interrupted}")
        deadline = time.monotonic() + max(grace_period, 0)

        if self.runner is not None:
            self.runner.terminate_all(grace_period)

        with self._lock:
            threads = list(self._active_threads.values())
        for thread in threads:
            thread.join(max(deadline - time.monotonic(), 0) + 1)

        still_alive = self.active_job_ids()
        if still_alive:
            logger.error(f"Job threads still alive after shutdown: {still_alive}")
        return interrupted
