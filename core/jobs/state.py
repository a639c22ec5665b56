"""
Lab job state management.

Tracks provisioning jobs in memory behind a single lock. The store is the
source of truth while the process is alive; JobPersistence gives it
best-effort durability across restarts.
"""

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from core.errors import InvalidTransitionError, JobNotFoundError
from core.timestamps import now, parse_timestamp, to_iso

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Lab job status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Allowed forward moves. Terminal states have no entry.
_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
}

ACTIONS = ("up", "preview", "destroy")


@dataclass
class Job:
    """
    A single lab job and its history.

    Attributes:
        id: Unique job identifier, also the persistence filename stem
        status: Current job status
        config: Opaque provisioning payload (may be None)
        action: "up", "preview" (dry run) or "destroy"
        source_job_id: Job whose config was reused (recreate/destroy)
        output: Append-only output lines
        error: Failure description, set only when failed
        artifacts: Success artifacts (kubeconfig, coder), set only when completed
        created_at: Creation time (UTC)
        updated_at: Time of the last mutation (UTC)
    """

    id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    config: Optional[Dict[str, Any]] = None
    action: str = "up"
    source_job_id: Optional[str] = None
    output: List[str] = field(default_factory=list)
    error: Optional[str] = None
    artifacts: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "status": self.status.value,
            "action": self.action,
            "source_job_id": self.source_job_id,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "config": copy.deepcopy(self.config),
            "output": list(self.output),
            "error": self.error,
            "artifacts": copy.deepcopy(self.artifacts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create from dictionary (JSON deserialization).

        Raises:
            KeyError, TypeError, ValueError: when the structure is not a job
        """
        if not isinstance(data, dict):
            raise TypeError(f"expected object, got {type(data).__name__}")

        job_id = data["id"]
        if not isinstance(job_id, str) or not job_id:
            raise ValueError("job id must be a non-empty string")

        output = data.get("output") or []
        if not isinstance(output, list):
            raise TypeError("output must be a list")

        config = data.get("config")
        if config is not None and not isinstance(config, dict):
            raise TypeError("config must be an object")

        artifacts = data.get("artifacts")
        if artifacts is not None and not isinstance(artifacts, dict):
            raise TypeError("artifacts must be an object")

        return cls(
            id=job_id,
            status=JobStatus(data["status"]),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data.get("updated_at") or data["created_at"]),
            config=config,
            action=data.get("action") or "up",
            source_job_id=data.get("source_job_id"),
            output=[str(line) for line in output],
            error=data.get("error"),
            artifacts=artifacts,
        )


class JobStore:
    """
    Thread-safe in-memory job store.

    One lock guards the whole map. It is held only for the map read or
    write itself, never across file or child-process I/O, and every read
    returns a deep copy.

    Usage:
        store = JobStore(persistence=JobPersistence(data_dir))

        job_id = store.create_job({"stack_name": "dev"})
        store.update_status(job_id, JobStatus.RUNNING)
        store.append_output(job_id, "Creating gateway...")
        store.set_artifact(job_id, {"kubeconfig": "..."})
        store.update_status(job_id, JobStatus.COMPLETED)
        store.save_job(job_id)
    """

    def __init__(
        self,
        persistence=None,
        clock: Callable[[], datetime] = now,
    ):
        """
        Initialize the store.

        Args:
            persistence: Optional JobPersistence; None disables durability
            clock: Source of timestamps (injectable for tests)
        """
        self._persistence = persistence
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._issued_ids = set()
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()

    @property
    def persistence(self):
        return self._persistence

    def _generate_job_id(self) -> str:
        """Generate a job id never handed out by this store before."""
        while True:
            job_id = f"job-{uuid.uuid4().hex[:12]}"
            if job_id not in self._issued_ids:
                self._issued_ids.add(job_id)
                return job_id

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _check_transition(self, job: Job, status: JobStatus) -> None:
        if status not in _TRANSITIONS.get(job.status, set()):
            raise InvalidTransitionError(job.id, job.status.value, status.value)

    # =========================================================================
    # Mutations
    # =========================================================================

    def create_job(
        self,
        config: Optional[Dict[str, Any]] = None,
        action: str = "up",
        source_job_id: Optional[str] = None,
    ) -> str:
        """
        Create a pending job and return its id.

        Any config is accepted as-is; validation is the caller's concern.
        """
        with self._lock:
            job_id = self._generate_job_id()
            timestamp = self._clock()
            self._jobs[job_id] = Job(
                id=job_id,
                status=JobStatus.PENDING,
                created_at=timestamp,
                updated_at=timestamp,
                config=copy.deepcopy(config),
                action=action,
                source_job_id=source_job_id,
            )

        logger.info(f"[{job_id}] Created {action} job", extra={"job_id": job_id})
        return job_id

    def update_status(self, job_id: str, status: JobStatus) -> None:
        """
        Move a job to a new status.

        Raises:
            JobNotFoundError: unknown job id
            InvalidTransitionError: the move is not allowed from the current status
        """
        with self._lock:
            job = self._require(job_id)
            self._check_transition(job, status)
            job.status = status
            if status == JobStatus.COMPLETED and job.artifacts is None:
                job.artifacts = {}
            if status == JobStatus.FAILED:
                job.error = job.error or "job failed"
                job.artifacts = None
            job.updated_at = self._clock()

        logger.info(
            f"[{job_id}] Status -> {status.value}",
            extra={"job_id": job_id},
        )

    def append_output(self, job_id: str, line: str) -> None:
        """
        Append one output line.

        Raises:
            JobNotFoundError: unknown job id
            InvalidTransitionError: the job is terminal and its output frozen
        """
        with self._lock:
            job = self._require(job_id)
            if job.status.is_terminal:
                raise InvalidTransitionError(job_id, job.status.value, "append output")
            job.output.append(line)
            job.updated_at = self._clock()

    def set_error(self, job_id: str, error: Union[str, BaseException]) -> None:
        """
        Record a failure and move the job to failed in one step.

        Raises:
            JobNotFoundError: unknown job id
            InvalidTransitionError: the job is already terminal
        """
        message = str(error) or type(error).__name__
        with self._lock:
            job = self._require(job_id)
            self._check_transition(job, JobStatus.FAILED)
            job.error = message
            job.artifacts = None
            job.status = JobStatus.FAILED
            job.updated_at = self._clock()

        logger.error(f"[{job_id}] Job failed: {message}", extra={"job_id": job_id})

    def set_artifact(self, job_id: str, artifacts: Dict[str, Any]) -> None:
        """
        Merge success artifacts into a job that has not finished yet.

        Raises:
            JobNotFoundError: unknown job id
            InvalidTransitionError: the job is already terminal
        """
        with self._lock:
            job = self._require(job_id)
            if job.status.is_terminal:
                raise InvalidTransitionError(job_id, job.status.value, "set artifacts")
            merged = dict(job.artifacts or {})
            merged.update(copy.deepcopy(artifacts or {}))
            job.artifacts = merged
            job.updated_at = self._clock()

    def remove_job(self, job_id: str) -> bool:
        """
        Remove a job and its persisted file.

        Idempotent. The id stays reserved so it is never handed out again.

        Returns:
            True if an in-memory record existed
        """
        # Taking the save lock first keeps an in-flight save from
        # resurrecting the file after it is deleted.
        with self._save_lock:
            with self._lock:
                existed = self._jobs.pop(job_id, None) is not None

            if self._persistence is not None:
                self._persistence.remove(job_id)

        if existed:
            logger.info(f"[{job_id}] Removed job", extra={"job_id": job_id})
        return existed

    # =========================================================================
    # Reads
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[Job]:
        """Return a deep copy of the job, or None if unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        action: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        """
        List job copies, newest first.

        Jobs with equal created_at are ordered by id so the result is
        deterministic.
        """
        with self._lock:
            jobs = [
                copy.deepcopy(j) for j in self._jobs.values()
                if (status is None or j.status == status)
                and (action is None or j.action == action)
            ]

        jobs.sort(key=lambda j: (j.created_at, j.id), reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        return jobs

    def get_active_jobs(self) -> List[Job]:
        """All pending or running jobs."""
        return [j for j in self.list_jobs() if not j.status.is_terminal]

    def get_interrupted_jobs(self, executing: Optional[set] = None) -> List[Job]:
        """
        Non-terminal jobs with no live execution behind them.

        After a restart these are the jobs whose real outcome is unknown.
        """
        executing = executing or set()
        return [j for j in self.get_active_jobs() if j.id not in executing]

    def get_stats(self) -> Dict[str, Any]:
        """Job counts by status and action."""
        with self._lock:
            stats = {
                "total_jobs": len(self._jobs),
                "by_status": {},
                "by_action": {},
                "active_jobs": 0,
            }

            for job in self._jobs.values():
                status = job.status.value
                stats["by_status"][status] = stats["by_status"].get(status, 0) + 1
                stats["by_action"][job.action] = stats["by_action"].get(job.action, 0) + 1
                if not job.status.is_terminal:
                    stats["active_jobs"] += 1

            return stats

    # =========================================================================
    # Persistence
    # =========================================================================

    def save_job(self, job_id: str) -> None:
        """
        Persist the current record.

        Writers are serialized so files land in mutation order. The store
        lock is only held while taking the snapshot. A failed save leaves
        the in-memory record untouched.

        Raises:
            JobNotFoundError: unknown job id
            PersistenceError: the file could not be written
        """
        if self._persistence is None:
            return

        with self._save_lock:
            snapshot = self.get_job(job_id)
            if snapshot is None:
                raise JobNotFoundError(job_id)
            self._persistence.save(snapshot)

    def load_jobs(self) -> int:
        """
        Load persisted jobs into the store.

        Records already in memory win over their files.

        Returns:
            Number of jobs inserted
        """
        if self._persistence is None:
            return 0

        loaded = self._persistence.load_all()
        inserted = 0
        with self._lock:
            for job in loaded:
                self._issued_ids.add(job.id)
                if job.id in self._jobs:
                    continue
                self._jobs[job.id] = job
                inserted += 1

        logger.info(f"Loaded {inserted} persisted job(s)")
        return inserted

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
