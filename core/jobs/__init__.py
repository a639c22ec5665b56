"""
Lab job orchestration.

This package runs long-lived provisioning programs in the background and
tracks them as jobs:
- Job record store with a monotonic status lifecycle
- One JSON file per job for crash-tolerant persistence
- Per-job workspaces
- Background execution with live output capture

Usage:
    from core.jobs import JobStore, JobPersistence, JobExecutor, WorkspaceManager

    store = JobStore(persistence=JobPersistence(data_dir))
    store.load_jobs()

    executor = JobExecutor(store, WorkspaceManager(work_dir), PulumiProgram())

    job_id = store.create_job({"stack_name": "team-a"})
    executor.run(job_id)

    job = store.get_job(job_id)
    print(job.status, job.output[-1])
"""

from core.jobs.state import (
    ACTIONS,
    Job,
    JobStatus,
    JobStore,
)
from core.jobs.persistence import JobPersistence
from core.jobs.workspace import WorkspaceManager
from core.jobs.runner import ProcessRunner
from core.jobs.programs import (
    CallableProgram,
    ExecutionContext,
    LabConfig,
    PulumiProgram,
)
from core.jobs.executor import JobExecutor
from core.jobs.labs import LabManager

__all__ = [
    "ACTIONS",
    "Job",
    "JobStatus",
    "JobStore",
    "JobPersistence",
    "WorkspaceManager",
    "ProcessRunner",
    "CallableProgram",
    "ExecutionContext",
    "LabConfig",
    "PulumiProgram",
    "JobExecutor",
    "LabManager",
]
