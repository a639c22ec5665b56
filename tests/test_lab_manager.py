"""
Tests for LabManager: lab operations and startup recovery.
"""

import threading

import pytest

from core.errors import (
    ConflictError,
    JobNotFoundError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from core.jobs.labs import INTERRUPTED_ERROR, LabManager
from core.jobs.persistence import JobPersistence
from core.jobs.state import JobStatus, JobStore
from core.jobs.workspace import TEMPLATE_ARCHIVE


def _finish(labs, job_id):
    assert labs.executor.wait(job_id, timeout=10)
    return labs.get_job(job_id)


class TestCreateLab:
    """Tests for create_lab."""

    def test_up_job_runs_to_completion(self, lab_manager):
        job_id = lab_manager.create_lab({"stack_name": "team-a"})

        job = _finish(lab_manager, job_id)

        assert job.action == "up"
        assert job.status == JobStatus.COMPLETED
        assert job.artifacts["kubeconfig"].startswith("apiVersion")
        assert "provisioning up" in job.output

    def test_preview_job(self, lab_manager):
        job_id = lab_manager.create_lab({"stack_name": "team-a"}, action="preview")

        job = _finish(lab_manager, job_id)

        assert job.action == "preview"
        assert "provisioning preview" in job.output

    def test_config_can_be_empty(self, lab_manager):
        job_id = lab_manager.create_lab(None)
        assert _finish(lab_manager, job_id).config is None

    def test_unknown_action(self, lab_manager, store):
        with pytest.raises(ValidationError):
            lab_manager.create_lab({}, action="refresh")
        assert len(store) == 0

    def test_config_must_be_object(self, lab_manager):
        with pytest.raises(ValidationError):
            lab_manager.create_lab(["not", "a", "dict"])

    def test_destroy_requires_stack_name(self, lab_manager):
        with pytest.raises(ValidationError):
            lab_manager.create_lab({}, action="destroy")

    def test_template_upload_stored_in_workspace(self, lab_manager, workspaces):
        job_id = lab_manager.create_lab({"stack_name": "a"}, template=("t.zip", b"PK-data"))

        job = _finish(lab_manager, job_id)

        assert job.config["template_source"] == "upload"
        assert (workspaces.path_for(job_id) / TEMPLATE_ARCHIVE).read_bytes() == b"PK-data"

    def test_template_upload_does_not_mutate_caller_config(self, lab_manager):
        config = {"stack_name": "a"}
        job_id = lab_manager.create_lab(config, template=("t.zip", b"PK"))
        _finish(lab_manager, job_id)
        assert config == {"stack_name": "a"}

    def test_bad_template_type_rejected_before_job_exists(self, lab_manager, store):
        with pytest.raises(ValidationError):
            lab_manager.create_lab({"stack_name": "a"}, template=("t.tar.gz", b"x"))
        assert len(store) == 0

    def test_refused_after_shutdown_fails_job(self, lab_manager, store):
        lab_manager.shutdown(grace_period=0)

        with pytest.raises(ServiceUnavailableError):
            lab_manager.create_lab({"stack_name": "a"})

        [job] = store.list_jobs()
        assert job.status == JobStatus.FAILED
        assert job.error


class TestRecreateAndDestroy:
    """Tests for operations derived from an existing job."""

    def test_recreate_copies_config(self, lab_manager):
        source_id = lab_manager.create_lab({"stack_name": "team-a"})
        _finish(lab_manager, source_id)

        new_id = lab_manager.recreate_lab(source_id)
        job = _finish(lab_manager, new_id)

        assert new_id != source_id
        assert job.config == {"stack_name": "team-a"}
        assert job.source_job_id == source_id
        assert job.action == "up"

    def test_recreate_carries_template_over(self, lab_manager, workspaces):
        source_id = lab_manager.create_lab({"stack_name": "a"}, template=("t.zip", b"PK-tmpl"))
        _finish(lab_manager, source_id)

        new_id = lab_manager.recreate_lab(source_id)
        _finish(lab_manager, new_id)

        assert (workspaces.path_for(new_id) / TEMPLATE_ARCHIVE).read_bytes() == b"PK-tmpl"

    def test_recreate_unknown_job(self, lab_manager):
        with pytest.raises(JobNotFoundError):
            lab_manager.recreate_lab("job-missing")

    def test_recreate_while_in_progress(self, store, workspaces, make_executor):
        release = threading.Event()
        labs = LabManager(store, make_executor(lambda ctx: release.wait(10) and {}), workspaces)
        job_id = labs.create_lab({"stack_name": "a"})
        try:
            with pytest.raises(ConflictError):
                labs.recreate_lab(job_id)
            with pytest.raises(ConflictError):
                labs.destroy_lab(job_id)
        finally:
            release.set()
            _finish(labs, job_id)

    def test_destroy_uses_source_stack(self, lab_manager):
        source_id = lab_manager.create_lab({"stack_name": "team-a"})
        _finish(lab_manager, source_id)

        destroy_id = lab_manager.destroy_lab(source_id)
        job = _finish(lab_manager, destroy_id)

        assert job.action == "destroy"
        assert job.config["stack_name"] == "team-a"
        assert job.source_job_id == source_id
        assert job.status == JobStatus.COMPLETED

    def test_destroy_failed_job_allowed(self, store, workspaces, make_executor):
        def program(ctx):
            if ctx.action == "up":
                raise RuntimeError("quota exceeded")
            return {}

        labs = LabManager(store, make_executor(program), workspaces)
        source_id = labs.create_lab({"stack_name": "a"})
        assert _finish(labs, source_id).status == JobStatus.FAILED

        destroy_id = labs.destroy_lab(source_id)
        assert _finish(labs, destroy_id).status == JobStatus.COMPLETED


class TestLaunchLab:
    """Tests for launching a lab from a dry run."""

    def test_launch_completed_preview(self, lab_manager, workspaces):
        preview_id = lab_manager.create_lab({"stack_name": "team-a"}, action="preview",
                                            template=("t.zip", b"PK-tmpl"))
        _finish(lab_manager, preview_id)

        new_id = lab_manager.launch_lab(preview_id)
        job = _finish(lab_manager, new_id)

        assert job.action == "up"
        assert job.status == JobStatus.COMPLETED
        assert job.source_job_id == preview_id
        assert job.config["stack_name"] == "team-a"
        assert (workspaces.path_for(new_id) / TEMPLATE_ARCHIVE).read_bytes() == b"PK-tmpl"

    def test_failed_preview_rejected(self, store, workspaces, make_executor):
        def program(ctx):
            raise RuntimeError("preview failed")

        labs = LabManager(store, make_executor(program), workspaces)
        preview_id = labs.create_lab({"stack_name": "a"}, action="preview")
        assert _finish(labs, preview_id).status == JobStatus.FAILED

        with pytest.raises(ConflictError):
            labs.launch_lab(preview_id)
        assert len(store) == 1

    def test_up_job_is_not_a_dry_run(self, lab_manager, store):
        source_id = lab_manager.create_lab({"stack_name": "a"})
        _finish(lab_manager, source_id)

        with pytest.raises(ValidationError):
            lab_manager.launch_lab(source_id)
        assert len(store) == 1

    def test_preview_in_progress(self, store, workspaces, make_executor):
        release = threading.Event()
        labs = LabManager(store, make_executor(lambda ctx: release.wait(10) and {}), workspaces)
        preview_id = labs.create_lab({"stack_name": "a"}, action="preview")
        try:
            with pytest.raises(ConflictError):
                labs.launch_lab(preview_id)
        finally:
            release.set()
            _finish(labs, preview_id)

    def test_launch_unknown_job(self, lab_manager):
        with pytest.raises(JobNotFoundError):
            lab_manager.launch_lab("job-missing")


class TestRemoveLab:
    """Tests for remove_lab."""

    def test_remove_deletes_record_file_and_workspace(self, lab_manager, persistence, workspaces):
        job_id = lab_manager.create_lab({"stack_name": "a"})
        _finish(lab_manager, job_id)

        assert lab_manager.remove_lab(job_id) is True

        assert lab_manager.store.get_job(job_id) is None
        assert not persistence.path_for(job_id).exists()
        assert not workspaces.exists(job_id)

    def test_remove_unknown_job(self, lab_manager):
        assert lab_manager.remove_lab("job-missing") is False

    def test_remove_while_executing(self, store, workspaces, make_executor):
        release = threading.Event()
        labs = LabManager(store, make_executor(lambda ctx: release.wait(10) and {}), workspaces)
        job_id = labs.create_lab(None)
        try:
            with pytest.raises(ConflictError):
                labs.remove_lab(job_id)
        finally:
            release.set()
            _finish(labs, job_id)


class TestReads:
    """Tests for job reads and kubeconfig lookup."""

    def test_get_unknown_job(self, lab_manager):
        with pytest.raises(JobNotFoundError):
            lab_manager.get_job("job-missing")

    def test_kubeconfig_of_completed_job(self, lab_manager):
        job_id = lab_manager.create_lab({"stack_name": "a"})
        _finish(lab_manager, job_id)
        assert lab_manager.get_kubeconfig(job_id).startswith("apiVersion")

    def test_kubeconfig_missing_for_preview(self, lab_manager):
        job_id = lab_manager.create_lab({"stack_name": "a"}, action="preview")
        _finish(lab_manager, job_id)
        with pytest.raises(NotFoundError):
            lab_manager.get_kubeconfig(job_id)

    def test_list_filters_by_action(self, lab_manager):
        up_id = lab_manager.create_lab({"stack_name": "a"})
        preview_id = lab_manager.create_lab({"stack_name": "a"}, action="preview")
        _finish(lab_manager, up_id)
        _finish(lab_manager, preview_id)

        assert [j.id for j in lab_manager.list_jobs(action="preview")] == [preview_id]


class TestRecoverJobs:
    """Startup recovery of persisted jobs."""

    def _seed(self, data_dir):
        store = JobStore(persistence=JobPersistence(data_dir))
        running_id = store.create_job({"stack_name": "a"})
        store.update_status(running_id, JobStatus.RUNNING)
        store.append_output(running_id, "Creating cluster...")
        pending_id = store.create_job(None)
        done_id = store.create_job(None)
        store.update_status(done_id, JobStatus.RUNNING)
        store.update_status(done_id, JobStatus.COMPLETED)
        for job_id in (running_id, pending_id, done_id):
            store.save_job(job_id)
        return running_id, pending_id, done_id

    def _manager(self, data_dir, workspaces, make_executor, policy):
        store = JobStore(persistence=JobPersistence(data_dir))
        return LabManager(store, make_executor(lambda ctx: {}), workspaces,
                          interrupted_job_policy=policy)

    def test_leave_policy_reports_only(self, data_dir, workspaces, make_executor):
        running_id, pending_id, done_id = self._seed(data_dir)
        labs = self._manager(data_dir, workspaces, make_executor, "leave")
        assert not labs.ready

        result = labs.recover_jobs()

        assert labs.ready
        assert result["loaded"] == 3
        assert set(result["interrupted"]) == {running_id, pending_id}
        assert labs.get_job(running_id).status == JobStatus.RUNNING
        assert labs.get_job(running_id).output == ["Creating cluster..."]
        assert labs.get_job(done_id).status == JobStatus.COMPLETED

    def test_fail_policy_marks_and_saves(self, data_dir, workspaces, make_executor):
        running_id, pending_id, _ = self._seed(data_dir)
        labs = self._manager(data_dir, workspaces, make_executor, "fail")

        labs.recover_jobs()

        for job_id in (running_id, pending_id):
            job = labs.get_job(job_id)
            assert job.status == JobStatus.FAILED
            assert job.error == INTERRUPTED_ERROR

        reloaded = JobStore(persistence=JobPersistence(data_dir))
        reloaded.load_jobs()
        assert reloaded.get_job(running_id).status == JobStatus.FAILED
        assert labs.interrupted_jobs() == []

    def test_interrupted_job_can_be_removed(self, data_dir, workspaces, make_executor):
        running_id, _, _ = self._seed(data_dir)
        labs = self._manager(data_dir, workspaces, make_executor, "leave")
        labs.recover_jobs()

        assert labs.remove_lab(running_id) is True
        assert running_id not in [j.id for j in labs.interrupted_jobs()]

    def test_unknown_policy(self, store, workspaces, make_executor):
        with pytest.raises(ValueError):
            LabManager(store, make_executor(lambda ctx: {}), workspaces, interrupted_job_policy="retry")
