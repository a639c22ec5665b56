"""Shared pytest fixtures for lab server tests."""
import os
import sys
import time
from datetime import datetime, timedelta, timezone

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)


class FakeClock:
    """Deterministic clock; each call returns the current value."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds=1):
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


def wait_until(predicate, timeout=10.0, interval=0.01):
    """Poll until predicate() is truthy; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    pytest.fail(f"condition not met within {timeout}s")


# =============================================================================
# Job subsystem fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wait():
    """The wait_until helper, as a fixture."""
    return wait_until


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def persistence(data_dir):
    from core.jobs.persistence import JobPersistence
    return JobPersistence(data_dir)


@pytest.fixture
def store(persistence):
    from core.jobs.state import JobStore
    return JobStore(persistence=persistence)


@pytest.fixture
def workspaces(work_dir):
    from core.jobs.workspace import WorkspaceManager
    return WorkspaceManager(work_dir)


@pytest.fixture
def make_executor(store, workspaces):
    """Build a JobExecutor around an in-process program function."""
    from core.jobs.executor import JobExecutor
    from core.jobs.programs import CallableProgram

    executors = []

    def _make(fn, **kwargs):
        executor = JobExecutor(store, workspaces, CallableProgram(fn), base_env={}, **kwargs)
        executors.append(executor)
        return executor

    yield _make

    for executor in executors:
        executor.shutdown(grace_period=1)


@pytest.fixture
def lab_manager(store, workspaces, make_executor):
    """LabManager whose program records its context and succeeds."""
    from core.jobs.labs import LabManager

    def program(ctx):
        ctx.emit(f"provisioning {ctx.action}")
        if ctx.action == "up":
            return {"kubeconfig": "apiVersion: v1\nkind: Config\n"}
        return {}

    executor = make_executor(program)
    return LabManager(store, executor, workspaces)


# =============================================================================
# Flask Fixtures
# =============================================================================

@pytest.fixture
def app(lab_manager):
    """Flask app serving the fixture lab manager."""
    from server.app import create_app

    app = create_app({"TESTING": True}, lab_manager=lab_manager)
    lab_manager.recover_jobs()
    return app


@pytest.fixture
def client(app):
    return app.test_client()
