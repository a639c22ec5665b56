"""
Tests to detect circular import issues between the job, server and config
packages.

These tests iterate over all submodules to catch hidden import cycles
that might not be apparent when importing only specific symbols.
"""
import importlib
import pkgutil

import pytest


class TestJobsImportCycles:
    """Test that all core.jobs submodules can be imported independently."""

    def test_all_job_submodules_importable(self):
        """Iterate over all core.jobs submodules to catch hidden cycles."""
        import core.jobs as jobs_pkg

        imported = []
        errors = []

        for importer, modname, ispkg in pkgutil.iter_modules(jobs_pkg.__path__):
            try:
                mod = importlib.import_module(f"core.jobs.{modname}")
                imported.append(modname)
                assert mod is not None
            except Exception as e:
                errors.append(f"{modname}: {e}")

        assert not errors, "Failed to import job submodules:\n" + "\n".join(errors)
        assert len(imported) >= 7, f"Expected at least 7 job submodules, got {len(imported)}"

    def test_state_has_no_executor_dependency(self):
        """state.py must not pull in execution machinery."""
        from core.jobs.state import Job, JobStatus, JobStore

        assert Job is not None
        assert JobStatus is not None
        assert JobStore is not None

    def test_jobs_facade_exports(self):
        """Facade should expose the public job API."""
        import core.jobs

        for name in ('JobStore', 'JobPersistence', 'JobExecutor', 'LabManager',
                     'WorkspaceManager', 'ProcessRunner', 'PulumiProgram'):
            assert hasattr(core.jobs, name), name


class TestServerImportCycles:
    """Test that server modules import without a running app."""

    @pytest.mark.parametrize("module", [
        "server.shared",
        "server.lifecycle",
        "server.logging_config",
        "server.routes",
        "server.routes.health",
        "server.routes.labs",
        "server.routes.jobs",
        "server.app",
        "config.settings",
        "lab_server",
    ])
    def test_module_importable(self, module):
        mod = importlib.import_module(module)
        assert mod is not None
