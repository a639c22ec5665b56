"""
Provisioning programs driven by the executor.

A program receives an ExecutionContext, writes progress through ctx.emit,
and returns a dict of success artifacts. Raising any exception fails the
job; ExecutionError is the expected failure type.

Two programs are provided:
- PulumiProgram: drives the pulumi CLI in the job workspace
- CallableProgram: wraps an in-process function (tests, local tooling)
"""

import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import ExecutionError
from core.jobs.runner import ProcessRunner
from core.jobs.workspace import TEMPLATE_ARCHIVE
from core.timestamps import rfc3339

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """Everything a program needs to run one job."""

    job_id: str
    action: str
    config: Optional[Dict[str, Any]]
    work_dir: Path
    env: Dict[str, str]
    emit: Callable[[str], None] = field(repr=False)
    cancelled: Callable[[], bool] = field(default=lambda: False, repr=False)


class CallableProgram:
    """
    Runs an in-process function as the provisioning program.

    The function gets the ExecutionContext and returns an artifacts dict
    (or None). Raising means failure.
    """

    def __init__(self, fn: Callable[[ExecutionContext], Optional[Dict[str, Any]]]):
        self.fn = fn

    def execute(self, ctx: ExecutionContext) -> Dict[str, Any]:
        result = self.fn(ctx)
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise ExecutionError(
                f"program returned {type(result).__name__}, expected artifacts dict"
            )
        return result


# =============================================================================
# Lab configuration
# =============================================================================

def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


@dataclass
class LabConfig:
    """
    Typed view over a job's opaque config payload.

    Unknown keys are ignored and missing ones fall back to defaults, so any
    stored config can be read.
    """

    stack_name: str = "dev"
    provider: str = "ovh"

    network_gateway_name: str = ""
    network_gateway_model: str = ""
    network_private_network_name: str = ""
    network_region: str = ""
    network_mask: str = ""
    network_start_ip: str = ""
    network_end_ip: str = ""
    network_id: str = ""

    k8s_cluster_name: str = ""

    nodepool_name: str = ""
    nodepool_flavor: str = ""
    nodepool_desired_node_count: int = 0
    nodepool_min_node_count: int = 0
    nodepool_max_node_count: int = 0

    coder_admin_email: str = ""
    coder_admin_password: str = ""
    coder_version: str = ""
    coder_db_user: str = ""
    coder_db_password: str = ""
    coder_db_name: str = ""
    coder_template_name: str = ""

    template_source: str = ""
    template_git_repo: str = ""
    template_git_folder: str = ""
    template_git_branch: str = ""

    ovh_endpoint: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LabConfig":
        data = data if isinstance(data, dict) else {}
        defaults = cls()
        kwargs = {}
        for name, default in vars(defaults).items():
            if name not in data:
                continue
            if isinstance(default, int):
                kwargs[name] = _as_int(data[name], default)
            else:
                kwargs[name] = _as_str(data[name], default)

        config = cls(**kwargs)
        if not config.stack_name:
            config.stack_name = defaults.stack_name
        if not config.provider:
            config.provider = defaults.provider
        return config

    def prefixed(self, name: str) -> str:
        """Resource name scoped to this stack."""
        return f"{self.stack_name}-{name}"

    def settings(self, template_path: Optional[str] = None) -> List[Tuple[str, Any, bool]]:
        """
        Pulumi config entries as (key, value, secret).

        Resource names are prefixed with the stack name so several labs can
        share one cloud project.
        """
        entries = [
            ("network:gatewayName", self.prefixed(self.network_gateway_name), False),
            ("network:gatewayModel", self.network_gateway_model, False),
            ("network:privateNetworkName", self.prefixed(self.network_private_network_name), False),
            ("network:region", self.network_region, False),
            ("network:networkMask", self.network_mask, False),
            ("network:networkStartIp", self.network_start_ip, False),
            ("network:networkEndIp", self.network_end_ip, False),
            ("nodepool:name", self.prefixed(self.nodepool_name), False),
            ("nodepool:flavor", self.nodepool_flavor, False),
            ("nodepool:desiredNodeCount", self.nodepool_desired_node_count, False),
            ("nodepool:minNodeCount", self.nodepool_min_node_count, False),
            ("nodepool:maxNodeCount", self.nodepool_max_node_count, False),
            ("k8s:clusterName", self.prefixed(self.k8s_cluster_name), False),
            ("coder:adminEmail", self.coder_admin_email, False),
            ("coder:adminPassword", self.coder_admin_password, True),
            ("coder:version", self.coder_version, False),
            ("coder:dbUser", self.coder_db_user, False),
            ("coder:dbPassword", self.coder_db_password, True),
            ("coder:dbName", self.coder_db_name, False),
            ("coder:templateName", self.coder_template_name, False),
        ]

        if self.network_id:
            entries.append(("network:networkId", self.network_id, False))
        if template_path:
            entries.append(("coder:templateFilePath", template_path, False))
        if self.template_source:
            entries.append(("coder:templateSource", self.template_source, False))
        if self.template_git_repo:
            entries.append(("coder:templateGitRepo", self.template_git_repo, False))
            entries.append(("coder:templateGitFolder", self.template_git_folder, False))
            entries.append(("coder:templateGitBranch", self.template_git_branch or "main", False))

        return entries


# =============================================================================
# Pulumi driver
# =============================================================================

class StackOutputError(Exception):
    """`pulumi stack output` failed or returned something unreadable."""
    pass


def _output_as_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


class PulumiProgram:
    """
    Drives the pulumi CLI for one lab stack.

    Usage:
        program = PulumiProgram(ProcessRunner(), binary="pulumi")
        artifacts = program.execute(ctx)
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        binary: str = "pulumi",
        project_name: str = "lab-as-code",
        runtime: str = "go",
        description: str = "Lab as Code - Kubernetes and Coder on OVHcloud",
        program_dir: Optional[str] = None,
    ):
        self.runner = runner or ProcessRunner()
        self.binary = binary
        self.project_name = project_name
        self.runtime = runtime
        self.description = description
        self.program_dir = Path(program_dir) if program_dir else None

    @classmethod
    def from_settings(cls, settings, runner: Optional[ProcessRunner] = None) -> "PulumiProgram":
        """Build from a PulumiSettings group."""
        return cls(
            runner=runner,
            binary=settings.binary,
            project_name=settings.project_name,
            runtime=settings.runtime,
            description=settings.description,
            program_dir=settings.program_dir,
        )

    # -------------------------------------------------------------------------
    # Workspace files
    # -------------------------------------------------------------------------

    def write_project_files(self, work_dir: Path, lab: LabConfig, endpoint: str = "") -> None:
        """Write Pulumi.yaml and Pulumi.<stack>.yaml into the workspace."""
        project = {
            "name": self.project_name,
            "runtime": self.runtime,
            "description": self.description,
        }
        if endpoint:
            project["config"] = {"ovh:endpoint": endpoint}

        template_path = self._template_path(work_dir)
        stack = {
            "config": {
                key: value
                for key, value, secret in lab.settings(template_path)
                if not secret
            }
        }

        (work_dir / "Pulumi.yaml").write_text(
            yaml.safe_dump(project, default_flow_style=False, sort_keys=False),
            encoding="utf-8",
        )
        (work_dir / f"Pulumi.{lab.stack_name}.yaml").write_text(
            yaml.safe_dump(stack, default_flow_style=False, sort_keys=False),
            encoding="utf-8",
        )

    def copy_program_sources(self, work_dir: Path) -> None:
        if self.program_dir is None:
            return
        if not self.program_dir.is_dir():
            raise ExecutionError(f"Pulumi program directory not found: {self.program_dir}")
        shutil.copytree(
            self.program_dir,
            work_dir,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns(".git", "Pulumi.yaml", "Pulumi.*.yaml"),
        )

    def _template_path(self, work_dir: Path) -> Optional[str]:
        archive = work_dir / TEMPLATE_ARCHIVE
        return str(archive) if archive.is_file() else None

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _pulumi(self, ctx: ExecutionContext, *args: str) -> int:
        if ctx.cancelled():
            raise ExecutionError(f"pulumi {args[0]} not started: shutting down")
        return self.runner.run(
            ctx.job_id,
            [self.binary, *args],
            cwd=ctx.work_dir,
            env=ctx.env,
            on_line=ctx.emit,
        )

    def execute(self, ctx: ExecutionContext) -> Dict[str, Any]:
        if ctx.action not in ("up", "preview", "destroy"):
            raise ExecutionError(f"unknown action: {ctx.action}")

        lab = LabConfig.from_dict(ctx.config)
        stack = lab.stack_name
        endpoint = ctx.env.get("OVH_ENDPOINT") or lab.ovh_endpoint

        if self.program_dir is not None:
            ctx.emit(f"Copying source files from {self.program_dir}...")
            self.copy_program_sources(ctx.work_dir)

        ctx.emit("Writing Pulumi project and stack configuration...")
        try:
            self.write_project_files(ctx.work_dir, lab, endpoint)
        except OSError as e:
            raise ExecutionError(f"failed to write stack config: {e}") from e

        ctx.emit(f"Initializing Pulumi stack '{stack}'...")
        if self._pulumi(ctx, "stack", "init", stack, "--non-interactive") != 0:
            ctx.emit("Stack may already exist, trying to select...")

        ctx.emit(f"Selecting Pulumi stack '{stack}'...")
        rc = self._pulumi(ctx, "stack", "select", stack, "--non-interactive")
        if rc != 0:
            ctx.emit(f"Stack select warning: exit status {rc}")

        if ctx.action in ("up", "preview"):
            self._set_config(ctx, lab)

        if ctx.action == "up":
            ctx.emit("Running pulumi up --yes --non-interactive...")
            rc = self._pulumi(ctx, "up", "--yes", "--non-interactive")
            if rc != 0:
                raise ExecutionError(f"pulumi up failed: exit status {rc}", returncode=rc)
            artifacts = self.collect_artifacts(ctx, lab)
            ctx.emit(f"Deployment completed successfully at {rfc3339()}")
            return artifacts

        if ctx.action == "preview":
            ctx.emit("Running pulumi preview --non-interactive...")
            rc = self._pulumi(ctx, "preview", "--non-interactive")
            if rc != 0:
                raise ExecutionError(f"pulumi preview failed: exit status {rc}", returncode=rc)
            ctx.emit(f"Dry run completed successfully at {rfc3339()}")
            return {"stack": stack, "dry_run": True}

        ctx.emit("Running pulumi destroy --yes --non-interactive...")
        rc = self._pulumi(ctx, "destroy", "--yes", "--non-interactive")
        if rc != 0:
            raise ExecutionError(f"pulumi destroy failed: exit status {rc}", returncode=rc)

        ctx.emit(f"Removing stack '{stack}'...")
        rc = self._pulumi(ctx, "stack", "rm", stack, "--yes", "--non-interactive")
        if rc != 0:
            ctx.emit(f"Warning: failed to remove stack: exit status {rc}")
        ctx.emit(f"Destroy completed successfully at {rfc3339()}")
        return {"stack": stack, "destroyed": True}

    def _set_config(self, ctx: ExecutionContext, lab: LabConfig) -> None:
        ctx.emit("Setting Pulumi configuration...")
        for key, value, secret in lab.settings(self._template_path(ctx.work_dir)):
            args = ["config", "set", key, str(value)]
            if secret:
                args.append("--secret")
            args.append("--non-interactive")
            rc = self._pulumi(ctx, *args)
            if rc != 0:
                ctx.emit(f"Config set {key} warning: exit status {rc}")

    # -------------------------------------------------------------------------
    # Stack outputs
    # -------------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        retry=retry_if_exception_type(StackOutputError),
        reraise=True,
    )
    def read_stack_outputs(self, ctx: ExecutionContext) -> Dict[str, Any]:
        """
        Read all stack outputs, secrets included, with retry.

        Output is captured rather than streamed so secret values never
        reach the job log.
        """
        rc, stdout, stderr = self.runner.capture(
            ctx.job_id,
            [self.binary, "stack", "output", "--json", "--show-secrets", "--non-interactive"],
            cwd=ctx.work_dir,
            env=ctx.env,
        )
        if rc != 0:
            raise StackOutputError(stderr.strip() or f"exit status {rc}")
        try:
            outputs = json.loads(stdout or "{}")
        except json.JSONDecodeError as e:
            raise StackOutputError(f"failed to parse stack outputs JSON: {e}") from e
        if not isinstance(outputs, dict):
            raise StackOutputError("stack outputs are not a JSON object")
        return outputs

    def collect_artifacts(self, ctx: ExecutionContext, lab: LabConfig) -> Dict[str, Any]:
        """
        Extract kubeconfig and Coder connection info from the stack.

        Missing outputs are warnings, not failures: the infrastructure exists
        even when its outputs cannot be read.
        """
        ctx.emit("Extracting kubeconfig...")
        try:
            outputs = self.read_stack_outputs(ctx)
        except (StackOutputError, ExecutionError) as e:
            if ctx.cancelled():
                raise
            ctx.emit(f"Warning: failed to read stack outputs: {e}")
            return {}

        artifacts: Dict[str, Any] = {}

        kubeconfig = _output_as_string(outputs.get("kubeconfig"))
        if kubeconfig:
            if "apiVersion" not in kubeconfig and "kind:" not in kubeconfig:
                ctx.emit(f"Warning: kubeconfig may be invalid (length: {len(kubeconfig)} chars)")
            artifacts["kubeconfig"] = kubeconfig
            ctx.emit(f"Kubeconfig extracted successfully (length: {len(kubeconfig)} chars)")
        else:
            ctx.emit("Warning: stack has no kubeconfig output")

        ctx.emit("Extracting Coder configuration...")
        coder_url = _output_as_string(outputs.get("coderServerURL"))
        if coder_url:
            artifacts["coder"] = {
                "url": coder_url,
                "admin_email": lab.coder_admin_email,
                "session_token": _output_as_string(outputs.get("coderSessionToken")),
                "organization_id": _output_as_string(outputs.get("coderOrganizationID")),
            }
            ctx.emit("Coder configuration extracted and stored successfully")
        else:
            ctx.emit("Warning: stack has no coderServerURL output")

        return artifacts
