"""
OpenTofu running inside a container.

``build_opentofu_container_args`` produces the container invocation,
``OpenTofuRunner`` executes it through a ``ProcessExecutor``, and
``OpenTofuAdapter`` turns OpenTofu's text and exit codes into
``AdapterResult`` values for the orchestrator.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from tzdeploy.config.infra import InfraConfig
from tzdeploy.config.settings import Settings, get_settings
from tzdeploy.config.user import BackendSettings, UserConfig
from tzdeploy.core.errors import (
    BackendConfigError,
    CapabilityPlanError,
    CommandCancelledError,
    CommandFailedError,
    DeploymentError,
    ErrorKind,
)
from tzdeploy.deployments.capability_planner import plan_environment_deployment
from tzdeploy.deployments.executor import (
    COMMAND_NOT_FOUND_EXIT_CODE,
    ProcessExecutor,
    SubprocessExecutor,
)
from tzdeploy.deployments.models import (
    AdapterResult,
    EnvironmentStatus,
    PlannedEnvironmentDeployment,
    PlannedResourceChange,
    ResourceSummary,
)

logger = structlog.get_logger()

DEFAULT_OPENTOFU_IMAGE = "ghcr.io/opentofu/opentofu:1.8.8"

AWS_PASSTHROUGH_ENV_KEYS = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "AWS_DEFAULT_REGION",
    "AWS_REGION",
    "AWS_SHARED_CREDENTIALS_FILE",
    "AWS_CONFIG_FILE",
)

# `plan -detailed-exitcode`: 0 = no changes, 1 = error, 2 = changes present
REPORT_EXIT_NO_CHANGES = 0
REPORT_EXIT_CHANGES = 2

_PLAN_SUMMARY = re.compile(
    r"Plan:\s+(\d+)\s+to add,\s+(\d+)\s+to change,\s+(\d+)\s+to destroy\.", re.IGNORECASE
)
_APPLY_SUMMARY = re.compile(
    r"Apply complete!\s+Resources:\s+(\d+)\s+added,\s+(\d+)\s+changed,\s+(\d+)\s+destroyed\.",
    re.IGNORECASE,
)
_DESTROY_SUMMARY = re.compile(r"Destroy complete!\s+Resources:\s+(\d+)\s+destroyed\.", re.IGNORECASE)


class OpenTofuCommand(StrEnum):
    INIT = "init"
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    SHOW = "show"
    OUTPUT = "output"


@dataclass(frozen=True)
class OpenTofuRunInput:
    """Everything needed to run OpenTofu for one environment."""

    workspace_path: str
    environment_id: str
    backend: BackendSettings
    module_plan: PlannedEnvironmentDeployment | None = None


@dataclass
class OpenTofuRunResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    logs: list[str] = field(default_factory=list)


def parse_plan_summary(text: str) -> ResourceSummary:
    match = _PLAN_SUMMARY.search(text)
    if not match:
        return ResourceSummary()
    return ResourceSummary(add=int(match[1]), change=int(match[2]), destroy=int(match[3]))


def parse_apply_summary(text: str) -> ResourceSummary:
    match = _APPLY_SUMMARY.search(text)
    if not match:
        return ResourceSummary()
    return ResourceSummary(add=int(match[1]), change=int(match[2]), destroy=int(match[3]))


def parse_destroy_summary(text: str) -> ResourceSummary:
    match = _DESTROY_SUMMARY.search(text)
    if not match:
        return ResourceSummary()
    return ResourceSummary(destroy=int(match[1]))


def _tofu_args(action: OpenTofuCommand, run_input: OpenTofuRunInput) -> list[str]:
    if action is OpenTofuCommand.INIT:
        return ["init", "-input=false", "-no-color"]
    if action is OpenTofuCommand.SHOW:
        return ["show", "-no-color"]
    if action is OpenTofuCommand.OUTPUT:
        return ["output", "-no-color"]

    args = [action.value]
    if action in (OpenTofuCommand.APPLY, OpenTofuCommand.DESTROY):
        args.append("-auto-approve")
    args.extend(["-input=false", "-no-color", f"-var=tz_environment_id={run_input.environment_id}"])
    if run_input.module_plan is not None:
        args.append(f"-var=tz_modules={json.dumps(run_input.module_plan.module_ids)}")
    return args


def build_opentofu_container_args(
    image: str,
    action: OpenTofuCommand,
    run_input: OpenTofuRunInput,
    extra_args: Sequence[str] = (),
    environ: Mapping[str, str] | None = None,
    aws_config_dir: Path | None = None,
) -> list[str]:
    """
    Build container runtime arguments for one OpenTofu command.

    Remote state is scoped to ``<state_prefix>/<environment_id>/tofu.tfstate``
    so two environments never share state.
    """
    environ = os.environ if environ is None else environ
    aws_dir = aws_config_dir if aws_config_dir is not None else Path.home() / ".aws"
    backend = run_input.backend

    args = ["run", "--rm", "-v", f"{run_input.workspace_path}:/workspace"]
    if aws_dir.exists():
        args.extend(["-v", f"{aws_dir}:/root/.aws:ro"])
    args.extend(["-w", "/workspace"])

    env = [
        f"AWS_PROFILE={backend.profile}",
        f"AWS_REGION={backend.region}",
        "TF_IN_AUTOMATION=1",
        f"TZ_AWS_BACKEND_BUCKET={backend.bucket}",
        f"TZ_AWS_BACKEND_REGION={backend.region}",
        f"TZ_AWS_BACKEND_PROFILE={backend.profile}",
        f"TZ_AWS_BACKEND_STATE_PREFIX={backend.state_prefix}",
        f"TZ_AWS_BACKEND_LOCK_STRATEGY={backend.lock_strategy}",
        f"TZ_AWS_BACKEND_STATE_KEY={backend.state_key(run_input.environment_id)}",
    ]
    for key in AWS_PASSTHROUGH_ENV_KEYS:
        value = environ.get(key)
        if value and value.strip():
            env.append(f"{key}={value}")
    for item in env:
        args.extend(["-e", item])

    args.append(image)
    args.extend(_tofu_args(action, run_input))
    args.extend(extra_args)
    return args


def _parse_resource_changes(text: str) -> list[PlannedResourceChange]:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        logger.debug("plan_json_unparsable")
        return []
    entries = data.get("resource_changes") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        return []

    changes = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        address = entry.get("address")
        change = entry.get("change") if isinstance(entry.get("change"), dict) else {}
        raw_actions = change.get("actions") if isinstance(change.get("actions"), list) else []
        actions = tuple(a for a in raw_actions if isinstance(a, str) and a and a != "no-op")
        if not isinstance(address, str) or not actions:
            continue
        provider = entry.get("provider_name")
        resource_type = entry.get("type")
        changes.append(
            PlannedResourceChange(
                address=address,
                actions=actions,
                provider=provider if isinstance(provider, str) else None,
                type=resource_type if isinstance(resource_type, str) else None,
            )
        )
    return changes


class OpenTofuRunner:
    """Runs OpenTofu commands in a container through a ProcessExecutor."""

    def __init__(
        self,
        executor: ProcessExecutor | None = None,
        image: str = DEFAULT_OPENTOFU_IMAGE,
        container_command: str = "docker",
        timeout: float | None = None,
    ):
        self.executor = executor or SubprocessExecutor()
        self.image = image
        self.container_command = container_command
        self.timeout = timeout

    def run(
        self,
        action: OpenTofuCommand,
        run_input: OpenTofuRunInput,
        allow_non_zero: bool = False,
        extra_args: Sequence[str] = (),
    ) -> OpenTofuRunResult:
        """Run one command, preceded by ``init`` for everything except ``init``."""
        if action is not OpenTofuCommand.INIT:
            self.run(OpenTofuCommand.INIT, run_input)

        args = build_opentofu_container_args(self.image, action, run_input, extra_args)
        logger.debug(
            "opentofu_command_started",
            action=action.value,
            environment=run_input.environment_id,
        )
        result = self.executor.execute(
            self.container_command,
            args,
            cwd=run_input.workspace_path,
            collect_output=True,
            allow_non_zero_exit=allow_non_zero,
            timeout=self.timeout,
        )
        return OpenTofuRunResult(
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            logs=[text for text in (result.stdout, result.stderr) if text.strip()],
        )

    def run_plan_with_json(
        self, run_input: OpenTofuRunInput
    ) -> tuple[OpenTofuRunResult, list[PlannedResourceChange]]:
        """Run ``plan -out`` and read the saved plan back with ``show -json``."""
        plan_file = f".tz-plan-{run_input.environment_id}.bin"
        try:
            plan = self.run(OpenTofuCommand.PLAN, run_input, extra_args=["-out", plan_file])
            show = self.run(OpenTofuCommand.SHOW, run_input, extra_args=["-json", plan_file])
        finally:
            # Saved plans hold resource attributes in plaintext
            (Path(run_input.workspace_path) / plan_file).unlink(missing_ok=True)
        return plan, _parse_resource_changes(show.stdout)

    def run_output_values(self, run_input: OpenTofuRunInput) -> dict[str, Any]:
        output = self.run(OpenTofuCommand.OUTPUT, run_input, extra_args=["-json"])
        try:
            data = json.loads(output.stdout)
        except json.JSONDecodeError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            key: entry["value"]
            for key, entry in data.items()
            if isinstance(entry, dict) and "value" in entry
        }


def normalize_adapter_error(error: Exception) -> DeploymentError:
    """Map an exception raised while running OpenTofu to a stable error kind."""
    if isinstance(error, CommandFailedError):
        if error.command_not_found:
            return DeploymentError(
                ErrorKind.RUNNER_UNAVAILABLE,
                "Docker/OpenTofu runner unavailable. Ensure Docker is installed and running.",
            )
        return DeploymentError(ErrorKind.TF_CMD_FAILED, error.stderr.strip() or error.message)
    if isinstance(error, CapabilityPlanError):
        return DeploymentError(ErrorKind.CAPABILITY_PLAN_INVALID, error.message)
    return DeploymentError(ErrorKind.ADAPTER_ERROR, str(error) or type(error).__name__)


def default_workspace_resolver(project_path: str, environment_id: str) -> str:
    materialized = Path(project_path) / ".tz" / "infra" / environment_id
    return str(materialized) if materialized.exists() else project_path


class OpenTofuAdapter:
    """Deploy adapter that drives OpenTofu for one AWS backend."""

    def __init__(
        self,
        runner: OpenTofuRunner,
        backend: BackendSettings,
        infra: InfraConfig | None = None,
        resolve_workspace: Callable[[str, str], str] = default_workspace_resolver,
    ):
        self.runner = runner
        self.backend = backend
        self.infra = infra
        self.resolve_workspace = resolve_workspace

    def _run_input(self, project_path: str, environment_id: str) -> OpenTofuRunInput:
        module_plan = None
        if self.infra is not None:
            module_plan = plan_environment_deployment(self.infra, environment_id)
        return OpenTofuRunInput(
            workspace_path=self.resolve_workspace(project_path, environment_id),
            environment_id=environment_id,
            backend=self.backend,
            module_plan=module_plan,
        )

    def _failed(self, action: str, environment_id: str, error: Exception) -> AdapterResult:
        deployment_error = normalize_adapter_error(error)
        logger.warning(
            "opentofu_command_failed",
            action=action,
            environment=environment_id,
            error_kind=deployment_error.kind.value,
        )
        logs = [str(error) or type(error).__name__]
        if isinstance(error, CommandFailedError):
            logs.extend(text for text in (error.stdout, error.stderr) if text.strip())
        return AdapterResult(
            status=EnvironmentStatus.FAILED,
            errors=[deployment_error],
            logs=logs,
        )

    def _read_provider_outputs(self, run_input: OpenTofuRunInput) -> dict[str, Any]:
        try:
            return self.runner.run_output_values(run_input)
        except CommandCancelledError:
            raise
        except Exception as e:
            logger.warning(
                "provider_outputs_unavailable",
                environment=run_input.environment_id,
                error=str(e),
            )
            return {}

    def plan(self, project_path: str, environment_id: str) -> AdapterResult:
        try:
            run_input = self._run_input(project_path, environment_id)
            result, changes = self.runner.run_plan_with_json(run_input)
        except CommandCancelledError:
            raise
        except Exception as e:
            return self._failed("plan", environment_id, e)

        summary = parse_plan_summary(result.stdout)
        drift = summary.has_changes
        return AdapterResult(
            status=EnvironmentStatus.DRIFTED if drift else EnvironmentStatus.HEALTHY,
            summary=summary,
            drift_detected=drift,
            planned_changes=changes,
            logs=result.logs,
        )

    def apply(self, project_path: str, environment_id: str) -> AdapterResult:
        try:
            run_input = self._run_input(project_path, environment_id)
            result = self.runner.run(OpenTofuCommand.APPLY, run_input)
        except CommandCancelledError:
            raise
        except Exception as e:
            return self._failed("apply", environment_id, e)

        return AdapterResult(
            status=EnvironmentStatus.HEALTHY,
            summary=parse_apply_summary(result.stdout),
            provider_outputs=self._read_provider_outputs(run_input),
            logs=result.logs,
        )

    def destroy(self, project_path: str, environment_id: str) -> AdapterResult:
        try:
            run_input = self._run_input(project_path, environment_id)
            result = self.runner.run(OpenTofuCommand.DESTROY, run_input)
        except CommandCancelledError:
            raise
        except Exception as e:
            return self._failed("destroy", environment_id, e)

        return AdapterResult(
            status=EnvironmentStatus.HEALTHY,
            summary=parse_destroy_summary(result.stdout),
            logs=result.logs,
        )

    def report(self, project_path: str, environment_id: str) -> AdapterResult:
        """Check for drift using the plan exit code, never the plan text."""
        try:
            run_input = self._run_input(project_path, environment_id)
            result = self.runner.run(
                OpenTofuCommand.PLAN,
                run_input,
                allow_non_zero=True,
                extra_args=["-detailed-exitcode"],
            )
        except CommandCancelledError:
            raise
        except Exception as e:
            return self._failed("report", environment_id, e)

        if result.exit_code in (REPORT_EXIT_NO_CHANGES, REPORT_EXIT_CHANGES):
            drift = result.exit_code == REPORT_EXIT_CHANGES
            return AdapterResult(
                status=EnvironmentStatus.DRIFTED if drift else EnvironmentStatus.HEALTHY,
                summary=parse_plan_summary(result.stdout),
                drift_detected=drift,
                provider_outputs=self._read_provider_outputs(run_input),
                logs=result.logs,
            )

        if result.exit_code == COMMAND_NOT_FOUND_EXIT_CODE:
            error = DeploymentError(
                ErrorKind.RUNNER_UNAVAILABLE,
                "Docker/OpenTofu runner unavailable. Ensure Docker is installed and running.",
            )
        else:
            error = DeploymentError(
                ErrorKind.TF_CMD_FAILED,
                result.stderr.strip() or "Unable to determine report status",
            )
        return AdapterResult(status=EnvironmentStatus.FAILED, errors=[error], logs=result.logs)


def create_opentofu_adapter(
    user_config: UserConfig,
    *,
    settings: Settings | None = None,
    executor: ProcessExecutor | None = None,
    infra: InfraConfig | None = None,
) -> OpenTofuAdapter:
    """
    Build an OpenTofu adapter from the user's AWS backend settings.

    Raises:
        BackendConfigError: If no backend is configured
    """
    backend = user_config.aws.backend
    if backend is None:
        raise BackendConfigError(
            "Missing AWS backend config. Configure deployments backend settings first."
        )
    settings = settings or get_settings()
    runner = OpenTofuRunner(
        executor=executor,
        image=settings.opentofu_image,
        container_command=settings.container_command,
        timeout=settings.command_timeout_seconds,
    )
    return OpenTofuAdapter(runner, backend, infra=infra)
