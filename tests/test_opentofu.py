"""Tests for the OpenTofu runner and adapter."""

import json
from pathlib import Path

import pytest

from tzdeploy.config.infra import parse_infra_config
from tzdeploy.config.settings import Settings
from tzdeploy.config.user import BackendSettings, UserConfig
from tzdeploy.core.errors import (
    BackendConfigError,
    CommandCancelledError,
    CommandFailedError,
    ErrorKind,
)
from tzdeploy.deployments.capability_planner import plan_capabilities
from tzdeploy.deployments.executor import ProcessResult
from tzdeploy.deployments.models import EnvironmentStatus, ResourceSummary
from tzdeploy.deployments.opentofu import (
    DEFAULT_OPENTOFU_IMAGE,
    OpenTofuAdapter,
    OpenTofuCommand,
    OpenTofuRunInput,
    OpenTofuRunner,
    build_opentofu_container_args,
    create_opentofu_adapter,
    default_workspace_resolver,
    parse_apply_summary,
    parse_destroy_summary,
    parse_plan_summary,
)

BACKEND = BackendSettings("tz-state", "eu-west-1", "deploy", "tz/shop", "s3-lockfile")


class FakeExecutor:
    """ProcessExecutor returning canned results per OpenTofu subcommand."""

    def __init__(self, results=None):
        self.results = results or {}
        self.calls = []

    def execute(self, command, args, *, cwd=None, collect_output=True, allow_non_zero_exit=False, timeout=None):
        subcommand = args[args.index(DEFAULT_OPENTOFU_IMAGE) + 1]
        self.calls.append((command, list(args), allow_non_zero_exit))
        result = self.results.get(subcommand, ProcessResult(0))
        if isinstance(result, BaseException):
            raise result
        if result.exit_code != 0 and not allow_non_zero_exit:
            raise CommandFailedError(
                f"Command failed with exit code {result.exit_code}: {command}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def subcommands(self):
        return [args[args.index(DEFAULT_OPENTOFU_IMAGE) + 1] for _, args, _ in self.calls]


def _adapter(executor, infra=None):
    runner = OpenTofuRunner(executor=executor)
    return OpenTofuAdapter(runner, BACKEND, infra=infra, resolve_workspace=lambda p, e: p)


class TestSummaryParsing:
    """Tests for OpenTofu summary parsing."""

    def test_plan(self):
        text = "...\nPlan: 3 to add, 1 to change, 2 to destroy.\n"
        assert parse_plan_summary(text) == ResourceSummary(3, 1, 2)

    def test_apply(self):
        text = "Apply complete! Resources: 2 added, 0 changed, 1 destroyed."
        assert parse_apply_summary(text) == ResourceSummary(2, 0, 1)

    def test_destroy(self):
        assert parse_destroy_summary("Destroy complete! Resources: 5 destroyed.") == ResourceSummary(0, 0, 5)

    def test_no_summary_is_zero(self):
        summary = parse_plan_summary("No changes. Your infrastructure matches the configuration.")
        assert summary == ResourceSummary()
        assert not summary.has_changes


class TestBuildContainerArgs:
    """Tests for build_opentofu_container_args."""

    def _args(self, action, tmp_path, environ=None, module_plan=None):
        run_input = OpenTofuRunInput("/work/shop", "staging", BACKEND, module_plan)
        return build_opentofu_container_args(
            "tofu:test",
            action,
            run_input,
            environ=environ or {},
            aws_config_dir=tmp_path / "no-aws",
        )

    def test_container_layout(self, tmp_path):
        args = self._args(OpenTofuCommand.PLAN, tmp_path)

        assert args[:4] == ["run", "--rm", "-v", "/work/shop:/workspace"]
        assert args[args.index("-w") + 1] == "/workspace"
        image_at = args.index("tofu:test")
        assert args[image_at + 1 :] == [
            "plan",
            "-input=false",
            "-no-color",
            "-var=tz_environment_id=staging",
        ]

    def test_backend_env_scoped_to_environment(self, tmp_path):
        args = self._args(OpenTofuCommand.PLAN, tmp_path)

        env = [args[i + 1] for i, arg in enumerate(args) if arg == "-e"]
        assert "AWS_PROFILE=deploy" in env
        assert "TZ_AWS_BACKEND_BUCKET=tz-state" in env
        assert "TZ_AWS_BACKEND_STATE_KEY=tz/shop/staging/tofu.tfstate" in env

    def test_passes_through_non_blank_aws_env(self, tmp_path):
        args = self._args(
            OpenTofuCommand.PLAN,
            tmp_path,
            environ={"AWS_ACCESS_KEY_ID": "AKIAEXAMPLE", "AWS_SESSION_TOKEN": "  ", "HOME": "/root"},
        )

        env = [args[i + 1] for i, arg in enumerate(args) if arg == "-e"]
        assert "AWS_ACCESS_KEY_ID=AKIAEXAMPLE" in env
        assert not any(item.startswith("AWS_SESSION_TOKEN") for item in env)
        assert not any(item.startswith("HOME") for item in env)

    def test_mounts_aws_config_when_present(self, tmp_path):
        aws_dir = tmp_path / ".aws"
        aws_dir.mkdir()
        run_input = OpenTofuRunInput("/work", "dev", BACKEND)

        args = build_opentofu_container_args(
            "tofu:test", OpenTofuCommand.INIT, run_input, environ={}, aws_config_dir=aws_dir
        )

        assert f"{aws_dir}:/root/.aws:ro" in args
        assert args[-3:] == ["init", "-input=false", "-no-color"]

    @pytest.mark.parametrize("action", [OpenTofuCommand.APPLY, OpenTofuCommand.DESTROY])
    def test_mutating_actions_auto_approve(self, action, tmp_path):
        args = self._args(action, tmp_path)

        assert args[args.index("tofu:test") + 1 : args.index("tofu:test") + 3] == [
            action.value,
            "-auto-approve",
        ]

    def test_module_plan_variable(self, tmp_path):
        plan = plan_capabilities("staging", ["postgres", "appRuntime"])

        args = self._args(OpenTofuCommand.APPLY, tmp_path, module_plan=plan)

        expected = "-var=tz_modules=" + json.dumps(["module.appRuntime.v1", "module.postgres.v1"])
        assert expected in args


class TestOpenTofuAdapterPlan:
    """Tests for OpenTofuAdapter.plan."""

    def test_plan_with_changes(self, tmp_path):
        show = {
            "resource_changes": [
                {
                    "address": "aws_s3_bucket.assets",
                    "type": "aws_s3_bucket",
                    "provider_name": "registry.opentofu.org/hashicorp/aws",
                    "change": {"actions": ["create"]},
                },
                {"address": "aws_iam_role.app", "change": {"actions": ["no-op"]}},
            ]
        }
        executor = FakeExecutor(
            {
                "plan": ProcessResult(0, stdout="Plan: 1 to add, 0 to change, 0 to destroy."),
                "show": ProcessResult(0, stdout=json.dumps(show)),
            }
        )

        result = _adapter(executor).plan(str(tmp_path), "staging")

        assert result.success
        assert result.status is EnvironmentStatus.DRIFTED
        assert result.drift_detected
        assert result.summary == ResourceSummary(add=1)
        assert [c.address for c in result.planned_changes] == ["aws_s3_bucket.assets"]
        assert result.planned_changes[0].type == "aws_s3_bucket"
        assert executor.subcommands() == ["init", "plan", "init", "show"]

    def test_plan_without_changes(self, tmp_path):
        executor = FakeExecutor({"plan": ProcessResult(0, stdout="No changes.")})

        result = _adapter(executor).plan(str(tmp_path), "staging")

        assert result.status is EnvironmentStatus.HEALTHY
        assert not result.drift_detected
        assert result.planned_changes == []

    def test_runner_unavailable(self, tmp_path):
        executor = FakeExecutor({"init": ProcessResult(127, stderr="docker: command not found")})

        result = _adapter(executor).plan(str(tmp_path), "staging")

        assert result.status is EnvironmentStatus.FAILED
        assert [e.kind for e in result.errors] == [ErrorKind.RUNNER_UNAVAILABLE]
        assert "Docker/OpenTofu runner unavailable" in result.errors[0].message

    def test_command_failure_carries_stderr(self, tmp_path):
        executor = FakeExecutor({"plan": ProcessResult(1, stderr="Error: No valid credential sources\n")})

        result = _adapter(executor).plan(str(tmp_path), "staging")

        assert [e.kind for e in result.errors] == [ErrorKind.TF_CMD_FAILED]
        assert result.errors[0].message == "Error: No valid credential sources"
        assert any("No valid credential" in line for line in result.logs)

    def test_invalid_capability_plan(self, tmp_path):
        infra = parse_infra_config({"environments": [{"id": "staging", "capabilities": ["postgres"]}]})
        executor = FakeExecutor()

        result = _adapter(executor, infra).plan(str(tmp_path), "staging")

        assert [e.kind for e in result.errors] == [ErrorKind.CAPABILITY_PLAN_INVALID]
        assert executor.calls == []

    def test_unexpected_exception(self, tmp_path):
        executor = FakeExecutor({"init": OSError("disk full")})

        result = _adapter(executor).plan(str(tmp_path), "staging")

        assert [e.kind for e in result.errors] == [ErrorKind.ADAPTER_ERROR]

    def test_cancellation_propagates(self, tmp_path):
        executor = FakeExecutor({"plan": CommandCancelledError("timed out")})

        with pytest.raises(CommandCancelledError):
            _adapter(executor).plan(str(tmp_path), "staging")


class PlanFileExecutor(FakeExecutor):
    """Writes the saved plan into the workspace like the container would."""

    def execute(self, command, args, *, cwd=None, **kwargs):
        if "-out" in args:
            (Path(cwd) / args[args.index("-out") + 1]).write_bytes(b"plan")
        return super().execute(command, args, cwd=cwd, **kwargs)


class TestSavedPlanCleanup:
    """The saved plan file never outlives run_plan_with_json."""

    def test_removed_after_show(self, tmp_path):
        executor = PlanFileExecutor({"plan": ProcessResult(0, stdout="Plan: 1 to add, 0 to change, 0 to destroy.")})

        _adapter(executor).plan(str(tmp_path), "staging")

        assert "show" in executor.subcommands()
        assert not (tmp_path / ".tz-plan-staging.bin").exists()

    def test_removed_when_show_fails(self, tmp_path):
        executor = PlanFileExecutor({"show": ProcessResult(1, stderr="Error: unreadable plan")})

        result = _adapter(executor).plan(str(tmp_path), "staging")

        assert [e.kind for e in result.errors] == [ErrorKind.TF_CMD_FAILED]
        assert not (tmp_path / ".tz-plan-staging.bin").exists()

    def test_removed_when_cancelled(self, tmp_path):
        executor = PlanFileExecutor({"show": CommandCancelledError("timed out")})

        with pytest.raises(CommandCancelledError):
            _adapter(executor).plan(str(tmp_path), "staging")

        assert not (tmp_path / ".tz-plan-staging.bin").exists()

    def test_missing_plan_file_is_fine(self, tmp_path):
        executor = FakeExecutor({"plan": ProcessResult(0, stdout="No changes.")})

        result = _adapter(executor).plan(str(tmp_path), "staging")

        assert result.success
        assert list(tmp_path.iterdir()) == []


class TestOpenTofuAdapterApplyDestroy:
    """Tests for OpenTofuAdapter.apply and destroy."""

    def test_apply_reads_provider_outputs(self, tmp_path):
        outputs = {"app_url": {"value": "https://staging.example.com", "sensitive": False}}
        executor = FakeExecutor(
            {
                "apply": ProcessResult(0, stdout="Apply complete! Resources: 3 added, 0 changed, 0 destroyed."),
                "output": ProcessResult(0, stdout=json.dumps(outputs)),
            }
        )

        result = _adapter(executor).apply(str(tmp_path), "staging")

        assert result.success
        assert result.summary == ResourceSummary(add=3)
        assert result.provider_outputs == {"app_url": "https://staging.example.com"}

    def test_apply_survives_unreadable_outputs(self, tmp_path):
        executor = FakeExecutor({"output": ProcessResult(1, stderr="Error: no state")})

        result = _adapter(executor).apply(str(tmp_path), "staging")

        assert result.success
        assert result.provider_outputs == {}

    def test_destroy_summary(self, tmp_path):
        executor = FakeExecutor(
            {"destroy": ProcessResult(0, stdout="Destroy complete! Resources: 4 destroyed.")}
        )

        result = _adapter(executor).destroy(str(tmp_path), "staging")

        assert result.summary == ResourceSummary(destroy=4)
        assert "-auto-approve" in executor.calls[-1][1]


class TestOpenTofuAdapterReport:
    """Tests for OpenTofuAdapter.report."""

    def test_exit_two_is_drift(self, tmp_path):
        executor = FakeExecutor({"plan": ProcessResult(2, stdout="Plan: 0 to add, 1 to change, 0 to destroy.")})

        result = _adapter(executor).report(str(tmp_path), "staging")

        assert result.status is EnvironmentStatus.DRIFTED
        assert result.drift_detected
        plan_call = next(call for call in executor.calls if "plan" in call[1])
        assert "-detailed-exitcode" in plan_call[1]
        assert plan_call[2] is True

    def test_exit_zero_is_healthy(self, tmp_path):
        # Plan text is ignored; only the exit code decides
        executor = FakeExecutor({"plan": ProcessResult(0, stdout="Plan: 9 to add, 0 to change, 0 to destroy.")})

        result = _adapter(executor).report(str(tmp_path), "staging")

        assert result.status is EnvironmentStatus.HEALTHY
        assert not result.drift_detected

    def test_other_exit_is_failure(self, tmp_path):
        executor = FakeExecutor({"plan": ProcessResult(1, stderr="Error: state locked")})

        result = _adapter(executor).report(str(tmp_path), "staging")

        assert result.status is EnvironmentStatus.FAILED
        assert [e.kind for e in result.errors] == [ErrorKind.TF_CMD_FAILED]
        assert result.errors[0].message == "Error: state locked"

    def test_runner_unavailable(self, tmp_path):
        executor = FakeExecutor({"init": ProcessResult(127)})

        result = _adapter(executor).report(str(tmp_path), "staging")

        assert [e.kind for e in result.errors] == [ErrorKind.RUNNER_UNAVAILABLE]


class TestCreateOpenTofuAdapter:
    """Tests for create_opentofu_adapter and workspace resolution."""

    def test_requires_backend(self):
        with pytest.raises(BackendConfigError) as exc_info:
            create_opentofu_adapter(UserConfig(), settings=Settings(_env_file=None))

        assert exc_info.value.kind is ErrorKind.BACKEND_CONFIG_INVALID

    def test_uses_settings(self):
        config = UserConfig()
        config.aws.backend = BACKEND
        settings = Settings(_env_file=None, container_command="podman", opentofu_image="tofu:pinned")

        adapter = create_opentofu_adapter(config, settings=settings, executor=FakeExecutor())

        assert adapter.backend is BACKEND
        assert adapter.runner.container_command == "podman"
        assert adapter.runner.image == "tofu:pinned"

    def test_workspace_prefers_materialized_directory(self, tmp_path):
        assert default_workspace_resolver(str(tmp_path), "staging") == str(tmp_path)

        materialized = Path(tmp_path) / ".tz" / "infra" / "staging"
        materialized.mkdir(parents=True)

        assert default_workspace_resolver(str(tmp_path), "staging") == str(materialized)
