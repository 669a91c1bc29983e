"""Tests for the project delete guard."""

from datetime import timedelta

import pytest

from tzdeploy.config.project import upsert_environment_outputs
from tzdeploy.core.errors import ProjectConfigNotFoundError
from tzdeploy.deployments.delete_guard import evaluate_project_delete_guard
from tzdeploy.deployments.models import (
    DeploymentAction,
    DeploymentRunRecord,
    EnvironmentLock,
    OutputSource,
    OutputType,
    OutputWrite,
    RunStatus,
)
from tzdeploy.deployments.orchestrator import DestroyConfirmation

from conftest import START


def _run(record_id, environment_id, action, finished_at, status=RunStatus.SUCCESS):
    return DeploymentRunRecord(
        id=record_id,
        environment_id=environment_id,
        action=action,
        status=status,
        started_at=finished_at,
        finished_at=finished_at,
        created_at=finished_at,
        expires_at=finished_at + timedelta(days=30),
    )


def _seed_history(store, project_path, *records):
    document = store.load(project_path)
    document.run_history.extend(records)
    store.save(project_path, document)


class TestEvaluateProjectDeleteGuard:
    """Tests for evaluate_project_delete_guard."""

    def test_empty_project_allowed(self, store, project_path):
        result = evaluate_project_delete_guard(store, project_path)

        assert result.allowed
        assert result.to_dict() == {"allowed": True, "blocks": []}

    def test_apply_without_destroy_blocks(self, store, project_path):
        _seed_history(store, project_path, _run("r1", "staging", DeploymentAction.APPLY, START))

        result = evaluate_project_delete_guard(store, project_path)

        assert not result.allowed
        block = result.blocks[0]
        assert block.environment_id == "staging"
        assert "apply" in block.reason
        assert block.remediation == "Open Infra Environments > 'staging' and run Destroy environment."

    def test_later_destroy_allows(self, store, project_path):
        _seed_history(
            store,
            project_path,
            _run("r1", "staging", DeploymentAction.APPLY, START),
            _run("r2", "staging", DeploymentAction.DESTROY, START + timedelta(hours=1)),
        )

        assert evaluate_project_delete_guard(store, project_path).allowed

    def test_destroy_before_apply_blocks(self, store, project_path):
        _seed_history(
            store,
            project_path,
            _run("r1", "staging", DeploymentAction.DESTROY, START),
            _run("r2", "staging", DeploymentAction.APPLY, START + timedelta(hours=1)),
        )

        assert not evaluate_project_delete_guard(store, project_path).allowed

    def test_failed_destroy_does_not_count(self, store, project_path):
        _seed_history(
            store,
            project_path,
            _run("r1", "staging", DeploymentAction.APPLY, START),
            _run(
                "r2",
                "staging",
                DeploymentAction.DESTROY,
                START + timedelta(hours=1),
                status=RunStatus.FAILED,
            ),
        )

        assert not evaluate_project_delete_guard(store, project_path).allowed

    def test_failed_apply_only_allows(self, store, project_path):
        _seed_history(
            store,
            project_path,
            _run("r1", "staging", DeploymentAction.APPLY, START, status=RunStatus.FAILED),
        )

        assert evaluate_project_delete_guard(store, project_path).allowed

    def test_active_lock_blocks(self, store, project_path):
        document = store.load(project_path)
        document.environment_state("dev").active_lock = EnvironmentLock(
            "run_x", START, DeploymentAction.PLAN
        )
        store.save(project_path, document)

        result = evaluate_project_delete_guard(store, project_path)

        assert [b.environment_id for b in result.blocks] == ["dev"]
        assert result.blocks[0].reason == "active deployment lock present"

    def test_provider_outputs_without_destroy_block(self, store, project_path):
        document = store.load(project_path)
        upsert_environment_outputs(
            document,
            "staging",
            [OutputWrite("app_url", OutputType.STRING, OutputSource.PROVIDER_OUTPUT, value="https://x")],
            now=START,
        )
        store.save(project_path, document)

        result = evaluate_project_delete_guard(store, project_path)

        assert not result.allowed
        assert "provider outputs" in result.blocks[0].reason

    def test_provider_outputs_before_destroy_allow(self, store, project_path):
        document = store.load(project_path)
        upsert_environment_outputs(
            document,
            "staging",
            [OutputWrite("app_url", OutputType.STRING, OutputSource.PROVIDER_OUTPUT, value="https://x")],
            now=START,
        )
        store.save(project_path, document)
        _seed_history(
            store,
            project_path,
            _run("r1", "staging", DeploymentAction.DESTROY, START + timedelta(minutes=5)),
        )

        assert evaluate_project_delete_guard(store, project_path).allowed

    def test_template_defaults_do_not_block(self, store, project_path):
        document = store.load(project_path)
        upsert_environment_outputs(
            document,
            "staging",
            [OutputWrite("region", OutputType.STRING, OutputSource.TEMPLATE_DEFAULT, value="eu-west-1")],
            now=START,
        )
        store.save(project_path, document)

        assert evaluate_project_delete_guard(store, project_path).allowed

    def test_blocks_sorted_by_environment(self, store, project_path):
        _seed_history(
            store,
            project_path,
            _run("r1", "staging", DeploymentAction.APPLY, START),
            _run("r2", "dev", DeploymentAction.APPLY, START),
            _run("r3", "prod", DeploymentAction.APPLY, START),
        )

        result = evaluate_project_delete_guard(store, project_path)

        assert [b.environment_id for b in result.blocks] == ["dev", "prod", "staging"]

    def test_missing_project_raises(self, store, tmp_path):
        with pytest.raises(ProjectConfigNotFoundError):
            evaluate_project_delete_guard(store, str(tmp_path))


class TestDeleteGuardWithPersistedState:
    """The guard must not depend on run history that retention can prune."""

    def test_apply_recorded_only_in_state_blocks(self, store, project_path):
        document = store.load(project_path)
        document.environment_state("staging").last_apply_at = START
        store.save(project_path, document)

        result = evaluate_project_delete_guard(store, project_path)

        assert [b.environment_id for b in result.blocks] == ["staging"]
        assert "apply" in result.blocks[0].reason

    def test_destroy_in_state_after_apply_allows(self, store, project_path):
        document = store.load(project_path)
        state = document.environment_state("staging")
        state.last_apply_at = START
        state.last_destroy_at = START + timedelta(hours=1)
        store.save(project_path, document)

        assert evaluate_project_delete_guard(store, project_path).allowed

    def test_apply_in_state_after_destroy_in_history_blocks(self, store, project_path):
        document = store.load(project_path)
        document.environment_state("staging").last_apply_at = START + timedelta(hours=2)
        store.save(project_path, document)
        _seed_history(
            store,
            project_path,
            _run("r1", "staging", DeploymentAction.DESTROY, START + timedelta(hours=1)),
        )

        assert not evaluate_project_delete_guard(store, project_path).allowed

    def test_apply_still_blocks_after_its_run_expires(self, orchestrator, store, project_path, clock):
        orchestrator.apply(project_path, "staging")
        clock.advance(days=31)
        orchestrator.report(project_path, "dev")

        document = store.load(project_path)
        assert {record.environment_id for record in document.run_history} == {"dev"}

        result = evaluate_project_delete_guard(store, project_path)

        assert not result.allowed
        assert [b.environment_id for b in result.blocks] == ["staging"]

    def test_destroy_after_expired_apply_allows(self, orchestrator, store, project_path, clock):
        orchestrator.apply(project_path, "staging")
        clock.advance(days=31)
        orchestrator.destroy(project_path, "staging", DestroyConfirmation("staging", "destroy staging"))

        assert evaluate_project_delete_guard(store, project_path).allowed
