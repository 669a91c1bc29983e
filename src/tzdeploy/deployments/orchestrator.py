"""
Deployment orchestrator.

Drives plan/apply/destroy/report for one (project, environment) pair:

    Idle -> Locked -> Idle
    Locked (age > stale threshold) -> Stale -> force-unlock -> NeedsReplan
    NeedsReplan -> successful plan -> Idle

Locks are advisory and live in the project document. Stale locks are
never resolved automatically; an operator must force-unlock, after which
apply is refused until a plan succeeds.

Every outcome is a ``DeploymentOutcome``. Blocked preconditions return an
outcome with a single error and leave no run record. Runs that reach the
adapter are always recorded and always release their lock.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import structlog

from tzdeploy.config.infra import InfraConfig
from tzdeploy.config.project import (
    ProjectDocument,
    ProjectStore,
    require_project_document,
    upsert_environment_outputs,
)
from tzdeploy.config.settings import Settings, get_settings
from tzdeploy.core.errors import (
    CommandCancelledError,
    DeploymentError,
    ErrorKind,
    ProjectConfigNotFoundError,
    ValidationError,
)
from tzdeploy.deployments.capability_planner import resolve_environment_outputs
from tzdeploy.deployments.models import (
    AdapterResult,
    DeploymentAction,
    DeploymentOutcome,
    DeploymentRunRecord,
    EnvironmentDeploymentState,
    EnvironmentLock,
    EnvironmentStatus,
    RunStatus,
    format_timestamp,
    utc_now,
)
from tzdeploy.deployments.run_history import RunHistoryStore, RunInput, redact_logs

logger = structlog.get_logger()

PROD_ENVIRONMENT_ID = "prod"
PROD_DESTROY_PHRASE = "destroy prod"


def expected_destroy_phrase(environment_id: str) -> str:
    return f"destroy {environment_id}"


class DeployAdapter(Protocol):
    """Runs infrastructure actions for one environment."""

    def plan(self, project_path: str, environment_id: str) -> AdapterResult: ...

    def apply(self, project_path: str, environment_id: str) -> AdapterResult: ...

    def destroy(self, project_path: str, environment_id: str) -> AdapterResult: ...

    def report(self, project_path: str, environment_id: str) -> AdapterResult: ...


@dataclass(frozen=True)
class DestroyConfirmation:
    """Typed confirmations required before destroying an environment."""

    confirm_environment_id: str
    confirm_phrase: str
    confirm_prod_phrase: str | None = None


def _new_run_id() -> str:
    return f"run_{uuid.uuid4().hex}"


def _minutes(delta: timedelta) -> str:
    return f"{delta.total_seconds() / 60:g}m"


class DeploymentOrchestrator:
    """
    Sequences deployment actions against a DeployAdapter.

    Args:
        store: Project document store
        adapter: Infrastructure adapter
        settings: Lock and freshness thresholds, retention
        infra: Environment declarations, used to resolve outputs
        clock: Source of the current time
        actor: Recorded on every run
    """

    def __init__(
        self,
        store: ProjectStore,
        adapter: DeployAdapter,
        *,
        settings: Settings | None = None,
        infra: InfraConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        actor: str | None = None,
        history: RunHistoryStore | None = None,
        run_id_factory: Callable[[], str] = _new_run_id,
    ):
        settings = settings or get_settings()
        self.store = store
        self.adapter = adapter
        self.infra = infra
        self.clock = clock
        self.actor = actor
        self.history = history or RunHistoryStore(
            store, retention_days=settings.run_history_retention_days
        )
        self.run_id_factory = run_id_factory
        self.stale_lock_threshold = timedelta(minutes=settings.stale_lock_threshold_minutes)
        self.lock_timeout = timedelta(minutes=settings.lock_timeout_minutes)
        self.prod_plan_freshness = timedelta(minutes=settings.prod_plan_freshness_minutes)

    # Locking

    def _lock_error(
        self, environment_id: str, lock: EnvironmentLock, now: datetime
    ) -> DeploymentError:
        if lock.is_stale(now, self.stale_lock_threshold):
            return DeploymentError(
                ErrorKind.LOCK_STALE,
                f"Existing lock for '{environment_id}' is stale "
                f"(> {_minutes(self.stale_lock_threshold)}, acquired "
                f"{format_timestamp(lock.acquired_at)} by run {lock.run_id}). "
                "Force-unlock before retrying.",
            )
        return DeploymentError(
            ErrorKind.LOCK_ACTIVE,
            f"Lock already held for '{environment_id}' by run {lock.run_id} "
            f"({lock.action.value}). Timeout policy is {_minutes(self.lock_timeout)}.",
        )

    def _acquire_lock(
        self,
        project_path: str,
        environment_id: str,
        action: DeploymentAction,
        now: datetime,
        document: ProjectDocument | None = None,
    ) -> EnvironmentLock | DeploymentError:
        document = document or require_project_document(self.store, project_path)
        state = document.environment_state(environment_id)
        if state.active_lock is not None:
            error = self._lock_error(environment_id, state.active_lock, now)
            logger.info(
                "lock_refused",
                environment=environment_id,
                held_by=state.active_lock.run_id,
                error_kind=error.kind.value,
            )
            return error

        lock = EnvironmentLock(run_id=self.run_id_factory(), acquired_at=now, action=action)
        state.active_lock = lock
        self.store.save(project_path, document)
        logger.info(
            "lock_acquired",
            environment=environment_id,
            run_id=lock.run_id,
            action=action.value,
        )
        return lock

    def _release_lock(self, project_path: str, environment_id: str, run_id: str) -> None:
        """Clear the lock only if it still belongs to ``run_id``."""
        document = self.store.load(project_path)
        if document is None:
            return
        state = document.environments.get(environment_id)
        if state is None or state.active_lock is None or state.active_lock.run_id != run_id:
            return
        state.active_lock = None
        self.store.save(project_path, document)
        logger.info("lock_released", environment=environment_id, run_id=run_id)

    def force_unlock_environment(
        self, project_path: str, environment_id: str, now: datetime | None = None
    ) -> EnvironmentLock | None:
        """
        Clear the environment's lock and require a fresh plan before apply.

        Returns:
            The lock that was cleared, if any
        """
        now = now or self.clock()
        document = require_project_document(self.store, project_path)
        state = document.environment_state(environment_id)
        previous = state.active_lock
        state.active_lock = None
        state.needs_replan_after_force_unlock = True
        state.last_force_unlock_at = now
        self.store.save(project_path, document)
        logger.warning(
            "environment_force_unlocked",
            environment=environment_id,
            previous_run_id=previous.run_id if previous else None,
        )
        return previous

    # Actions

    def plan(
        self, project_path: str, environment_id: str, now: datetime | None = None
    ) -> DeploymentOutcome:
        now = now or self.clock()
        lock = self._acquire_lock(project_path, environment_id, DeploymentAction.PLAN, now)
        if isinstance(lock, DeploymentError):
            return DeploymentOutcome.blocked_by(
                DeploymentAction.PLAN, environment_id, lock.kind, lock.message
            )

        def update(state: EnvironmentDeploymentState, result: AdapterResult, at: datetime) -> None:
            if not result.success:
                state.set_status(EnvironmentStatus.FAILED, at)
                return
            state.set_status(result.status, at)
            state.last_plan_at = at
            state.last_plan_drift_detected = result.drift_detected
            state.needs_replan_after_force_unlock = False

        return self._run_with_lock(
            project_path, environment_id, DeploymentAction.PLAN, lock, now, self.adapter.plan, update
        )

    def apply(
        self,
        project_path: str,
        environment_id: str,
        now: datetime | None = None,
        *,
        confirm_prod_drift: bool = False,
    ) -> DeploymentOutcome:
        """
        Apply an environment.

        prod additionally needs a fresh plan and, when the last plan or report
        found drift, ``confirm_prod_drift``.
        """
        now = now or self.clock()
        document = require_project_document(self.store, project_path)
        state = document.environment_state(environment_id)

        if state.needs_replan_after_force_unlock:
            return DeploymentOutcome.blocked_by(
                DeploymentAction.APPLY,
                environment_id,
                ErrorKind.REPLAN_REQUIRED_AFTER_FORCE_UNLOCK,
                f"Environment '{environment_id}' was force-unlocked. Run plan before apply.",
            )

        if environment_id == PROD_ENVIRONMENT_ID:
            if state.last_plan_at is None or now - state.last_plan_at > self.prod_plan_freshness:
                return DeploymentOutcome.blocked_by(
                    DeploymentAction.APPLY,
                    environment_id,
                    ErrorKind.PROD_PLAN_STALE,
                    "prod apply requires a successful plan not older than "
                    f"{_minutes(self.prod_plan_freshness)}. Run plan again.",
                )
            if state.last_plan_drift_detected and not confirm_prod_drift:
                return DeploymentOutcome.blocked_by(
                    DeploymentAction.APPLY,
                    environment_id,
                    ErrorKind.PROD_DRIFT_CONFIRM_REQUIRED,
                    "prod has drift from the last plan or report. "
                    "Review the plan and confirm the drift explicitly.",
                )

        lock = self._acquire_lock(
            project_path, environment_id, DeploymentAction.APPLY, now, document=document
        )
        if isinstance(lock, DeploymentError):
            return DeploymentOutcome.blocked_by(
                DeploymentAction.APPLY, environment_id, lock.kind, lock.message
            )

        def update(state: EnvironmentDeploymentState, result: AdapterResult, at: datetime) -> None:
            if not result.success:
                state.set_status(EnvironmentStatus.FAILED, at)
                return
            state.set_status(EnvironmentStatus.HEALTHY, at)
            state.last_apply_at = at

        return self._run_with_lock(
            project_path, environment_id, DeploymentAction.APPLY, lock, now, self.adapter.apply, update
        )

    def destroy(
        self,
        project_path: str,
        environment_id: str,
        confirmation: DestroyConfirmation,
        now: datetime | None = None,
    ) -> DeploymentOutcome:
        error = self._check_destroy_confirmation(environment_id, confirmation)
        if error is not None:
            return DeploymentOutcome.blocked_by(
                DeploymentAction.DESTROY, environment_id, error.kind, error.message
            )

        now = now or self.clock()
        lock = self._acquire_lock(project_path, environment_id, DeploymentAction.DESTROY, now)
        if isinstance(lock, DeploymentError):
            return DeploymentOutcome.blocked_by(
                DeploymentAction.DESTROY, environment_id, lock.kind, lock.message
            )

        def update(state: EnvironmentDeploymentState, result: AdapterResult, at: datetime) -> None:
            # No verified infrastructure is expected to remain
            state.set_status(EnvironmentStatus.UNKNOWN, at)
            if result.success:
                state.last_destroy_at = at

        return self._run_with_lock(
            project_path,
            environment_id,
            DeploymentAction.DESTROY,
            lock,
            now,
            self.adapter.destroy,
            update,
        )

    def report(
        self, project_path: str, environment_id: str, now: datetime | None = None
    ) -> DeploymentOutcome:
        """Read-only drift check. Takes no lock."""
        now = now or self.clock()
        require_project_document(self.store, project_path)

        def update(state: EnvironmentDeploymentState, result: AdapterResult, at: datetime) -> None:
            state.set_status(result.status, at)
            state.last_plan_drift_detected = result.drift_detected
            state.last_reported_at = at

        return self._run(
            project_path, environment_id, DeploymentAction.REPORT, None, now, self.adapter.report, update
        )

    def report_refresh_loop(
        self,
        project_path: str,
        environment_id: str,
        interval_seconds: float = 5,
        max_cycles: int = 3,
        on_cycle: Callable[[int, DeploymentOutcome], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> list[DeploymentOutcome]:
        """Run ``report`` repeatedly. A failing cycle never stops later cycles."""
        outcomes = []
        for cycle in range(1, max_cycles + 1):
            try:
                outcome = self.report(project_path, environment_id)
            except ProjectConfigNotFoundError:
                raise
            except Exception as e:
                logger.warning(
                    "report_cycle_failed", environment=environment_id, cycle=cycle, error=str(e)
                )
                outcome = DeploymentOutcome(
                    action=DeploymentAction.REPORT,
                    environment_id=environment_id,
                    status=EnvironmentStatus.FAILED,
                    errors=[DeploymentError(ErrorKind.ADAPTER_ERROR, str(e) or type(e).__name__)],
                )
            outcomes.append(outcome)
            if on_cycle is not None:
                on_cycle(cycle, outcome)
            if cycle < max_cycles and interval_seconds > 0:
                sleep(interval_seconds)
        return outcomes

    # Internals

    @staticmethod
    def _check_destroy_confirmation(
        environment_id: str, confirmation: DestroyConfirmation
    ) -> DeploymentError | None:
        if confirmation.confirm_environment_id != environment_id:
            return DeploymentError(
                ErrorKind.DESTROY_ENVIRONMENT_MISMATCH,
                f"Confirmation environment '{confirmation.confirm_environment_id}' "
                f"does not match '{environment_id}'.",
            )
        expected = expected_destroy_phrase(environment_id)
        if confirmation.confirm_phrase != expected:
            return DeploymentError(
                ErrorKind.DESTROY_CONFIRMATION_PHRASE_INVALID,
                f"Expected confirmation phrase '{expected}'.",
            )
        if environment_id == PROD_ENVIRONMENT_ID and confirmation.confirm_prod_phrase != PROD_DESTROY_PHRASE:
            return DeploymentError(
                ErrorKind.PROD_DESTROY_SECOND_CONFIRM_REQUIRED,
                f"prod destroy requires a second confirmation: '{PROD_DESTROY_PHRASE}'.",
            )
        return None

    def _run_with_lock(
        self,
        project_path: str,
        environment_id: str,
        action: DeploymentAction,
        lock: EnvironmentLock,
        now: datetime,
        call: Callable[[str, str], AdapterResult],
        update: Callable[[EnvironmentDeploymentState, AdapterResult, datetime], None],
    ) -> DeploymentOutcome:
        try:
            return self._run(project_path, environment_id, action, lock, now, call, update)
        finally:
            self._release_lock(project_path, environment_id, lock.run_id)

    def _run(
        self,
        project_path: str,
        environment_id: str,
        action: DeploymentAction,
        lock: EnvironmentLock | None,
        now: datetime,
        call: Callable[[str, str], AdapterResult],
        update: Callable[[EnvironmentDeploymentState, AdapterResult, datetime], None],
    ) -> DeploymentOutcome:
        log = logger.bind(project=project_path, environment=environment_id, action=action.value)
        log.info("deployment_action_started", run_id=lock.run_id if lock else None)

        try:
            result = call(project_path, environment_id)
        except CommandCancelledError as e:
            log.warning("deployment_action_cancelled", error=e.message)
            result = self._failed_result(action, ErrorKind.OPERATION_CANCELLED, e.message)
        except KeyboardInterrupt:
            log.warning("deployment_action_interrupted")
            self._complete(
                project_path,
                environment_id,
                action,
                lock,
                now,
                self._failed_result(action, ErrorKind.OPERATION_CANCELLED, "Interrupted by user"),
                update,
            )
            raise
        except Exception as e:
            log.error("deployment_action_error", error=str(e), error_type=type(e).__name__)
            result = self._failed_result(action, ErrorKind.ADAPTER_ERROR, str(e) or type(e).__name__)

        outcome = self._complete(project_path, environment_id, action, lock, now, result, update)
        log.info(
            "deployment_action_finished",
            success=outcome.success,
            status=outcome.status.value if outcome.status else None,
        )
        return outcome

    @staticmethod
    def _failed_result(action: DeploymentAction, kind: ErrorKind, message: str) -> AdapterResult:
        return AdapterResult(
            status=EnvironmentStatus.FAILED,
            errors=[DeploymentError(kind, message)],
            logs=[f"{action.value} failed: {message}"],
        )

    def _complete(
        self,
        project_path: str,
        environment_id: str,
        action: DeploymentAction,
        lock: EnvironmentLock | None,
        started_at: datetime,
        result: AdapterResult,
        update: Callable[[EnvironmentDeploymentState, AdapterResult, datetime], None],
    ) -> DeploymentOutcome:
        """Persist state, outputs, run record and lock release in a single save."""
        finished_at = max(self.clock(), started_at)
        document = require_project_document(self.store, project_path)
        state = document.environment_state(environment_id)
        update(state, result, started_at)

        warnings: list[str] = []
        if result.success and action in (DeploymentAction.APPLY, DeploymentAction.REPORT):
            warnings.extend(self._persist_outputs(document, environment_id, result, finished_at))

        record: DeploymentRunRecord = self.history.append(
            document,
            RunInput(
                environment_id=environment_id,
                action=action,
                status=RunStatus.SUCCESS if result.success else RunStatus.FAILED,
                actor=self.actor,
                summary=result.summary if action is not DeploymentAction.REPORT else None,
                logs=tuple(result.logs),
                started_at=started_at,
                finished_at=finished_at,
            ),
            finished_at,
        )

        if lock is not None and state.active_lock is not None and state.active_lock.run_id == lock.run_id:
            state.active_lock = None
            logger.info("lock_released", environment=environment_id, run_id=lock.run_id)

        self.store.save(project_path, document)

        return DeploymentOutcome(
            action=action,
            environment_id=environment_id,
            run_id=lock.run_id if lock else record.id,
            status=state.last_status,
            summary=result.summary,
            drift_detected=result.drift_detected,
            planned_changes=list(result.planned_changes),
            errors=list(result.errors),
            warnings=warnings,
            logs=redact_logs(result.logs),
            run_record=record,
        )

    def _persist_outputs(
        self,
        document: ProjectDocument,
        environment_id: str,
        result: AdapterResult,
        now: datetime,
    ) -> list[str]:
        if self.infra is None:
            return []
        environment = self.infra.get_environment(environment_id)
        if environment is None or not environment.outputs:
            return []
        try:
            writes = resolve_environment_outputs(environment, result.provider_outputs)
            upsert_environment_outputs(document, environment_id, writes, now)
        except ValidationError as e:
            logger.warning("output_resolution_failed", environment=environment_id, error=e.message)
            return [f"[{ErrorKind.OUTPUT_RESOLUTION_FAILED}] {e.message}"]
        return []
