"""
CLI commands for deployment lifecycle actions.

    tz deployments plan --env staging
    tz deployments apply --env prod --confirm-drift-prod
    tz deployments destroy --env prod --confirm-env prod \\
        --confirm "destroy prod" --confirm-prod "destroy prod"
    tz deployments report --env staging --watch
    tz deployments force-unlock --env staging
    tz deployments history --env staging
    tz deployments delete-check

The user config and the enablement gate are evaluated once per invocation.
Exit codes: 0 on success, 1 on any blocked or failed outcome.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

import structlog
from rich.markup import escape

from tzdeploy.cli.ux import (
    confirm,
    console,
    danger_panel,
    error,
    header,
    info,
    is_interactive,
    print_key_value,
    print_table,
    spinner,
    success,
    text_input,
    warning,
)
from tzdeploy.config.infra import load_infra_config
from tzdeploy.config.project import JsonProjectStore, ProjectStore, require_project_document
from tzdeploy.config.settings import Settings, get_settings
from tzdeploy.config.user import load_user_config
from tzdeploy.core.errors import ConfigurationError, ErrorKind, ExitCode, main_with_error_handling
from tzdeploy.deployments.delete_guard import DeleteGuardResult, evaluate_project_delete_guard
from tzdeploy.deployments.executor import ProcessExecutor
from tzdeploy.deployments.gate import (
    GateResult,
    assert_deployments_mode_enabled,
    evaluate_deployments_enablement_gate,
)
from tzdeploy.deployments.models import (
    DeploymentAction,
    DeploymentOutcome,
    DeploymentRunRecord,
    EnvironmentStatus,
    format_timestamp,
)
from tzdeploy.deployments.opentofu import create_opentofu_adapter
from tzdeploy.deployments.orchestrator import (
    PROD_DESTROY_PHRASE,
    PROD_ENVIRONMENT_ID,
    DeployAdapter,
    DeploymentOrchestrator,
    DestroyConfirmation,
    expected_destroy_phrase,
)
from tzdeploy.deployments.run_history import RunHistoryStore
from tzdeploy.logging import bind_context

logger = structlog.get_logger()


@dataclass
class DeploymentSession:
    """Collaborators resolved once for a CLI invocation."""

    project_path: str
    orchestrator: DeploymentOrchestrator
    settings: Settings


def _current_actor() -> str | None:
    return os.environ.get("USER") or os.environ.get("USERNAME")


def open_session(
    project_path: str,
    config_path: str | None = None,
    output_format: str = "text",
    *,
    settings: Settings | None = None,
    store: ProjectStore | None = None,
    executor: ProcessExecutor | None = None,
    adapter: DeployAdapter | None = None,
) -> DeploymentSession | None:
    """
    Load config, check the enablement gate and build the orchestrator.

    Returns None (after reporting the gate issues) when the gate blocks.

    Raises:
        ConfigurationError: If no user config exists
        DeploymentsDisabledError: If deployments mode is off
        BackendConfigError: If no backend is configured
    """
    settings = settings or get_settings()
    user_config = load_user_config(config_path)
    if user_config is None:
        raise ConfigurationError(
            "User config not found. Create ~/.tzdeploy/config.yaml or pass --config."
        )

    assert_deployments_mode_enabled(user_config)
    gate = evaluate_deployments_enablement_gate(user_config)
    if not gate.allowed:
        logger.warning(
            "deployments_gate_blocked", checks=[issue.check.value for issue in gate.issues]
        )
        print_gate_blocked(gate, output_format)
        return None

    project_path = str(Path(project_path).resolve())
    infra = load_infra_config(project_path)
    if adapter is None:
        adapter = create_opentofu_adapter(
            user_config, settings=settings, executor=executor, infra=infra
        )
    orchestrator = DeploymentOrchestrator(
        store or JsonProjectStore(),
        adapter,
        settings=settings,
        infra=infra,
        actor=_current_actor(),
    )
    return DeploymentSession(project_path=project_path, orchestrator=orchestrator, settings=settings)


# Output


def print_gate_blocked(gate: GateResult, output_format: str = "text") -> None:
    if output_format == "json":
        payload = {
            "success": False,
            "errors": [
                {
                    "code": ErrorKind.DEPLOYMENTS_GATE_BLOCKED.value,
                    "message": "Deployments gate blocked",
                }
            ],
            "gate": gate.to_dict(),
        }
        print(json.dumps(payload, indent=2))
        return

    error("Deployments gate blocked")
    for issue in gate.issues:
        console.print(f"   [error]•[/error] {escape(f'[{issue.check}] {issue.message}')}")
        console.print(f"     [muted]{escape(issue.remediation)}[/muted]")


def print_outcome_json(outcome: DeploymentOutcome) -> None:
    print(json.dumps(outcome.to_dict(), indent=2))


_STATUS_STYLE = {
    EnvironmentStatus.HEALTHY: "success",
    EnvironmentStatus.DRIFTED: "warning",
    EnvironmentStatus.FAILED: "error",
    EnvironmentStatus.UNKNOWN: "muted",
}


def print_outcome_summary(outcome: DeploymentOutcome, verbose: bool = False) -> None:
    """Print a deployment outcome for humans."""
    header(f"{outcome.action.value.capitalize()}: {outcome.environment_id}")

    if outcome.blocked:
        error("Blocked")
        _print_errors(outcome)
        return

    items: dict[str, str] = {}
    if outcome.status is not None:
        style = _STATUS_STYLE[outcome.status]
        items["Status"] = f"[{style}]{outcome.status.value}[/{style}]"
    if outcome.action is not DeploymentAction.REPORT:
        s = outcome.summary
        items["Summary"] = f"add={s.add}, change={s.change}, destroy={s.destroy}"
    if outcome.action in (DeploymentAction.PLAN, DeploymentAction.REPORT):
        items["Drift detected"] = "yes" if outcome.drift_detected else "no"
    if outcome.run_record is not None:
        items["Run"] = outcome.run_record.id
    print_key_value(items)

    if outcome.planned_changes:
        console.print()
        console.print("[bold]Planned changes:[/bold]")
        for change in outcome.planned_changes:
            console.print(f"  [muted]└[/muted] {escape(change.address)} ({', '.join(change.actions)})")

    for message in outcome.warnings:
        warning(message)

    if outcome.errors:
        _print_errors(outcome)
        if outcome.logs and verbose:
            console.print()
            console.print("[bold]Logs:[/bold]")
            for line in outcome.logs:
                console.print(line, markup=False, highlight=False)
        return

    console.print()
    _print_next_step(outcome)


def _print_errors(outcome: DeploymentOutcome) -> None:
    for err in outcome.errors:
        console.print(f"   [error]•[/error] {escape(str(err))}")


def _print_next_step(outcome: DeploymentOutcome) -> None:
    env = outcome.environment_id
    if outcome.action is DeploymentAction.PLAN:
        if outcome.drift_detected:
            info(f"Next step: tz deployments apply --env {env}")
        else:
            success("No changes. Infrastructure matches the configuration.")
    elif outcome.action is DeploymentAction.APPLY:
        success(f"Applied '{env}'")
    elif outcome.action is DeploymentAction.DESTROY:
        success(f"Destroyed '{env}'. Status is now unknown.")
    elif outcome.status is EnvironmentStatus.DRIFTED:
        warning(f"Remediation: review plan and apply explicitly for '{env}'.")
    elif outcome.status is EnvironmentStatus.UNKNOWN:
        info("Remediation: rerun report after backend/lock health check.")
    else:
        success(f"'{env}' is healthy")


def _emit(outcome: DeploymentOutcome, output_format: str, verbose: bool = False) -> int:
    if output_format == "json":
        print_outcome_json(outcome)
    else:
        print_outcome_summary(outcome, verbose=verbose)
    return ExitCode.SUCCESS if outcome.success else ExitCode.FAILURE


# Commands


@main_with_error_handling()
def plan_command(
    environment_id: str,
    project_path: str = ".",
    config_path: str | None = None,
    output_format: str = "text",
    verbose: bool = False,
    *,
    session: DeploymentSession | None = None,
) -> int:
    """Preview infrastructure changes for an environment."""
    session = session or open_session(project_path, config_path, output_format)
    if session is None:
        return ExitCode.FAILURE
    bind_context(project=session.project_path, environment=environment_id)

    with spinner(f"Planning {environment_id}..."):
        outcome = session.orchestrator.plan(session.project_path, environment_id)
    return _emit(outcome, output_format, verbose)


@main_with_error_handling()
def apply_command(
    environment_id: str,
    project_path: str = ".",
    config_path: str | None = None,
    confirm_drift: bool = False,
    confirm_drift_prod: bool = False,
    output_format: str = "text",
    verbose: bool = False,
    *,
    session: DeploymentSession | None = None,
) -> int:
    """
    Apply infrastructure for an environment.

    A read-only report runs first. If it finds drift, apply only proceeds
    with --confirm-drift, or --confirm-drift-prod for prod, or an
    interactive confirmation.
    """
    session = session or open_session(project_path, config_path, output_format)
    if session is None:
        return ExitCode.FAILURE
    bind_context(project=session.project_path, environment=environment_id)
    orchestrator = session.orchestrator

    with spinner(f"Checking {environment_id} for drift..."):
        preflight = orchestrator.report(session.project_path, environment_id)
    if not preflight.success:
        return _emit(preflight, output_format, verbose)

    is_prod = environment_id == PROD_ENVIRONMENT_ID
    drift_flag = "--confirm-drift-prod" if is_prod else "--confirm-drift"
    drift_confirmed = confirm_drift_prod if is_prod else confirm_drift
    if preflight.drift_detected and not drift_confirmed:
        if output_format == "text" and is_interactive():
            warning(f"Pre-apply drift check found pending changes for '{environment_id}'.")
            question = "Apply these changes to production?" if is_prod else "Apply these changes?"
            drift_confirmed = confirm(question, default=False)
        if not drift_confirmed:
            outcome = DeploymentOutcome.blocked_by(
                DeploymentAction.APPLY,
                environment_id,
                ErrorKind.PRE_APPLY_DRIFT_UNCONFIRMED,
                f"Pre-apply drift check failed for '{environment_id}'. "
                f"Run plan/review and retry with {drift_flag} when ready.",
            )
            return _emit(outcome, output_format, verbose)

    with spinner(f"Applying {environment_id}..."):
        outcome = orchestrator.apply(
            session.project_path,
            environment_id,
            confirm_prod_drift=is_prod and drift_confirmed,
        )
    return _emit(outcome, output_format, verbose)


def _prompt_destroy_confirmation(
    environment_id: str,
    confirm_env: str | None,
    confirm_phrase: str | None,
    confirm_prod: str | None,
) -> DestroyConfirmation:
    phrase = expected_destroy_phrase(environment_id)
    danger_panel(
        f"Destroy {environment_id}",
        f"This permanently destroys all resources in '{environment_id}'.\n"
        f"Type the environment id, then '{phrase}' to continue.",
    )
    if confirm_env is None:
        confirm_env = text_input("Environment id to destroy:")
    if confirm_phrase is None:
        confirm_phrase = text_input(f"Type '{phrase}':")
    if environment_id == PROD_ENVIRONMENT_ID and confirm_prod is None:
        confirm_prod = text_input(f"Production: type '{PROD_DESTROY_PHRASE}' once more:")
    return DestroyConfirmation(confirm_env, confirm_phrase, confirm_prod)


@main_with_error_handling()
def destroy_command(
    environment_id: str,
    project_path: str = ".",
    config_path: str | None = None,
    confirm_env: str | None = None,
    confirm_phrase: str | None = None,
    confirm_prod: str | None = None,
    output_format: str = "text",
    verbose: bool = False,
    *,
    session: DeploymentSession | None = None,
) -> int:
    """Destroy an environment after typed confirmations."""
    missing = confirm_env is None or confirm_phrase is None or (
        environment_id == PROD_ENVIRONMENT_ID and confirm_prod is None
    )
    if missing and output_format == "text" and is_interactive():
        confirmation = _prompt_destroy_confirmation(
            environment_id, confirm_env, confirm_phrase, confirm_prod
        )
    else:
        confirmation = DestroyConfirmation(confirm_env or "", confirm_phrase or "", confirm_prod)

    session = session or open_session(project_path, config_path, output_format)
    if session is None:
        return ExitCode.FAILURE
    bind_context(project=session.project_path, environment=environment_id)

    with spinner(f"Destroying {environment_id}..."):
        outcome = session.orchestrator.destroy(session.project_path, environment_id, confirmation)
    return _emit(outcome, output_format, verbose)


@main_with_error_handling()
def report_command(
    environment_id: str,
    project_path: str = ".",
    config_path: str | None = None,
    watch: bool = False,
    interval_seconds: float | None = None,
    max_cycles: int | None = None,
    output_format: str = "text",
    verbose: bool = False,
    *,
    session: DeploymentSession | None = None,
) -> int:
    """Report drift and health. With --watch, repeat on an interval."""
    session = session or open_session(project_path, config_path, output_format)
    if session is None:
        return ExitCode.FAILURE
    bind_context(project=session.project_path, environment=environment_id)
    orchestrator = session.orchestrator

    if not watch:
        with spinner(f"Checking {environment_id}..."):
            outcome = orchestrator.report(session.project_path, environment_id)
        return _emit(outcome, output_format, verbose)

    interval = interval_seconds if interval_seconds is not None else session.settings.watch_interval_seconds
    cycles = max_cycles if max_cycles is not None else session.settings.watch_max_cycles

    def on_cycle(cycle: int, outcome: DeploymentOutcome) -> None:
        if output_format == "json":
            print(json.dumps({"cycle": cycle, **outcome.to_dict()}))
            return
        console.print(f"[bold]Refresh cycle {cycle}/{cycles}[/bold]")
        print_outcome_summary(outcome, verbose=verbose)

    outcomes = orchestrator.report_refresh_loop(
        session.project_path,
        environment_id,
        interval_seconds=max(0.0, interval),
        max_cycles=max(1, cycles),
        on_cycle=on_cycle,
    )
    last = outcomes[-1]
    return ExitCode.SUCCESS if last.success else ExitCode.FAILURE


@main_with_error_handling()
def force_unlock_command(
    environment_id: str,
    project_path: str = ".",
    config_path: str | None = None,
    yes: bool = False,
    output_format: str = "text",
    *,
    session: DeploymentSession | None = None,
) -> int:
    """Clear a stale lock. Apply is refused until a plan succeeds."""
    if not yes and output_format == "text" and is_interactive():
        warning("Only force-unlock when no other run is in progress.")
        if not confirm(f"Force-unlock '{environment_id}'?", default=False):
            info("Cancelled")
            return ExitCode.FAILURE

    session = session or open_session(project_path, config_path, output_format)
    if session is None:
        return ExitCode.FAILURE

    previous = session.orchestrator.force_unlock_environment(session.project_path, environment_id)

    if output_format == "json":
        print(
            json.dumps(
                {
                    "environmentId": environment_id,
                    "clearedLock": previous.to_dict() if previous else None,
                    "needsReplanAfterForceUnlock": True,
                },
                indent=2,
            )
        )
        return ExitCode.SUCCESS

    if previous is None:
        info(f"No active lock on '{environment_id}'")
    else:
        success(f"Cleared lock held by {previous.run_id} ({previous.action.value})")
    warning(f"Run 'tz deployments plan --env {environment_id}' before the next apply.")
    return ExitCode.SUCCESS


def print_history_table(records: list[DeploymentRunRecord]) -> None:
    rows = []
    for record in records:
        summary = record.summary
        rows.append(
            [
                format_timestamp(record.created_at),
                record.environment_id,
                record.action.value,
                record.status.value,
                f"+{summary.add} ~{summary.change} -{summary.destroy}" if summary else "",
                record.actor or "",
            ]
        )
    print_table("Deployment runs", ["Created", "Env", "Action", "Status", "Changes", "Actor"], rows)


@main_with_error_handling()
def history_command(
    environment_id: str | None = None,
    project_path: str = ".",
    limit: int | None = None,
    output_format: str = "text",
    *,
    store: ProjectStore | None = None,
    settings: Settings | None = None,
) -> int:
    """List unexpired deployment runs, newest first."""
    settings = settings or get_settings()
    history = RunHistoryStore(
        store or JsonProjectStore(), retention_days=settings.run_history_retention_days
    )
    records = history.list_deployment_run_history(str(Path(project_path).resolve()), environment_id)
    if limit is not None:
        records = records[:limit]

    if output_format == "json":
        print(json.dumps([record.to_dict() for record in records], indent=2))
        return ExitCode.SUCCESS

    if not records:
        info("No deployment runs recorded")
        return ExitCode.SUCCESS
    print_history_table(records)
    return ExitCode.SUCCESS


def print_delete_guard(result: DeleteGuardResult) -> None:
    if result.allowed:
        success("Project can be deleted. No provider-backed environments remain.")
        return
    error("Project deletion is blocked")
    for block in result.blocks:
        console.print(f"   [error]•[/error] {block.environment_id}: {escape(block.reason)}")
        console.print(f"     [muted]{escape(block.remediation)}[/muted]")


@main_with_error_handling()
def delete_check_command(
    project_path: str = ".",
    output_format: str = "text",
    *,
    store: ProjectStore | None = None,
) -> int:
    """Check whether the project record may be deleted."""
    store = store or JsonProjectStore()
    resolved = str(Path(project_path).resolve())
    result = evaluate_project_delete_guard(store, resolved)

    if output_format == "json":
        print(json.dumps(result.to_dict(), indent=2))
    else:
        document = require_project_document(store, resolved)
        header(f"Delete check: {document.name}")
        print_delete_guard(result)
    return ExitCode.SUCCESS if result.allowed else ExitCode.FAILURE
