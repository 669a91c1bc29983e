"""
Project delete guard.

Refuses to let a project record be deleted while any of its environments
may still own provider-backed cloud resources.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import structlog

from tzdeploy.config.project import ProjectDocument, ProjectStore, require_project_document
from tzdeploy.deployments.models import DeploymentAction, OutputSource, RunStatus

logger = structlog.get_logger()


@dataclass(frozen=True)
class DeleteGuardBlock:
    environment_id: str
    reason: str
    remediation: str

    def to_dict(self) -> dict[str, str]:
        return {
            "environmentId": self.environment_id,
            "reason": self.reason,
            "remediation": self.remediation,
        }


@dataclass
class DeleteGuardResult:
    blocks: list[DeleteGuardBlock] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return not self.blocks

    def to_dict(self) -> dict[str, object]:
        return {"allowed": self.allowed, "blocks": [block.to_dict() for block in self.blocks]}


def _latest_success(
    document: ProjectDocument,
    environment_id: str,
    action: DeploymentAction,
    recorded_at: datetime | None = None,
) -> datetime | None:
    """Latest successful ``action`` from state or history, whichever is newer."""
    finished = [
        record.finished_at
        for record in document.run_history
        if record.environment_id == environment_id
        and record.action is action
        and record.status is RunStatus.SUCCESS
    ]
    if recorded_at is not None:
        finished.append(recorded_at)
    return max(finished, default=None)


def _block_reason(document: ProjectDocument, environment_id: str) -> str | None:
    state = document.environments.get(environment_id)
    if state is not None and state.active_lock is not None:
        return "active deployment lock present"

    latest_apply = _latest_success(
        document, environment_id, DeploymentAction.APPLY, state.last_apply_at if state else None
    )
    latest_destroy = _latest_success(
        document, environment_id, DeploymentAction.DESTROY, state.last_destroy_at if state else None
    )
    status = f" (status: {state.last_status})" if state is not None else ""

    if latest_apply is not None and (latest_destroy is None or latest_destroy <= latest_apply):
        return f"successful apply has not been followed by a destroy{status}"

    live_outputs = [
        output
        for output in document.outputs_for(environment_id)
        if output.source is OutputSource.PROVIDER_OUTPUT
        and (latest_destroy is None or output.updated_at > latest_destroy)
    ]
    if live_outputs:
        return f"provider outputs recorded without a later destroy{status}"

    return None


def evaluate_project_delete_guard(store: ProjectStore, project_path: str) -> DeleteGuardResult:
    """
    Decide whether the project record may be deleted.

    Considers every environment referenced by deployment state, stored
    outputs or run history.

    Raises:
        ProjectConfigNotFoundError: If the project has no document
    """
    document = require_project_document(store, project_path)
    environment_ids = (
        set(document.environments)
        | set(document.environment_outputs)
        | {record.environment_id for record in document.run_history}
    )

    result = DeleteGuardResult()
    for environment_id in sorted(environment_ids):
        reason = _block_reason(document, environment_id)
        if reason is None:
            continue
        result.blocks.append(
            DeleteGuardBlock(
                environment_id=environment_id,
                reason=reason,
                remediation=f"Open Infra Environments > '{environment_id}' and run Destroy environment.",
            )
        )

    logger.info(
        "delete_guard_evaluated",
        project=project_path,
        allowed=result.allowed,
        blocked_environments=[block.environment_id for block in result.blocks],
    )
    return result
