"""
Deployment run history.

Every completed run is recorded once with redacted logs and an expiry.
Expired records are dropped lazily whenever history is read or written.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from tzdeploy.config.project import ProjectDocument, ProjectStore, require_project_document
from tzdeploy.core.errors import ValidationError
from tzdeploy.deployments.models import (
    DeploymentAction,
    DeploymentRunRecord,
    ResourceSummary,
    RunStatus,
    utc_now,
)

logger = structlog.get_logger()

DEFAULT_RETENTION_DAYS = 30

REDACTED = "[REDACTED]"

_URL_CREDENTIALS = re.compile(r"([a-z][a-z0-9+.-]*://)([^/\s:@]+):([^@/\s]+)@", re.IGNORECASE)
_ACCESS_TOKENS = re.compile(r"\b(AKIA[0-9A-Z]{16}|ASIA[0-9A-Z]{16}|ghp_[A-Za-z0-9_]{20,})\b")
# Prefixed and suffixed names (DB_PASSWORD, AWS_SECRET_ACCESS_KEY) and quoted JSON keys
_SECRET_ASSIGNMENT = re.compile(
    r"""\b([A-Za-z0-9_]*(?:password|passwd|token|secret|api[_-]?key)[A-Za-z0-9_]*)"""
    r"""(["']?\s*[:=]\s*["']?)([^\s,;"']+)""",
    re.IGNORECASE,
)


def redact_log_line(line: str) -> str:
    """Mask URL credentials, access keys, tokens and secret assignments."""
    line = _URL_CREDENTIALS.sub(rf"\1{REDACTED}:{REDACTED}@", line)
    line = _ACCESS_TOKENS.sub(REDACTED, line)
    return _SECRET_ASSIGNMENT.sub(lambda m: f"{m[1]}{m[2]}{REDACTED}", line)


def redact_logs(lines: Iterable[str]) -> list[str]:
    return [redact_log_line(line) for line in lines]


def _new_run_id() -> str:
    return f"run_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class RunInput:
    """Details of a finished run, before it becomes a record."""

    environment_id: str
    action: DeploymentAction
    status: RunStatus
    actor: str | None = None
    summary: ResourceSummary | None = None
    logs: tuple[str, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RunHistoryStore:
    """Records, lists and prunes run history in project documents."""

    def __init__(
        self,
        store: ProjectStore,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        id_factory: Callable[[], str] = _new_run_id,
    ):
        self.store = store
        self.retention = timedelta(days=retention_days)
        self.id_factory = id_factory

    @staticmethod
    def prune(document: ProjectDocument, now: datetime) -> bool:
        """Drop expired records in place. Returns True if anything was dropped."""
        kept = [record for record in document.run_history if not record.is_expired(now)]
        if len(kept) == len(document.run_history):
            return False
        logger.debug("run_history_pruned", dropped=len(document.run_history) - len(kept))
        document.run_history = kept
        return True

    def append(
        self, document: ProjectDocument, run_input: RunInput, now: datetime
    ) -> DeploymentRunRecord:
        """Add a record to an already loaded document without saving it."""
        if not run_input.environment_id.strip():
            raise ValidationError("environment_id is required")

        self.prune(document, now)
        record = DeploymentRunRecord(
            id=self.id_factory(),
            environment_id=run_input.environment_id,
            action=run_input.action,
            status=run_input.status,
            actor=run_input.actor,
            summary=run_input.summary,
            logs=tuple(redact_logs(run_input.logs)),
            started_at=run_input.started_at or now,
            finished_at=run_input.finished_at or now,
            created_at=now,
            expires_at=now + self.retention,
        )
        document.run_history = sorted(
            [record, *document.run_history], key=lambda r: r.created_at, reverse=True
        )
        logger.info(
            "deployment_run_recorded",
            run_id=record.id,
            environment=record.environment_id,
            action=record.action.value,
            status=record.status.value,
        )
        return record

    def record_deployment_run(
        self, project_path: str, run_input: RunInput, now: datetime | None = None
    ) -> DeploymentRunRecord:
        now = now or utc_now()
        document = require_project_document(self.store, project_path)
        record = self.append(document, run_input, now)
        self.store.save(project_path, document)
        return record

    def prune_deployment_run_history(
        self, project_path: str, now: datetime | None = None
    ) -> list[DeploymentRunRecord]:
        """Drop expired records, saving only if something changed."""
        now = now or utc_now()
        document = require_project_document(self.store, project_path)
        if self.prune(document, now):
            self.store.save(project_path, document)
        return sorted(document.run_history, key=lambda r: r.created_at, reverse=True)

    def list_deployment_run_history(
        self,
        project_path: str,
        environment_id: str | None = None,
        now: datetime | None = None,
    ) -> list[DeploymentRunRecord]:
        """Unexpired records, newest first, optionally for one environment."""
        records = self.prune_deployment_run_history(project_path, now)
        if environment_id:
            records = [r for r in records if r.environment_id == environment_id]
        return records
