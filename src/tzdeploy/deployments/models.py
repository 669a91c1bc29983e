"""
Data models for deployment orchestration.

These models represent:
- Per-environment locks and deployment state
- Immutable run history records
- Planned capability modules
- Resolved environment outputs
- Adapter results and orchestrator outcomes

Persisted models serialize to camelCase keys with ISO-8601 timestamps.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from tzdeploy.core.errors import DeploymentError, ErrorKind


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp, returning None for anything unusable."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_optional(value: datetime | None) -> str | None:
    return format_timestamp(value) if value is not None else None


class DeploymentAction(StrEnum):
    """Actions that can be run against an environment."""

    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    REPORT = "report"


class EnvironmentStatus(StrEnum):
    """Last known health of an environment."""

    HEALTHY = "healthy"
    DRIFTED = "drifted"
    FAILED = "failed"
    UNKNOWN = "unknown"


class RunStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class OutputType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    SECRET_REF = "secret_ref"


class OutputSource(StrEnum):
    """Provenance of a stored output, lowest priority first."""

    TEMPLATE_DEFAULT = "templateDefault"
    PROVIDER_OUTPUT = "providerOutput"
    MANUAL_OVERRIDE = "manualOverride"

    @property
    def priority(self) -> int:
        return {
            OutputSource.TEMPLATE_DEFAULT: 1,
            OutputSource.PROVIDER_OUTPUT: 2,
            OutputSource.MANUAL_OVERRIDE: 3,
        }[self]


@dataclass(frozen=True)
class EnvironmentLock:
    """Advisory lock held by one in-flight run."""

    run_id: str
    acquired_at: datetime
    action: DeploymentAction

    def age(self, now: datetime) -> timedelta:
        return now - self.acquired_at

    def is_stale(self, now: datetime, threshold: timedelta) -> bool:
        return self.age(now) > threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "acquiredAt": format_timestamp(self.acquired_at),
            "action": self.action.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnvironmentLock | None:
        run_id = data.get("runId")
        acquired_at = parse_timestamp(data.get("acquiredAt"))
        if not isinstance(run_id, str) or acquired_at is None:
            return None
        try:
            action = DeploymentAction(data.get("action", "plan"))
        except ValueError:
            action = DeploymentAction.PLAN
        return cls(run_id=run_id, acquired_at=acquired_at, action=action)


@dataclass
class EnvironmentDeploymentState:
    """Persisted deployment state for one environment of one project."""

    active_lock: EnvironmentLock | None = None
    last_status: EnvironmentStatus = EnvironmentStatus.UNKNOWN
    last_plan_drift_detected: bool = False
    last_plan_at: datetime | None = None
    last_apply_at: datetime | None = None
    last_destroy_at: datetime | None = None
    last_reported_at: datetime | None = None
    last_force_unlock_at: datetime | None = None
    needs_replan_after_force_unlock: bool = False
    last_status_updated_at: datetime | None = None

    def set_status(self, status: EnvironmentStatus, now: datetime) -> None:
        self.last_status = status
        self.last_status_updated_at = now

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "lastStatus": self.last_status.value,
            "lastPlanDriftDetected": self.last_plan_drift_detected,
            "needsReplanAfterForceUnlock": self.needs_replan_after_force_unlock,
        }
        if self.active_lock is not None:
            data["activeLock"] = self.active_lock.to_dict()
        for key, value in (
            ("lastPlanAt", self.last_plan_at),
            ("lastApplyAt", self.last_apply_at),
            ("lastDestroyAt", self.last_destroy_at),
            ("lastReportedAt", self.last_reported_at),
            ("lastForceUnlockAt", self.last_force_unlock_at),
            ("lastStatusUpdatedAt", self.last_status_updated_at),
        ):
            if value is not None:
                data[key] = format_timestamp(value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnvironmentDeploymentState:
        lock_data = data.get("activeLock")
        try:
            status = EnvironmentStatus(data.get("lastStatus", "unknown"))
        except ValueError:
            status = EnvironmentStatus.UNKNOWN
        return cls(
            active_lock=EnvironmentLock.from_dict(lock_data) if isinstance(lock_data, dict) else None,
            last_status=status,
            last_plan_drift_detected=data.get("lastPlanDriftDetected") is True,
            last_plan_at=parse_timestamp(data.get("lastPlanAt")),
            last_apply_at=parse_timestamp(data.get("lastApplyAt")),
            last_destroy_at=parse_timestamp(data.get("lastDestroyAt")),
            last_reported_at=parse_timestamp(data.get("lastReportedAt")),
            last_force_unlock_at=parse_timestamp(data.get("lastForceUnlockAt")),
            needs_replan_after_force_unlock=data.get("needsReplanAfterForceUnlock") is True,
            last_status_updated_at=parse_timestamp(data.get("lastStatusUpdatedAt")),
        )


@dataclass(frozen=True)
class ResourceSummary:
    """Resource counts parsed from OpenTofu output."""

    add: int = 0
    change: int = 0
    destroy: int = 0

    @property
    def has_changes(self) -> bool:
        return self.add > 0 or self.change > 0 or self.destroy > 0

    def to_dict(self) -> dict[str, int]:
        return {"add": self.add, "change": self.change, "destroy": self.destroy}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceSummary:
        def count(key: str) -> int:
            value = data.get(key)
            return value if isinstance(value, int) and not isinstance(value, bool) else 0

        return cls(add=count("add"), change=count("change"), destroy=count("destroy"))


@dataclass(frozen=True)
class DeploymentRunRecord:
    """Immutable audit entry for one completed run."""

    id: str
    environment_id: str
    action: DeploymentAction
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    created_at: datetime
    expires_at: datetime
    actor: str | None = None
    summary: ResourceSummary | None = None
    logs: tuple[str, ...] = ()

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "environmentId": self.environment_id,
            "action": self.action.value,
            "status": self.status.value,
            "logs": list(self.logs),
            "startedAt": format_timestamp(self.started_at),
            "finishedAt": format_timestamp(self.finished_at),
            "createdAt": format_timestamp(self.created_at),
            "expiresAt": format_timestamp(self.expires_at),
        }
        if self.actor:
            data["actor"] = self.actor
        if self.summary is not None:
            data["summary"] = self.summary.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentRunRecord | None:
        """Build a record from persisted data, or None if it is malformed."""
        timestamps = [
            parse_timestamp(data.get(key))
            for key in ("startedAt", "finishedAt", "createdAt", "expiresAt")
        ]
        record_id = data.get("id")
        environment_id = data.get("environmentId")
        if not isinstance(record_id, str) or not isinstance(environment_id, str):
            return None
        if any(ts is None for ts in timestamps):
            return None
        try:
            action = DeploymentAction(data.get("action"))
            status = RunStatus(data.get("status"))
        except ValueError:
            return None
        started_at, finished_at, created_at, expires_at = timestamps
        summary = data.get("summary")
        logs = data.get("logs")
        actor = data.get("actor")
        return cls(
            id=record_id,
            environment_id=environment_id,
            action=action,
            status=status,
            started_at=started_at,  # type: ignore[arg-type]
            finished_at=finished_at,  # type: ignore[arg-type]
            created_at=created_at,  # type: ignore[arg-type]
            expires_at=expires_at,  # type: ignore[arg-type]
            actor=actor if isinstance(actor, str) else None,
            summary=ResourceSummary.from_dict(summary) if isinstance(summary, dict) else None,
            logs=tuple(line for line in logs if isinstance(line, str)) if isinstance(logs, list) else (),
        )


@dataclass(frozen=True)
class PlannedModule:
    capability: str
    module_id: str
    constraints: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "capability": self.capability,
            "moduleId": self.module_id,
            "constraints": dict(self.constraints),
        }


@dataclass(frozen=True)
class PlannedEnvironmentDeployment:
    """Ordered module plan for one environment."""

    environment_id: str
    label: str
    modules: tuple[PlannedModule, ...]

    @property
    def module_ids(self) -> list[str]:
        return [module.module_id for module in self.modules]

    @property
    def capabilities(self) -> list[str]:
        return [module.capability for module in self.modules]


@dataclass(frozen=True)
class OutputWrite:
    """A proposed output value, before it is merged into stored outputs."""

    key: str
    type: OutputType
    source: OutputSource
    value: Any = None
    secret_ref: str | None = None
    sensitive: bool | None = None
    rotatable: bool | None = None
    is_generated_credential: bool | None = None


@dataclass(frozen=True)
class ResolvedOutput:
    """A stored environment output with provenance and version."""

    key: str
    type: OutputType
    source: OutputSource
    version: int
    created_at: datetime
    updated_at: datetime
    value: Any = None
    secret_ref: str | None = None
    sensitive: bool = False
    rotatable: bool = False
    is_generated_credential: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "type": self.type.value,
            "source": self.source.value,
            "sensitive": self.sensitive,
            "rotatable": self.rotatable,
            "isGeneratedCredential": self.is_generated_credential,
            "version": self.version,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }
        if self.value is not None:
            data["value"] = self.value
        if self.secret_ref is not None:
            data["secretRef"] = self.secret_ref
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolvedOutput | None:
        key = data.get("key")
        version = data.get("version")
        created_at = parse_timestamp(data.get("createdAt"))
        updated_at = parse_timestamp(data.get("updatedAt"))
        if not isinstance(key, str) or not key:
            return None
        if not isinstance(version, int) or version < 1:
            return None
        if created_at is None or updated_at is None:
            return None
        try:
            output_type = OutputType(data.get("type"))
            source = OutputSource(data.get("source"))
        except ValueError:
            return None
        secret_ref = data.get("secretRef")
        return cls(
            key=key,
            type=output_type,
            source=source,
            version=version,
            created_at=created_at,
            updated_at=updated_at,
            value=data.get("value"),
            secret_ref=secret_ref if isinstance(secret_ref, str) else None,
            sensitive=data.get("sensitive") is True,
            rotatable=data.get("rotatable") is True,
            is_generated_credential=data.get("isGeneratedCredential") is True,
        )


@dataclass(frozen=True)
class PlannedResourceChange:
    """One resource change from ``tofu show -json``."""

    address: str
    actions: tuple[str, ...]
    provider: str | None = None
    type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "actions": list(self.actions),
            "provider": self.provider,
            "type": self.type,
        }


@dataclass
class AdapterResult:
    """Structured result of one adapter call."""

    status: EnvironmentStatus
    summary: ResourceSummary = field(default_factory=ResourceSummary)
    drift_detected: bool = False
    planned_changes: list[PlannedResourceChange] = field(default_factory=list)
    provider_outputs: dict[str, Any] = field(default_factory=dict)
    errors: list[DeploymentError] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class DeploymentOutcome:
    """Result of an orchestrated deployment action."""

    action: DeploymentAction
    environment_id: str
    run_id: str | None = None
    status: EnvironmentStatus | None = None
    summary: ResourceSummary = field(default_factory=ResourceSummary)
    drift_detected: bool = False
    planned_changes: list[PlannedResourceChange] = field(default_factory=list)
    errors: list[DeploymentError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    run_record: DeploymentRunRecord | None = None

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def blocked(self) -> bool:
        """True when a precondition stopped the action before any run started."""
        return bool(self.errors) and self.run_record is None

    @property
    def error_kinds(self) -> list[ErrorKind]:
        return [error.kind for error in self.errors]

    @classmethod
    def blocked_by(
        cls, action: DeploymentAction, environment_id: str, kind: ErrorKind, message: str
    ) -> DeploymentOutcome:
        return cls(
            action=action,
            environment_id=environment_id,
            errors=[DeploymentError(kind, message)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "environmentId": self.environment_id,
            "runId": self.run_id,
            "success": self.success,
            "blocked": self.blocked,
            "status": self.status.value if self.status else None,
            "summary": self.summary.to_dict(),
            "driftDetected": self.drift_detected,
            "plannedChanges": [change.to_dict() for change in self.planned_changes],
            "errors": [error.to_dict() for error in self.errors],
            "warnings": list(self.warnings),
            "runRecordId": self.run_record.id if self.run_record else None,
        }
