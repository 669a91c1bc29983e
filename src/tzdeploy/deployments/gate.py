"""
Deployments enablement gate.

A pure check over the user config, evaluated once per CLI session before
any deployment command runs. Partially configured backends are refused up
front rather than discovered later as state corruption.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from tzdeploy.config.user import LockStrategy, UserConfig
from tzdeploy.core.errors import DeploymentsDisabledError


class GateCheck(StrEnum):
    AWS_CONNECTED = "aws-connected"
    BACKEND_CONFIG_PRESENT = "backend-config-present"
    BACKEND_STATE_READ_WRITE = "backend-state-read-write"
    BACKEND_LOCK_ACQUISITION = "backend-lock-acquisition"


@dataclass(frozen=True)
class GateIssue:
    check: GateCheck
    message: str
    remediation: str

    def to_dict(self) -> dict[str, str]:
        return {
            "check": self.check.value,
            "message": self.message,
            "remediation": self.remediation,
        }


@dataclass
class GateResult:
    """Outcome of the enablement gate."""

    issues: list[GateIssue] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict[str, object]:
        return {"allowed": self.allowed, "issues": [issue.to_dict() for issue in self.issues]}


def _non_empty(value: str | None) -> bool:
    return bool(value and value.strip())


def evaluate_deployments_enablement_gate(config: UserConfig) -> GateResult:
    """Check that AWS and the state backend are connected and validated."""
    result = GateResult()
    aws = config.aws

    if not aws.connected:
        result.issues.append(
            GateIssue(
                check=GateCheck.AWS_CONNECTED,
                message="AWS integration is not connected.",
                remediation="Connect AWS in the user config (integrations.aws.connected) "
                "before enabling deployments mode.",
            )
        )

    backend = aws.backend
    backend_complete = (
        backend is not None
        and _non_empty(backend.bucket)
        and _non_empty(backend.region)
        and _non_empty(backend.profile)
        and _non_empty(backend.state_prefix)
        and backend.lock_strategy in {s.value for s in LockStrategy}
    )
    if not backend_complete:
        result.issues.append(
            GateIssue(
                check=GateCheck.BACKEND_CONFIG_PRESENT,
                message="Backend configuration is incomplete.",
                remediation="Provide bucket, region, profile, state prefix and lock strategy "
                "under integrations.aws.backend.",
            )
        )

    checks = aws.backend_checks
    if checks is None or not checks.state_read_write_passed:
        result.issues.append(
            GateIssue(
                check=GateCheck.BACKEND_STATE_READ_WRITE,
                message="Backend read/write validation has not passed.",
                remediation="Run backend validation checks and resolve the reported issue.",
            )
        )

    if checks is None or not checks.lock_acquisition_passed:
        result.issues.append(
            GateIssue(
                check=GateCheck.BACKEND_LOCK_ACQUISITION,
                message="Backend lock acquisition validation has not passed.",
                remediation="Run backend validation checks and resolve the reported issue.",
            )
        )

    return result


def assert_deployments_mode_enabled(config: UserConfig) -> None:
    """Raise DeploymentsDisabledError unless deployments mode is on."""
    if config.deployments.enabled:
        return
    raise DeploymentsDisabledError(
        "Deployments mode is not enabled. Complete AWS/backend setup and validation, "
        "then set deployments.enabled in the user config."
    )
