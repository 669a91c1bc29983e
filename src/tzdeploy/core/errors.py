"""
Unified error handling for tzdeploy.

Two kinds of failure exist:

- Operator-recoverable deployment outcomes (a held lock, a stale plan, a
  failed OpenTofu run) are reported as tagged ``DeploymentError`` values
  carrying a stable ``ErrorKind``. Callers branch on the kind, never on
  message text.
- Configuration and programming errors are raised as ``TzDeployError``
  subclasses and converted to exit codes at the CLI boundary.

Exit Codes:
- 0: Success
- 1: Blocked or failed (any deployment outcome with errors)
- 130: Interrupted (SIGINT)
"""

from __future__ import annotations

import functools
import sys
import traceback
from dataclasses import dataclass
from enum import IntEnum, StrEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    FAILURE = 1
    INTERRUPTED = 130


class ErrorKind(StrEnum):
    """Stable error kinds surfaced in deployment outcomes."""

    LOCK_ACTIVE = "LOCK_ACTIVE"
    LOCK_STALE = "LOCK_STALE"
    REPLAN_REQUIRED_AFTER_FORCE_UNLOCK = "REPLAN_REQUIRED_AFTER_FORCE_UNLOCK"
    PROD_PLAN_STALE = "PROD_PLAN_STALE"
    PROD_DRIFT_CONFIRM_REQUIRED = "PROD_DRIFT_CONFIRM_REQUIRED"
    DESTROY_ENVIRONMENT_MISMATCH = "DESTROY_ENVIRONMENT_MISMATCH"
    DESTROY_CONFIRMATION_PHRASE_INVALID = "DESTROY_CONFIRMATION_PHRASE_INVALID"
    PROD_DESTROY_SECOND_CONFIRM_REQUIRED = "PROD_DESTROY_SECOND_CONFIRM_REQUIRED"
    RUNNER_UNAVAILABLE = "RUNNER_UNAVAILABLE"
    TF_CMD_FAILED = "TF_CMD_FAILED"
    ADAPTER_ERROR = "ADAPTER_ERROR"
    BACKEND_CONFIG_INVALID = "BACKEND_CONFIG_INVALID"
    OPERATION_CANCELLED = "OPERATION_CANCELLED"
    CAPABILITY_PLAN_INVALID = "CAPABILITY_PLAN_INVALID"
    OUTPUT_RESOLUTION_FAILED = "OUTPUT_RESOLUTION_FAILED"
    DEPLOYMENTS_GATE_BLOCKED = "DEPLOYMENTS_GATE_BLOCKED"
    DEPLOYMENTS_MODE_DISABLED = "DEPLOYMENTS_MODE_DISABLED"
    PRE_APPLY_DRIFT_UNCONFIRMED = "PRE_APPLY_DRIFT_UNCONFIRMED"


@dataclass(frozen=True)
class DeploymentError:
    """A tagged, operator-recoverable failure."""

    kind: ErrorKind
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.kind.value, "message": self.message}

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


class TzDeployError(Exception):
    """Base exception for tzdeploy errors with exit code support."""

    exit_code: ExitCode = ExitCode.FAILURE
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(TzDeployError):
    """Raised for configuration-related errors."""


class ProjectConfigNotFoundError(ConfigurationError):
    """Raised when a project has no persisted project document."""

    def __init__(self, project_path: str):
        super().__init__(
            f"Project config not found: {project_path}",
            details={"project_path": project_path},
        )
        self.project_path = project_path


class BackendConfigError(ConfigurationError):
    """Raised when IaC backend settings are missing or unusable."""

    kind = ErrorKind.BACKEND_CONFIG_INVALID


class DeploymentsDisabledError(ConfigurationError):
    """Raised when deployments mode has not been enabled."""

    kind = ErrorKind.DEPLOYMENTS_MODE_DISABLED


class ValidationError(TzDeployError):
    """Raised for validation failures."""


class CapabilityPlanError(ValidationError):
    """Raised when an environment's capability set cannot be planned."""


class OutputResolutionError(ValidationError):
    """Raised when provider outputs disagree with declared outputs."""


class CommandFailedError(TzDeployError):
    """Raised when an external command exits non-zero."""

    def __init__(
        self,
        message: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message, details={"command_exit_code": exit_code})
        self.command_exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    @property
    def command_not_found(self) -> bool:
        return self.command_exit_code == 127


class CommandCancelledError(TzDeployError):
    """Raised when an external command is cancelled or times out."""


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Catches exceptions and converts them to exit codes with consistent
    error reporting.

    Exit codes:
        - TzDeployError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 1
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except TzDeployError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                _print_error(format_error_message(e))
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return ExitCode.INTERRUPTED
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.FAILURE),
                    )
                _print_error(str(e) or type(e).__name__)
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.FAILURE

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: TzDeployError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg


def _print_error(message: str) -> None:
    from tzdeploy.cli.ux import error as print_error

    print_error(message)
