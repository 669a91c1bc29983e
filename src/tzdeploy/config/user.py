"""
User configuration: cloud integration, IaC backend and deployments mode.

Search order:
1. Explicit path (--config flag)
2. .tzdeploy/config.yaml (current directory)
3. ~/.tzdeploy/config.yaml (user home)
4. Default configuration
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger()


class LockStrategy(StrEnum):
    """Remote state lock strategies supported by the backend."""

    S3_LOCKFILE = "s3-lockfile"
    DYNAMODB = "dynamodb"


@dataclass
class BackendSettings:
    """Remote state backend used by the IaC engine."""

    bucket: str = ""
    region: str = ""
    profile: str = ""
    state_prefix: str = ""
    lock_strategy: str = LockStrategy.S3_LOCKFILE

    def state_key(self, environment_id: str) -> str:
        """Remote state key, unique per state prefix and environment."""
        return f"{self.state_prefix.rstrip('/')}/{environment_id}/tofu.tfstate"

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket": self.bucket,
            "region": self.region,
            "profile": self.profile,
            "state_prefix": self.state_prefix,
            "lock_strategy": str(self.lock_strategy),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackendSettings:
        return cls(
            bucket=str(data.get("bucket") or ""),
            region=str(data.get("region") or ""),
            profile=str(data.get("profile") or ""),
            state_prefix=str(data.get("state_prefix") or data.get("statePrefix") or ""),
            lock_strategy=str(data.get("lock_strategy") or data.get("lockStrategy") or ""),
        )


@dataclass
class BackendChecks:
    """Results of the last backend validation run."""

    state_read_write_passed: bool = False
    lock_acquisition_passed: bool = False
    checked_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state_read_write_passed": self.state_read_write_passed,
            "lock_acquisition_passed": self.lock_acquisition_passed,
            "checked_at": self.checked_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackendChecks:
        return cls(
            state_read_write_passed=data.get("state_read_write_passed") is True,
            lock_acquisition_passed=data.get("lock_acquisition_passed") is True,
            checked_at=data.get("checked_at"),
        )


@dataclass
class AwsIntegration:
    """AWS integration settings."""

    connected: bool = False
    oidc_role_arn: str | None = None
    backend: BackendSettings | None = None
    backend_checks: BackendChecks | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"connected": self.connected}
        if self.oidc_role_arn:
            data["oidc_role_arn"] = self.oidc_role_arn
        if self.backend:
            data["backend"] = self.backend.to_dict()
        if self.backend_checks:
            data["backend_checks"] = self.backend_checks.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AwsIntegration:
        backend = data.get("backend")
        checks = data.get("backend_checks")
        return cls(
            connected=data.get("connected") is True,
            oidc_role_arn=data.get("oidc_role_arn"),
            backend=BackendSettings.from_dict(backend) if isinstance(backend, dict) else None,
            backend_checks=BackendChecks.from_dict(checks) if isinstance(checks, dict) else None,
        )


@dataclass
class DeploymentsMode:
    """Whether deployment commands are enabled for this user."""

    enabled: bool = False
    enabled_at: str | None = None
    enabled_profile: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "enabled_at": self.enabled_at,
            "enabled_profile": self.enabled_profile,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentsMode:
        return cls(
            enabled=data.get("enabled") is True,
            enabled_at=data.get("enabled_at"),
            enabled_profile=data.get("enabled_profile"),
        )


@dataclass
class UserConfig:
    """Top-level user configuration."""

    name: str = ""
    email: str = ""
    aws: AwsIntegration = field(default_factory=AwsIntegration)
    deployments: DeploymentsMode = field(default_factory=DeploymentsMode)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "integrations": {"aws": self.aws.to_dict()},
            "deployments": self.deployments.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserConfig:
        integrations = data.get("integrations") or {}
        aws = integrations.get("aws") if isinstance(integrations, dict) else None
        deployments = data.get("deployments")
        return cls(
            name=str(data.get("name") or ""),
            email=str(data.get("email") or ""),
            aws=AwsIntegration.from_dict(aws) if isinstance(aws, dict) else AwsIntegration(),
            deployments=(
                DeploymentsMode.from_dict(deployments)
                if isinstance(deployments, dict)
                else DeploymentsMode()
            ),
        )


def get_config_path(explicit_path: str | Path | None = None) -> Path | None:
    """
    Find the configuration file to use.

    Returns:
        Path to config file or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        return None

    cwd_config = Path.cwd() / ".tzdeploy" / "config.yaml"
    if cwd_config.exists():
        return cwd_config

    home_config = Path.home() / ".tzdeploy" / "config.yaml"
    if home_config.exists():
        return home_config

    return None


def load_user_config(path: str | Path | None = None) -> UserConfig | None:
    """
    Load the user configuration.

    Returns None when no config file exists, so callers can tell a
    fresh install apart from a config with everything disabled.
    """
    config_path = get_config_path(path)
    if config_path is None:
        return None

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    logger.debug("loaded_user_config", path=str(config_path))
    return UserConfig.from_dict(data)


def save_user_config(config: UserConfig, path: str | Path | None = None) -> Path:
    """Save user configuration to file."""
    target_path = Path(path) if path else Path.home() / ".tzdeploy" / "config.yaml"
    target_path.parent.mkdir(parents=True, exist_ok=True)

    with open(target_path, "w") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

    logger.info("saved_user_config", path=str(target_path))
    return target_path
