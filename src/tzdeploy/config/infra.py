"""
Per-project infrastructure declarations.

Parses ``<project>/tz.deploy.yaml``::

    environments:
      - id: staging
        label: Staging
        capabilities: [appRuntime, postgres]
        constraints:
          region: eu-west-1
        outputs:
          - key: app_url
            type: string
            required: true
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from tzdeploy.core.errors import ConfigurationError
from tzdeploy.deployments.models import OutputType

logger = structlog.get_logger()

INFRA_SPEC_FILENAME = "tz.deploy.yaml"

ENVIRONMENT_ID_PATTERN = re.compile(r"^[a-z][a-z0-9-]{1,31}$")

CAPABILITIES = ("appRuntime", "envConfig", "postgres", "dns")


@dataclass(frozen=True)
class OutputSpec:
    """An output an environment declares it will expose."""

    key: str
    type: OutputType
    sensitive: bool = False
    rotatable: bool = False
    required: bool = True
    description: str | None = None
    default: Any = None


@dataclass(frozen=True)
class EnvironmentSpec:
    """A deployable environment and the capabilities it needs."""

    id: str
    label: str
    capabilities: tuple[str, ...] = ()
    constraints: dict[str, Any] = field(default_factory=dict)
    outputs: tuple[OutputSpec, ...] = ()

    @property
    def output_keys(self) -> set[str]:
        return {output.key for output in self.outputs}


@dataclass(frozen=True)
class InfraConfig:
    environments: tuple[EnvironmentSpec, ...] = ()

    def get_environment(self, environment_id: str) -> EnvironmentSpec | None:
        for environment in self.environments:
            if environment.id == environment_id:
                return environment
        return None

    @property
    def environment_ids(self) -> list[str]:
        return [environment.id for environment in self.environments]


def _parse_output(raw: Any, where: str) -> OutputSpec:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where} must be a mapping")
    key = str(raw.get("key") or "").strip()
    if not key:
        raise ConfigurationError(f"{where}.key must be a non-empty string")
    try:
        output_type = OutputType(raw.get("type"))
    except ValueError as e:
        allowed = ", ".join(t.value for t in OutputType)
        raise ConfigurationError(f"{where}.type must be one of {allowed}") from e
    description = raw.get("description")
    return OutputSpec(
        key=key,
        type=output_type,
        sensitive=raw.get("sensitive") is True,
        rotatable=raw.get("rotatable") is True,
        required=raw.get("required") is not False,
        description=description if isinstance(description, str) else None,
        default=raw.get("default"),
    )


def _parse_environment(raw: Any, index: int) -> EnvironmentSpec:
    where = f"environments[{index}]"
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where} must be a mapping")

    env_id = str(raw.get("id") or "").strip()
    if not ENVIRONMENT_ID_PATTERN.match(env_id):
        raise ConfigurationError(f"{where}.id must match {ENVIRONMENT_ID_PATTERN.pattern}")

    label = str(raw.get("label") or "").strip() or env_id

    capabilities = raw.get("capabilities") or []
    if not isinstance(capabilities, list):
        raise ConfigurationError(f"{where}.capabilities must be a list")
    for i, capability in enumerate(capabilities):
        if capability not in CAPABILITIES:
            raise ConfigurationError(
                f"{where}.capabilities[{i}] must be one of {', '.join(CAPABILITIES)}"
            )

    constraints = raw.get("constraints") or {}
    if not isinstance(constraints, dict):
        raise ConfigurationError(f"{where}.constraints must be a mapping")

    outputs_raw = raw.get("outputs") or []
    if not isinstance(outputs_raw, list):
        raise ConfigurationError(f"{where}.outputs must be a list")
    outputs = [_parse_output(item, f"{where}.outputs[{o}]") for o, item in enumerate(outputs_raw)]
    keys = [output.key for output in outputs]
    duplicates = sorted({key for key in keys if keys.count(key) > 1})
    if duplicates:
        raise ConfigurationError(f"{where} has duplicate output keys: {', '.join(duplicates)}")

    return EnvironmentSpec(
        id=env_id,
        label=label,
        capabilities=tuple(capabilities),
        constraints=dict(constraints),
        outputs=tuple(outputs),
    )


def parse_infra_config(data: dict[str, Any]) -> InfraConfig:
    """
    Build an InfraConfig from parsed YAML.

    Raises:
        ConfigurationError: If the document is malformed
    """
    environments_raw = data.get("environments")
    if not isinstance(environments_raw, list) or not environments_raw:
        raise ConfigurationError("environments must be a non-empty list")

    environments = []
    seen: set[str] = set()
    for index, raw in enumerate(environments_raw):
        environment = _parse_environment(raw, index)
        if environment.id in seen:
            raise ConfigurationError(f"duplicate environment id '{environment.id}'")
        seen.add(environment.id)
        environments.append(environment)

    return InfraConfig(environments=tuple(environments))


def load_infra_config(project_path: str | Path) -> InfraConfig | None:
    """
    Load the project's infra declarations.

    Returns:
        InfraConfig, or None if the project declares none
    """
    spec_path = Path(project_path) / INFRA_SPEC_FILENAME
    if not spec_path.exists():
        return None

    with open(spec_path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid infra spec: {spec_path}", details={"error": str(e)}
            ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid infra spec: {spec_path}")

    try:
        config = parse_infra_config(data)
    except ConfigurationError as e:
        raise ConfigurationError(f"Invalid infra spec '{spec_path}': {e.message}") from e

    logger.debug("loaded_infra_config", path=str(spec_path), environments=config.environment_ids)
    return config
