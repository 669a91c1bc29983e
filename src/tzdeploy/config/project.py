"""
Persisted project document.

Each scaffolded project keeps a JSON document at ``<project>/.tzconfig.json``
holding deployment state, run history and environment outputs. Keys this
package does not manage are carried through load/save untouched.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import structlog

from tzdeploy.core.errors import ConfigurationError, ProjectConfigNotFoundError, ValidationError
from tzdeploy.deployments.models import (
    DeploymentRunRecord,
    EnvironmentDeploymentState,
    OutputSource,
    OutputWrite,
    ResolvedOutput,
    utc_now,
)

logger = structlog.get_logger()

PROJECT_CONFIG_FILENAME = ".tzconfig.json"

_MANAGED_KEYS = ("name", "deploymentState", "deploymentRunHistory", "environmentOutputs")


@dataclass
class ProjectDocument:
    """In-memory view of a project's persisted JSON document."""

    name: str = "unknown"
    environments: dict[str, EnvironmentDeploymentState] = field(default_factory=dict)
    run_history: list[DeploymentRunRecord] = field(default_factory=list)
    environment_outputs: dict[str, dict[str, ResolvedOutput]] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def environment_state(self, environment_id: str) -> EnvironmentDeploymentState:
        """Get the state for an environment, creating it if absent."""
        if environment_id not in self.environments:
            self.environments[environment_id] = EnvironmentDeploymentState()
        return self.environments[environment_id]

    def outputs_for(self, environment_id: str) -> list[ResolvedOutput]:
        return list(self.environment_outputs.get(environment_id, {}).values())

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data["name"] = self.name
        data["deploymentState"] = {
            "environments": {
                env_id: state.to_dict() for env_id, state in self.environments.items()
            }
        }
        data["deploymentRunHistory"] = [record.to_dict() for record in self.run_history]
        data["environmentOutputs"] = {
            env_id: {key: output.to_dict() for key, output in outputs.items()}
            for env_id, outputs in self.environment_outputs.items()
            if outputs
        }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectDocument:
        """Build a document from raw JSON, skipping malformed entries."""
        environments: dict[str, EnvironmentDeploymentState] = {}
        state_data = data.get("deploymentState")
        env_data = state_data.get("environments") if isinstance(state_data, dict) else None
        if isinstance(env_data, dict):
            for env_id, raw in env_data.items():
                if isinstance(raw, dict):
                    environments[env_id] = EnvironmentDeploymentState.from_dict(raw)

        run_history: list[DeploymentRunRecord] = []
        history_data = data.get("deploymentRunHistory")
        if isinstance(history_data, list):
            for raw in history_data:
                record = DeploymentRunRecord.from_dict(raw) if isinstance(raw, dict) else None
                if record is None:
                    logger.warning("skipped_malformed_run_record")
                    continue
                run_history.append(record)

        environment_outputs: dict[str, dict[str, ResolvedOutput]] = {}
        outputs_data = data.get("environmentOutputs")
        if isinstance(outputs_data, dict):
            for env_id, records in outputs_data.items():
                if not isinstance(records, dict):
                    continue
                parsed: dict[str, ResolvedOutput] = {}
                for key, raw in records.items():
                    output = ResolvedOutput.from_dict(raw) if isinstance(raw, dict) else None
                    if output is None or output.key != key:
                        continue
                    parsed[key] = output
                if parsed:
                    environment_outputs[env_id] = parsed

        name = data.get("name")
        return cls(
            name=name if isinstance(name, str) and name else "unknown",
            environments=environments,
            run_history=run_history,
            environment_outputs=environment_outputs,
            extra={k: v for k, v in data.items() if k not in _MANAGED_KEYS},
        )


class ProjectStore(Protocol):
    """Loads and saves project documents."""

    def load(self, project_path: str) -> ProjectDocument | None:
        """Load the document, or None if the project has none."""
        ...

    def save(self, project_path: str, document: ProjectDocument) -> None:
        """Persist the document."""
        ...


class JsonProjectStore:
    """Project store backed by ``<project>/.tzconfig.json``."""

    def __init__(self, filename: str = PROJECT_CONFIG_FILENAME):
        self.filename = filename

    def path_for(self, project_path: str) -> Path:
        return Path(project_path) / self.filename

    def load(self, project_path: str) -> ProjectDocument | None:
        config_path = self.path_for(project_path)
        if not config_path.exists():
            return None
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Invalid project config: {config_path}",
                details={"error": str(e)},
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid project config: {config_path}")
        return ProjectDocument.from_dict(data)

    def save(self, project_path: str, document: ProjectDocument) -> None:
        config_path = self.path_for(project_path)
        config_path.write_text(json.dumps(document.to_dict(), indent=2) + "\n", encoding="utf-8")
        logger.debug("project_config_saved", path=str(config_path))


def require_project_document(store: ProjectStore, project_path: str) -> ProjectDocument:
    document = store.load(project_path)
    if document is None:
        raise ProjectConfigNotFoundError(project_path)
    return document


def upsert_environment_outputs(
    document: ProjectDocument,
    environment_id: str,
    writes: list[OutputWrite],
    now: datetime | None = None,
) -> list[ResolvedOutput]:
    """
    Merge output writes into the document's stored outputs for one environment.

    A write replaces a stored record only when its source has equal or higher
    priority (templateDefault < providerOutput < manualOverride). The output
    type of an existing key never changes, and generated credentials cannot be
    manually overridden. Each accepted write bumps the record version.

    Returns:
        All stored outputs for the environment after the merge

    Raises:
        ValidationError: If a write is invalid
    """
    if not environment_id.strip():
        raise ValidationError("environment_id is required")
    now = now or utc_now()
    existing = dict(document.environment_outputs.get(environment_id, {}))

    for write in writes:
        if not write.key.strip():
            raise ValidationError("Output write key is required")
        current = existing.get(write.key)

        if current is not None and current.type != write.type:
            raise ValidationError(
                f"Cannot change output type for '{write.key}' in environment '{environment_id}'"
            )

        is_generated_credential = (
            write.is_generated_credential
            if write.is_generated_credential is not None
            else (current.is_generated_credential if current else False)
        )
        if is_generated_credential and write.source is OutputSource.MANUAL_OVERRIDE:
            raise ValidationError(
                f"Manual override is not allowed for generated credential '{write.key}'"
            )

        if current is not None and write.source.priority < current.source.priority:
            continue

        existing[write.key] = ResolvedOutput(
            key=write.key,
            type=write.type,
            source=write.source,
            version=current.version + 1 if current else 1,
            created_at=current.created_at if current else now,
            updated_at=now,
            value=write.value,
            secret_ref=write.secret_ref,
            sensitive=_inherit(write.sensitive, current.sensitive if current else False),
            rotatable=_inherit(write.rotatable, current.rotatable if current else False),
            is_generated_credential=is_generated_credential,
        )

    document.environment_outputs[environment_id] = existing
    return list(existing.values())


def _inherit(value: bool | None, fallback: bool) -> bool:
    return fallback if value is None else value
