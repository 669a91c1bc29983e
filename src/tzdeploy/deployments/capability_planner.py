"""
Capability planning and output resolution.

Turns an environment's declared capabilities into an ordered list of
deployable modules, and cross-checks provider outputs against the outputs
the environment declares.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog

from tzdeploy.config.infra import EnvironmentSpec, InfraConfig, OutputSpec
from tzdeploy.config.project import (
    ProjectStore,
    require_project_document,
    upsert_environment_outputs,
)
from tzdeploy.core.errors import CapabilityPlanError, OutputResolutionError
from tzdeploy.deployments.models import (
    OutputSource,
    OutputType,
    OutputWrite,
    PlannedEnvironmentDeployment,
    PlannedModule,
    ResolvedOutput,
)

logger = structlog.get_logger()

# Canonical module order; planning output never depends on declaration order
CAPABILITY_ORDER = ("appRuntime", "envConfig", "postgres", "dns")


def module_id_for(capability: str) -> str:
    return f"module.{capability}.v1"


def _unique(capabilities: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(capabilities))


def _check_combination(environment_id: str, capabilities: list[str], constraints: dict[str, Any]) -> None:
    unknown = [c for c in capabilities if c not in CAPABILITY_ORDER]
    if unknown:
        raise CapabilityPlanError(
            f"Unknown capability for '{environment_id}': {', '.join(unknown)}. "
            f"Supported capabilities: {', '.join(CAPABILITY_ORDER)}."
        )

    if "postgres" in capabilities and "appRuntime" not in capabilities:
        raise CapabilityPlanError(
            f"Unsupported capability combination for '{environment_id}': "
            "postgres requires appRuntime. Add appRuntime or remove postgres."
        )

    if "dns" in capabilities:
        if "appRuntime" not in capabilities:
            raise CapabilityPlanError(
                f"Unsupported capability combination for '{environment_id}': "
                "dns requires appRuntime. Add appRuntime or remove dns."
            )
        domain = constraints.get("domain")
        if not isinstance(domain, str) or not domain.strip():
            raise CapabilityPlanError(
                f"Invalid constraints for '{environment_id}': "
                "dns capability requires constraints.domain (non-empty string)."
            )


def plan_capabilities(
    environment_id: str,
    capabilities: Iterable[str],
    constraints: dict[str, Any] | None = None,
    label: str | None = None,
) -> PlannedEnvironmentDeployment:
    """
    Validate a capability set and return its modules in canonical order.

    Raises:
        CapabilityPlanError: If a capability is unknown or a dependency is missing
    """
    constraints = constraints or {}
    unique = _unique(capabilities)
    _check_combination(environment_id, unique, constraints)

    ordered = sorted(unique, key=CAPABILITY_ORDER.index)
    modules = tuple(
        PlannedModule(
            capability=capability,
            module_id=module_id_for(capability),
            constraints=dict(constraints),
        )
        for capability in ordered
    )
    return PlannedEnvironmentDeployment(
        environment_id=environment_id,
        label=label or environment_id,
        modules=modules,
    )


def plan_environment_deployment(infra: InfraConfig, environment_id: str) -> PlannedEnvironmentDeployment:
    """Plan the modules for one environment declared in the infra spec."""
    environment = infra.get_environment(environment_id)
    if environment is None:
        raise CapabilityPlanError(
            f"Environment '{environment_id}' not defined in infra config. "
            "Add it under environments."
        )
    plan = plan_capabilities(
        environment.id,
        environment.capabilities,
        environment.constraints,
        label=environment.label,
    )
    logger.debug("capabilities_planned", environment=environment_id, modules=plan.module_ids)
    return plan


def _output_write(
    spec: OutputSpec,
    raw: Any,
    source: OutputSource,
    generated_credential_keys: set[str],
) -> OutputWrite | None:
    if raw is None:
        return None

    is_generated = spec.key in generated_credential_keys

    if spec.type is OutputType.SECRET_REF:
        secret_ref = raw if isinstance(raw, str) else None
        if isinstance(raw, dict) and isinstance(raw.get("secretRef"), str):
            secret_ref = raw["secretRef"]
        if not secret_ref:
            raise OutputResolutionError(
                f"Output '{spec.key}' must resolve to a secret reference string for type secret_ref."
            )
        return OutputWrite(
            key=spec.key,
            type=spec.type,
            source=source,
            secret_ref=secret_ref,
            sensitive=True,
            rotatable=spec.rotatable,
            is_generated_credential=is_generated,
        )

    if spec.type is OutputType.STRING and not isinstance(raw, str):
        raise OutputResolutionError(f"Output '{spec.key}' must be string.")
    if spec.type is OutputType.NUMBER and (
        isinstance(raw, bool) or not isinstance(raw, (int, float))
    ):
        raise OutputResolutionError(f"Output '{spec.key}' must be number.")
    if spec.type is OutputType.BOOLEAN and not isinstance(raw, bool):
        raise OutputResolutionError(f"Output '{spec.key}' must be boolean.")

    return OutputWrite(
        key=spec.key,
        type=spec.type,
        source=source,
        value=raw,
        sensitive=spec.sensitive,
        rotatable=spec.rotatable,
        is_generated_credential=is_generated,
    )


def resolve_environment_outputs(
    environment: EnvironmentSpec,
    provider_outputs: dict[str, Any],
    generated_credential_keys: Iterable[str] = (),
) -> list[OutputWrite]:
    """
    Resolve declared outputs against provider outputs and template defaults.

    Template default writes come first, followed by provider writes, so that
    merging them in order lets provider values win.

    Raises:
        OutputResolutionError: On unknown provider keys, type mismatches or
            missing required outputs
    """
    known = environment.output_keys
    for key in provider_outputs:
        if key not in known:
            raise OutputResolutionError(
                f"Unknown provider output '{key}' for environment '{environment.id}'. "
                "Declare it under outputs or remove it from the provider mapping."
            )

    generated = set(generated_credential_keys)
    defaults: list[OutputWrite] = []
    provided: list[OutputWrite] = []

    for spec in environment.outputs:
        default_write = _output_write(spec, spec.default, OutputSource.TEMPLATE_DEFAULT, generated)
        provider_write = _output_write(
            spec, provider_outputs.get(spec.key), OutputSource.PROVIDER_OUTPUT, generated
        )
        if spec.required and default_write is None and provider_write is None:
            raise OutputResolutionError(
                f"Missing required output '{spec.key}' for environment '{environment.id}'. "
                "Provide it from provider output or template default."
            )
        if default_write is not None:
            defaults.append(default_write)
        if provider_write is not None:
            provided.append(provider_write)

    return defaults + provided


def persist_resolved_environment_outputs(
    store: ProjectStore,
    project_path: str,
    environment: EnvironmentSpec,
    provider_outputs: dict[str, Any],
    generated_credential_keys: Iterable[str] = (),
    now: datetime | None = None,
) -> list[ResolvedOutput]:
    """Resolve outputs and merge them into the project's stored outputs."""
    writes = resolve_environment_outputs(environment, provider_outputs, generated_credential_keys)
    document = require_project_document(store, project_path)
    stored = upsert_environment_outputs(document, environment.id, writes, now)
    store.save(project_path, document)
    logger.info(
        "environment_outputs_persisted",
        environment=environment.id,
        outputs=len(stored),
    )
    return stored
