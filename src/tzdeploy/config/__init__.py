"""
Configuration for tzdeploy.

- settings: tunables from ``TZ_`` environment variables
- user: per-user YAML config (AWS integration, backend, deployments mode)
- project: per-project JSON document (state, history, outputs)
- infra: per-project environment declarations
"""

from tzdeploy.config.settings import Settings, get_settings
from tzdeploy.config.user import (
    AwsIntegration,
    BackendChecks,
    BackendSettings,
    DeploymentsMode,
    LockStrategy,
    UserConfig,
    load_user_config,
    save_user_config,
)

__all__ = [
    "AwsIntegration",
    "BackendChecks",
    "BackendSettings",
    "DeploymentsMode",
    "LockStrategy",
    "Settings",
    "UserConfig",
    "get_settings",
    "load_user_config",
    "save_user_config",
]
