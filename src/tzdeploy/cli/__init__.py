"""
CLI commands for tz.
"""

from tzdeploy.cli.deployments import (
    apply_command,
    delete_check_command,
    destroy_command,
    force_unlock_command,
    history_command,
    plan_command,
    report_command,
)

__all__ = [
    "apply_command",
    "delete_check_command",
    "destroy_command",
    "force_unlock_command",
    "history_command",
    "plan_command",
    "report_command",
]
