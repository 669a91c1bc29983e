"""
tz command line entry point.

Usage:
    tz deployments <command> [args]
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from tzdeploy import __version__
from tzdeploy.config.settings import get_settings
from tzdeploy.logging import configure_logging


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--project", default=".", help="Project directory (default: .)")
    parser.add_argument("--output", choices=["text", "json"], default="text",
                        help="Output format")


def _add_session_arguments(parser: argparse.ArgumentParser, env_required: bool = True) -> None:
    parser.add_argument("--env", required=env_required, help="Environment id (e.g. staging, prod)")
    parser.add_argument("--config", help="Path to user config (default: ~/.tzdeploy/config.yaml)")
    _add_common_arguments(parser)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tz", description="Deploy project environments with OpenTofu")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging and full adapter logs on failure")
    parser.add_argument("--log-json", action="store_true", help="Emit logs as JSON")
    subparsers = parser.add_subparsers(dest="command")

    deployments_parser = subparsers.add_parser("deployments", help="Plan, apply and inspect deployments")
    deployments_subparsers = deployments_parser.add_subparsers(dest="deployments_command")

    plan_parser = deployments_subparsers.add_parser("plan", help="Preview infrastructure changes")
    _add_session_arguments(plan_parser)

    apply_parser = deployments_subparsers.add_parser("apply", help="Apply infrastructure changes")
    _add_session_arguments(apply_parser)
    apply_parser.add_argument("--confirm-drift", action="store_true",
                              help="Proceed even if the pre-apply check finds drift")
    apply_parser.add_argument("--confirm-drift-prod", action="store_true",
                              help="Proceed on prod even if the pre-apply check finds drift")

    destroy_parser = deployments_subparsers.add_parser("destroy", help="Destroy an environment")
    _add_session_arguments(destroy_parser)
    destroy_parser.add_argument("--confirm-env", help="Repeat the environment id")
    destroy_parser.add_argument("--confirm", dest="confirm_phrase",
                                help="Type 'destroy <env>'")
    destroy_parser.add_argument("--confirm-prod", help="Second confirmation for prod: 'destroy prod'")

    report_parser = deployments_subparsers.add_parser("report", help="Check drift and health")
    _add_session_arguments(report_parser)
    report_parser.add_argument("--watch", action="store_true", help="Repeat the report")
    report_parser.add_argument("--interval-seconds", type=float,
                               help="Seconds between watch cycles")
    report_parser.add_argument("--max-cycles", type=int, help="Number of watch cycles")

    unlock_parser = deployments_subparsers.add_parser("force-unlock", help="Clear a stale lock")
    _add_session_arguments(unlock_parser)
    unlock_parser.add_argument("-y", "--yes", action="store_true", help="Skip the confirmation prompt")

    history_parser = deployments_subparsers.add_parser("history", help="List recent deployment runs")
    history_parser.add_argument("--env", help="Only show runs for this environment")
    history_parser.add_argument("--limit", type=int, help="Maximum number of runs")
    _add_common_arguments(history_parser)

    delete_parser = deployments_subparsers.add_parser(
        "delete-check", help="Check whether the project can be deleted"
    )
    _add_common_arguments(delete_parser)

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    level = logging.DEBUG if args.verbose else settings.log_level
    configure_logging(level, json_output=args.log_json or settings.log_json)

    if args.command != "deployments" or args.deployments_command is None:
        parser.print_help()
        sys.exit(1)

    from tzdeploy.cli import deployments as commands

    command = args.deployments_command

    if command == "plan":
        sys.exit(commands.plan_command(
            environment_id=args.env,
            project_path=args.project,
            config_path=args.config,
            output_format=args.output,
            verbose=args.verbose,
        ))

    if command == "apply":
        sys.exit(commands.apply_command(
            environment_id=args.env,
            project_path=args.project,
            config_path=args.config,
            confirm_drift=args.confirm_drift,
            confirm_drift_prod=args.confirm_drift_prod,
            output_format=args.output,
            verbose=args.verbose,
        ))

    if command == "destroy":
        sys.exit(commands.destroy_command(
            environment_id=args.env,
            project_path=args.project,
            config_path=args.config,
            confirm_env=args.confirm_env,
            confirm_phrase=args.confirm_phrase,
            confirm_prod=args.confirm_prod,
            output_format=args.output,
            verbose=args.verbose,
        ))

    if command == "report":
        sys.exit(commands.report_command(
            environment_id=args.env,
            project_path=args.project,
            config_path=args.config,
            watch=args.watch,
            interval_seconds=args.interval_seconds,
            max_cycles=args.max_cycles,
            output_format=args.output,
            verbose=args.verbose,
        ))

    if command == "force-unlock":
        sys.exit(commands.force_unlock_command(
            environment_id=args.env,
            project_path=args.project,
            config_path=args.config,
            yes=args.yes,
            output_format=args.output,
        ))

    if command == "history":
        sys.exit(commands.history_command(
            environment_id=args.env,
            project_path=args.project,
            limit=args.limit,
            output_format=args.output,
        ))

    if command == "delete-check":
        sys.exit(commands.delete_check_command(
            project_path=args.project,
            output_format=args.output,
        ))

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
