"""
Process execution for external commands.

The OpenTofu adapter depends only on the ``ProcessExecutor`` protocol so it
can be exercised without a container runtime.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

import structlog

from tzdeploy.core.errors import CommandCancelledError, CommandFailedError

logger = structlog.get_logger()

COMMAND_NOT_FOUND_EXIT_CODE = 127


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class ProcessExecutor(Protocol):
    """Runs a command and reports its exit code and output."""

    def execute(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        collect_output: bool = True,
        allow_non_zero_exit: bool = False,
        timeout: float | None = None,
    ) -> ProcessResult:
        """
        Run ``command`` with ``args``.

        Raises:
            CommandFailedError: Non-zero exit when ``allow_non_zero_exit`` is False
            CommandCancelledError: The command timed out
        """
        ...


class SubprocessExecutor:
    """ProcessExecutor backed by ``subprocess.run``."""

    def execute(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        collect_output: bool = True,
        allow_non_zero_exit: bool = False,
        timeout: float | None = None,
    ) -> ProcessResult:
        cmd = [command, *args]
        logger.debug("process_started", command=command, action=args[0] if args else None)

        try:
            proc = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                stdin=subprocess.DEVNULL,
                capture_output=collect_output,
                text=True,
                timeout=timeout,
            )
            result = ProcessResult(
                exit_code=proc.returncode,
                stdout=proc.stdout or "",
                stderr=proc.stderr or "",
            )
        except FileNotFoundError:
            result = ProcessResult(
                exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                stderr=f"{command}: command not found",
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("process_timed_out", command=command, timeout=timeout)
            raise CommandCancelledError(
                f"Command timed out after {e.timeout:g}s: {command}",
                details={"timeout_seconds": e.timeout},
            ) from e

        if result.exit_code != 0 and not allow_non_zero_exit:
            logger.warning("process_failed", command=command, exit_code=result.exit_code)
            raise CommandFailedError(
                f"Command failed with exit code {result.exit_code}: {command}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result
