"""Tests for SubprocessExecutor."""

import subprocess
from unittest.mock import patch

import pytest

from tzdeploy.core.errors import CommandCancelledError, CommandFailedError
from tzdeploy.deployments.executor import COMMAND_NOT_FOUND_EXIT_CODE, SubprocessExecutor


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestSubprocessExecutor:
    """Tests for SubprocessExecutor.execute."""

    @patch("tzdeploy.deployments.executor.subprocess.run")
    def test_success(self, mock_run, tmp_path):
        mock_run.return_value = _completed(0, stdout="ok\n")

        result = SubprocessExecutor().execute("docker", ["run", "img"], cwd=tmp_path, timeout=30)

        assert result.exit_code == 0
        assert result.stdout == "ok\n"
        args, kwargs = mock_run.call_args
        assert args[0] == ["docker", "run", "img"]
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["capture_output"] is True
        assert kwargs["timeout"] == 30

    @patch("tzdeploy.deployments.executor.subprocess.run")
    def test_non_zero_raises(self, mock_run):
        mock_run.return_value = _completed(1, stdout="partial", stderr="Error: denied")

        with pytest.raises(CommandFailedError) as exc_info:
            SubprocessExecutor().execute("docker", ["run"])

        assert exc_info.value.command_exit_code == 1
        assert exc_info.value.stdout == "partial"
        assert exc_info.value.stderr == "Error: denied"

    @patch("tzdeploy.deployments.executor.subprocess.run")
    def test_non_zero_allowed(self, mock_run):
        mock_run.return_value = _completed(2, stdout="Plan: 1 to add")

        result = SubprocessExecutor().execute("docker", ["run"], allow_non_zero_exit=True)

        assert result.exit_code == 2

    @patch("tzdeploy.deployments.executor.subprocess.run")
    def test_missing_binary_is_127(self, mock_run):
        mock_run.side_effect = FileNotFoundError("docker")

        result = SubprocessExecutor().execute("docker", ["run"], allow_non_zero_exit=True)

        assert result.exit_code == COMMAND_NOT_FOUND_EXIT_CODE
        assert "command not found" in result.stderr

    @patch("tzdeploy.deployments.executor.subprocess.run")
    def test_missing_binary_raises_when_not_allowed(self, mock_run):
        mock_run.side_effect = FileNotFoundError("docker")

        with pytest.raises(CommandFailedError) as exc_info:
            SubprocessExecutor().execute("docker", ["run"])

        assert exc_info.value.command_not_found

    @patch("tzdeploy.deployments.executor.subprocess.run")
    def test_timeout_cancels(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="docker", timeout=5)

        with pytest.raises(CommandCancelledError, match="timed out after 5s"):
            SubprocessExecutor().execute("docker", ["run"], timeout=5)
