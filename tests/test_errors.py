"""Tests for error types and the CLI error decorator."""

from tzdeploy.core.errors import (
    CommandFailedError,
    ConfigurationError,
    DeploymentError,
    ErrorKind,
    ExitCode,
    TzDeployError,
    format_error_message,
    main_with_error_handling,
)


class TestDeploymentError:
    """Tests for tagged deployment errors."""

    def test_to_dict_and_str(self):
        error = DeploymentError(ErrorKind.LOCK_ACTIVE, "held by run_1")

        assert error.to_dict() == {"code": "LOCK_ACTIVE", "message": "held by run_1"}
        assert str(error) == "[LOCK_ACTIVE] held by run_1"


class TestCommandFailedError:
    """Tests for CommandFailedError."""

    def test_command_not_found(self):
        assert CommandFailedError("missing", exit_code=127).command_not_found
        assert not CommandFailedError("failed", exit_code=1, stderr="Error").command_not_found


class TestMainWithErrorHandling:
    """Tests for main_with_error_handling."""

    def test_passes_through_exit_code(self):
        @main_with_error_handling()
        def command():
            return ExitCode.SUCCESS

        assert command() == 0

    def test_tz_error_returns_failure(self, capsys):
        @main_with_error_handling()
        def command():
            raise ConfigurationError("User config not found")

        assert command() == ExitCode.FAILURE
        assert "User config not found" in capsys.readouterr().err

    def test_keyboard_interrupt(self):
        @main_with_error_handling()
        def command():
            raise KeyboardInterrupt

        assert command() == ExitCode.INTERRUPTED

    def test_unexpected_error(self, capsys):
        @main_with_error_handling(log_errors=False)
        def command():
            raise RuntimeError("kaboom")

        assert command() == 1
        assert "kaboom" in capsys.readouterr().err


class TestFormatErrorMessage:
    """Tests for format_error_message."""

    def test_with_details(self):
        error = TzDeployError("Invalid project config", details={"path": "/p"})

        assert format_error_message(error) == "Invalid project config (path=/p)"

    def test_without_details(self):
        assert format_error_message(TzDeployError("plain")) == "plain"
