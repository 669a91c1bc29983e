"""Root test configuration and shared fakes."""

import logging
from datetime import UTC, datetime, timedelta

import pytest
import structlog

from tzdeploy.config.project import JsonProjectStore, ProjectDocument
from tzdeploy.config.settings import Settings
from tzdeploy.deployments.models import AdapterResult, EnvironmentStatus
from tzdeploy.deployments.orchestrator import DeploymentOrchestrator


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


# Near the real clock: CLI history listing prunes against utc_now()
START = datetime.now(UTC).replace(second=0, microsecond=0)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeAdapter:
    """DeployAdapter returning canned results and recording calls.

    ``results`` maps action name to an AdapterResult, or an exception to raise,
    or a list consumed one item per call. ``hooks`` maps action name to a
    callable run before the result is returned.
    """

    def __init__(self):
        self.results = {
            "plan": AdapterResult(status=EnvironmentStatus.HEALTHY),
            "apply": AdapterResult(status=EnvironmentStatus.HEALTHY),
            "destroy": AdapterResult(status=EnvironmentStatus.HEALTHY),
            "report": AdapterResult(status=EnvironmentStatus.HEALTHY),
        }
        self.hooks = {}
        self.calls = []

    def _call(self, action, project_path, environment_id):
        self.calls.append((action, environment_id))
        if action in self.hooks:
            self.hooks[action](project_path, environment_id)
        result = self.results[action]
        if isinstance(result, list):
            result = result.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    def plan(self, project_path, environment_id):
        return self._call("plan", project_path, environment_id)

    def apply(self, project_path, environment_id):
        return self._call("apply", project_path, environment_id)

    def destroy(self, project_path, environment_id):
        return self._call("destroy", project_path, environment_id)

    def report(self, project_path, environment_id):
        return self._call("report", project_path, environment_id)

    def actions(self):
        return [action for action, _ in self.calls]


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return JsonProjectStore()


@pytest.fixture
def project_path(tmp_path, store):
    """A project directory with an empty project document."""
    store.save(str(tmp_path), ProjectDocument(name="demo"))
    return str(tmp_path)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def orchestrator(store, adapter, settings, clock):
    return DeploymentOrchestrator(store, adapter, settings=settings, clock=clock, actor="tester")
