"""Shared fixtures: a throwaway SQLite store and in-memory stand-ins for
docker, nginx and the health endpoint."""

import threading

import pytest
import requests

from app.database import DeploymentStore
from app.models import ValidationConfig, ValidationResult
from deploy.errors import TrafficSwitchError


class FakeRuntime:
    def __init__(self):
        self.calls = []
        self.running = {}
        self.restarts = {}
        self.log_lines = {}
        self.stats_rows = {}
        self.failures = {}
        self.pull_gate = None

    def _record(self, method, *args):
        self.calls.append((method, *args))
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    def called(self, method):
        return [call[1:] for call in self.calls if call[0] == method]

    def pull_or_build(self, image_tag, source_ref=None):
        self._record("pull_or_build", image_tag, source_ref)
        if self.pull_gate is not None:
            entered, release = self.pull_gate
            entered.set()
            release.wait(5)

    def run(self, name, image_tag, host_port, container_port, network):
        self._record("run", name, image_tag, host_port, container_port, network)
        self.running[name] = True

    def stop(self, name):
        self._record("stop", name)
        self.running[name] = False

    def remove(self, name):
        self._record("remove", name)
        self.running.pop(name, None)

    def inspect_running(self, name):
        self.calls.append(("inspect_running", name))
        return self.running.get(name, False)

    def restart_count(self, name):
        self.calls.append(("restart_count", name))
        return self.restarts.get(name, 0)

    def logs(self, name, max_lines=100):
        self.calls.append(("logs", name, max_lines))
        return self.log_lines.get(name, [])[-max_lines:]

    def stats(self, name):
        return self.stats_rows.get(name)


class FakeTrafficSwitch:
    def __init__(self):
        self.switches = []
        self.routes = {}
        self.fail = False

    def switch_to(self, project, port):
        self.switches.append((project, port))
        if self.fail:
            raise TrafficSwitchError("nginx -t failed")
        self.routes[project] = port

    def current_port(self, project):
        return self.routes.get(project)


class FakeValidator:
    """Stands in for HealthValidator; returns canned results in order."""

    def __init__(self, *results):
        self.results = list(results) or [ValidationResult(success=True, latency_ms=12.0, attempts=1)]
        self.calls = []

    def validate(self, container_url, health_path, container_name, config, cancel=None):
        self.calls.append((container_url, health_path, container_name))
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class FakeSession:
    """Replays scripted health responses.

    Each script entry is ``(status_code_or_exception, seconds_taken)``; the
    shared clock advances by ``seconds_taken`` on every request.
    """

    def __init__(self, clock, script):
        self.clock = clock
        self.script = list(script)
        self.requests = []

    def get(self, url, timeout=None):
        self.requests.append((url, timeout))
        outcome, took = self.script.pop(0)
        self.clock.now += took
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


def connection_refused():
    return requests.ConnectionError("connection refused")


@pytest.fixture
def store(tmp_path):
    s = DeploymentStore(db_path=str(tmp_path / "zeroshift.db"), base_port=3100, container_prefix="zs")
    s.init_db()
    return s


@pytest.fixture
def validation_config():
    return ValidationConfig(timeout_seconds=1, max_retries=5, retry_delay_seconds=0, max_latency_ms=500)


@pytest.fixture
def project(store, validation_config):
    return store.create_project("shop", health_path="/health", container_port=8080,
                                validation=validation_config)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def traffic():
    return FakeTrafficSwitch()


@pytest.fixture
def gate():
    return threading.Event(), threading.Event()
