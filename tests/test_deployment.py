"""
Deployment orchestrator tests.

Covers the full deploy cycle against in-memory docker/nginx fakes:
1. Successful cutover promotes the new version and demotes the old one
2. Failed validation never touches traffic and leaves the old version serving
3. Only one deploy per project can be in flight
"""

import sqlite3
import threading

import pytest

from app.models import DeploymentStatus, ValidationResult
from conftest import FakeValidator
from deploy.errors import (
    ConflictError,
    ContainerRuntimeError,
    DeploymentCancelled,
    DeploymentError,
    NotFoundError,
    StaleRecordError,
)
from deploy.orchestrator import DeploymentOrchestrator

FAILED_CHECK = ValidationResult(
    success=False,
    diagnostic="Health check failed after 5 attempts\n\n--- Container output ---\nboom",
    attempts=5,
)


@pytest.fixture
def orchestrator(store, runtime, traffic):
    return DeploymentOrchestrator(
        store, runtime, traffic,
        validator=FakeValidator(),
        network="test-net",
        container_host="127.0.0.1",
    )


def test_first_deploy_goes_active(orchestrator, project, runtime, traffic):
    result = orchestrator.deploy(project.id, "shop:1")

    d = result.deployment
    assert d.status == DeploymentStatus.ACTIVE
    assert d.version == 1
    assert traffic.switches == [("shop", d.port)]
    assert runtime.called("run") == [("zs-shop-v1", "shop:1", d.port, 8080, "test-net")]
    assert orchestrator.validator.calls == [(f"http://127.0.0.1:{d.port}", "/health", "zs-shop-v1")]
    assert "v1" in result.message


def test_successful_deploy_demotes_previous(orchestrator, project, store, traffic):
    v1 = orchestrator.deploy(project.id, "shop:1").deployment
    v2 = orchestrator.deploy(project.id, "shop:2").deployment

    assert v2.status == DeploymentStatus.ACTIVE
    assert store.get_deployment(v1.id).status == DeploymentStatus.ROLLED_BACK
    assert traffic.switches[-1] == ("shop", v2.port)
    assert len(traffic.switches) == 2


def test_versions_are_sequential(orchestrator, project, store):
    for i in range(1, 5):
        orchestrator.deploy(project.id, f"shop:{i}")
    versions = sorted(d.version for d in store.find_for_project(project.id))
    assert versions == [1, 2, 3, 4]


def test_failed_validation(store, runtime, traffic, project):
    orchestrator = DeploymentOrchestrator(store, runtime, traffic, validator=FakeValidator())
    v1 = orchestrator.deploy(project.id, "shop:1").deployment
    orchestrator.validator = FakeValidator(FAILED_CHECK)

    with pytest.raises(DeploymentError) as exc:
        orchestrator.deploy(project.id, "shop:2")

    assert "--- Container output ---" in str(exc.value)
    failed = store.find_for_project(project.id)[0]
    assert failed.version == 2
    assert failed.status == DeploymentStatus.FAILED
    assert ("zs-shop-v2",) in runtime.called("stop")
    assert len(traffic.switches) == 1
    assert store.get_deployment(v1.id).status == DeploymentStatus.ACTIVE


def test_pull_failure_marks_failed_without_stopping(orchestrator, project, store, runtime, traffic):
    runtime.failures["pull_or_build"] = ContainerRuntimeError("manifest unknown")

    with pytest.raises(ContainerRuntimeError):
        orchestrator.deploy(project.id, "shop:missing")

    assert store.find_for_project(project.id)[0].status == DeploymentStatus.FAILED
    assert runtime.called("run") == []
    assert runtime.called("stop") == []
    assert traffic.switches == []


def test_traffic_switch_failure_fails_closed(orchestrator, project, store, runtime, traffic):
    v1 = orchestrator.deploy(project.id, "shop:1").deployment
    traffic.fail = True

    with pytest.raises(DeploymentError, match="Traffic switch failed"):
        orchestrator.deploy(project.id, "shop:2")

    v2 = store.find_for_project(project.id)[0]
    assert v2.status == DeploymentStatus.FAILED
    assert ("zs-shop-v2",) in runtime.called("stop")
    assert store.get_deployment(v1.id).status == DeploymentStatus.ACTIVE


def test_no_record_left_pending(orchestrator, project, store, runtime):
    runtime.failures["run"] = ContainerRuntimeError("port is already allocated")
    with pytest.raises(ContainerRuntimeError):
        orchestrator.deploy(project.id, "shop:1")
    assert store.find_all_deploying() == []


def test_unknown_project(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.deploy("nope", "shop:1")


def test_concurrent_deploys_single_flight(orchestrator, project, store, runtime, gate):
    entered, release = gate
    runtime.pull_gate = gate
    outcome = {}

    def first():
        outcome["first"] = orchestrator.deploy(project.id, "shop:1")

    t = threading.Thread(target=first)
    t.start()
    assert entered.wait(5)

    conflicts = 0
    for i in range(5):
        try:
            orchestrator.deploy(project.id, f"shop:{i + 2}")
        except ConflictError:
            conflicts += 1

    release.set()
    t.join(5)

    assert conflicts == 5
    assert outcome["first"].deployment.status == DeploymentStatus.ACTIVE
    assert [d.version for d in store.find_for_project(project.id)] == [1]


def test_cancel_in_flight_deploy(store, runtime, traffic, project, gate):
    entered, release = gate
    runtime.pull_gate = gate

    class BlockingValidator:
        def validate(self, container_url, health_path, container_name, config, cancel=None):
            assert cancel.wait(5)
            raise DeploymentCancelled("Deployment cancelled")

    orchestrator = DeploymentOrchestrator(store, runtime, traffic, validator=BlockingValidator())
    errors = []

    def run():
        try:
            orchestrator.deploy(project.id, "shop:1")
        except DeploymentCancelled as e:
            errors.append(e)

    t = threading.Thread(target=run)
    t.start()
    assert entered.wait(5)
    assert orchestrator.cancel(project.id) is True
    release.set()
    t.join(5)

    assert len(errors) == 1
    assert store.find_for_project(project.id)[0].status == DeploymentStatus.FAILED
    assert ("zs-shop-v1",) in runtime.called("stop")
    assert traffic.switches == []
    assert orchestrator.cancel(project.id) is False


def test_older_standby_containers_are_retired(orchestrator, project, runtime):
    for i in range(1, 4):
        orchestrator.deploy(project.id, f"shop:{i}")

    # v3 active, v2 kept as rollback target, v1 retired
    assert runtime.running.get("zs-shop-v3") is True
    assert runtime.running.get("zs-shop-v2") is True
    assert "zs-shop-v1" not in runtime.running
    assert ("zs-shop-v1",) in runtime.called("remove")


def _failing_activate(*args, **kwargs):
    raise sqlite3.OperationalError("database is locked")


def test_store_failure_after_cutover_restores_previous_port(orchestrator, project, store, runtime, traffic,
                                                            monkeypatch):
    v1 = orchestrator.deploy(project.id, "shop:1").deployment
    monkeypatch.setattr(store, "activate", _failing_activate)

    with pytest.raises(sqlite3.OperationalError):
        orchestrator.deploy(project.id, "shop:2")

    v2 = store.find_for_project(project.id)[0]
    assert traffic.switches == [("shop", v1.port), ("shop", v2.port), ("shop", v1.port)]
    assert traffic.routes["shop"] == v1.port
    assert v2.status == DeploymentStatus.FAILED
    assert store.get_deployment(v1.id).status == DeploymentStatus.ACTIVE
    assert runtime.running["zs-shop-v2"] is False


def test_first_deploy_failing_after_cutover_reports_dead_upstream(orchestrator, project, store, traffic,
                                                                  monkeypatch):
    monkeypatch.setattr(store, "activate", _failing_activate)

    with pytest.raises(DeploymentError, match="no previous version to restore") as exc:
        orchestrator.deploy(project.id, "shop:1")

    v1 = store.find_for_project(project.id)[0]
    assert isinstance(exc.value.__cause__, sqlite3.OperationalError)
    assert str(v1.port) in str(exc.value)
    assert v1.status == DeploymentStatus.FAILED
    assert traffic.switches == [("shop", v1.port)]


def test_stale_cutover_is_a_deployment_failure(orchestrator, project, store, monkeypatch):
    def stale_activate(*args, **kwargs):
        raise StaleRecordError("Deployment is FAILED, expected PENDING")

    orchestrator.deploy(project.id, "shop:1")
    monkeypatch.setattr(store, "activate", stale_activate)

    with pytest.raises(DeploymentError) as exc:
        orchestrator.deploy(project.id, "shop:2")
    assert not isinstance(exc.value, ConflictError)


def test_in_flight_deploy_is_reported(store, runtime, traffic, project, gate):
    entered, release = gate
    runtime.pull_gate = gate
    orchestrator = DeploymentOrchestrator(store, runtime, traffic, validator=FakeValidator())

    t = threading.Thread(target=orchestrator.deploy, args=(project.id, "shop:1"))
    t.start()
    assert entered.wait(5)
    assert orchestrator.is_deploying(project.id)
    release.set()
    t.join(5)

    assert not orchestrator.is_deploying(project.id)
