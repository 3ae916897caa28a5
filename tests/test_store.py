import threading

import pytest

from app.models import DeploymentStatus
from deploy.errors import ConflictError, NotFoundError, StaleRecordError


def _deploy_and_activate(store, project, image="shop:1"):
    d = store.create_deployment(project, image)
    previous = store.find_active_for_project(project.id)
    new, _ = store.activate(d.id, previous.id if previous else None)
    return new


def test_first_deployment_allocation(store, project):
    d = store.create_deployment(project, "shop:1")
    assert d.version == 1
    assert d.status == DeploymentStatus.PENDING
    assert d.container_name == "zs-shop-v1"
    assert d.port == 3100
    assert d.color == "blue"


def test_versions_and_ports_increase(store, project):
    first = _deploy_and_activate(store, project, "shop:1")
    second = store.create_deployment(project, "shop:2")
    assert second.version == first.version + 1
    assert second.port == first.port + 1
    assert second.color == "green"
    assert store.next_version(project.id) == 3


def test_ports_are_unique_across_projects(store, project):
    other = store.create_project("blog")
    a = store.create_deployment(project, "shop:1")
    b = store.create_deployment(other, "blog:1")
    assert a.port != b.port
    assert b.version == 1
    assert b.container_name == "zs-blog-v1"


def test_second_pending_is_a_conflict(store, project):
    store.create_deployment(project, "shop:1")
    with pytest.raises(ConflictError):
        store.create_deployment(project, "shop:2")


def test_failed_deploy_frees_the_slot_without_reusing_version(store, project):
    d = store.create_deployment(project, "shop:1")
    store.update_status(d.id, DeploymentStatus.FAILED)
    again = store.create_deployment(project, "shop:1")
    assert again.version == 2


def test_concurrent_claims_only_one_wins(store, project):
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def claim(i):
        barrier.wait()
        try:
            d = store.create_deployment(project, f"shop:{i}")
            outcome = ("ok", d.version)
        except ConflictError:
            outcome = ("conflict", None)
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=claim, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert sorted(r[0] for r in results) == ["conflict"] * 7 + ["ok"]
    pending = [d for d in store.find_for_project(project.id) if d.status == DeploymentStatus.PENDING]
    assert len(pending) == 1
    assert pending[0].version == 1


def test_activate_demotes_previous_in_one_step(store, project):
    v1 = _deploy_and_activate(store, project, "shop:1")
    v2 = store.create_deployment(project, "shop:2")

    new, previous = store.activate(v2.id, v1.id)

    assert new.status == DeploymentStatus.ACTIVE
    assert previous.status == DeploymentStatus.ROLLED_BACK
    active = [d for d in store.find_for_project(project.id) if d.status == DeploymentStatus.ACTIVE]
    assert [d.id for d in active] == [v2.id]


def test_activate_skips_previous_already_moved(store, project):
    v1 = _deploy_and_activate(store, project, "shop:1")
    store.update_status(v1.id, DeploymentStatus.FAILED)
    v2 = store.create_deployment(project, "shop:2")

    new, previous = store.activate(v2.id, v1.id)

    assert new.status == DeploymentStatus.ACTIVE
    assert previous.status == DeploymentStatus.FAILED


def test_terminal_failed_cannot_be_revived(store, project):
    d = store.create_deployment(project, "shop:1")
    store.update_status(d.id, DeploymentStatus.FAILED)
    with pytest.raises(StaleRecordError):
        store.update_status(d.id, DeploymentStatus.ACTIVE)


def test_conditional_update_detects_concurrent_move(store, project):
    d = store.create_deployment(project, "shop:1")
    store.update_status(d.id, DeploymentStatus.FAILED)
    with pytest.raises(StaleRecordError):
        store.update_status(d.id, DeploymentStatus.FAILED, expected=DeploymentStatus.PENDING)


def test_update_unknown_deployment(store):
    with pytest.raises(NotFoundError):
        store.update_status("missing", DeploymentStatus.FAILED)


def test_find_previous_returns_newest_lower_rolled_back(store, project):
    v1 = _deploy_and_activate(store, project, "shop:1")
    v2 = _deploy_and_activate(store, project, "shop:2")
    v3 = _deploy_and_activate(store, project, "shop:3")

    previous = store.find_previous_for_project(project.id, v3.version)
    assert previous.id == v2.id
    assert store.find_previous_for_project(project.id, v2.version).id == v1.id
    assert store.find_previous_for_project(project.id, v1.version) is None


def test_find_all_deploying_and_active(store, project):
    other = store.create_project("blog")
    pending = store.create_deployment(project, "shop:1")
    active = _deploy_and_activate(store, other, "blog:1")

    assert [d.id for d in store.find_all_deploying()] == [pending.id]
    rows = store.find_all_active_with_projects()
    assert [(d.id, p.name) for d, p in rows] == [(active.id, "blog")]


def test_duplicate_project_name(store, project):
    with pytest.raises(ConflictError):
        store.create_project("shop")


def test_update_project_config(store, project, validation_config):
    updated = store.update_project_config(
        project.id,
        health_path="/ready",
        validation=validation_config.model_copy(update={"max_retries": 9}),
    )
    assert updated.health_path == "/ready"
    assert updated.validation.max_retries == 9
    assert updated.name == "shop"

    with pytest.raises(ValueError):
        store.update_project_config(project.id, name="renamed")
    with pytest.raises(NotFoundError):
        store.update_project_config("missing", health_path="/x")
