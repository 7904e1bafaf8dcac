import pytest

from conftest import INITIAL_ROUTES, NEW_CONTAINER, OLD_CONTAINER, PUBLIC, REQUEST, FakeProber
from canary_deploy.errors import (
    CutoverError,
    DecommissionWarning,
    DeploymentAborted,
    HealthCheckError,
    InstanceCreationError,
    PreflightError,
    SnapshotError,
)
from canary_deploy.health import AbortSignal
from canary_deploy.lock import DeploymentLock
from canary_deploy.models import STAGE_ORDER, DeploymentRequest, DeploymentState
from canary_deploy.orchestrator import CanaryDeployment


def public_script(*outcomes, default=True):
    """Handler answering instance probes OK and public probes from ``outcomes``."""
    answers = list(outcomes)

    def handler(url):
        if url != PUBLIC:
            return True
        return answers.pop(0) if answers else default
    return handler


# ── Happy path ────────────────────────────────────────────────

def test_successful_deployment_commits(make_deployment, runtime, store, project):
    deployment = make_deployment()
    result = deployment.run()

    assert result.state == DeploymentState.COMMITTED
    assert deployment.transitions == STAGE_ORDER
    assert result.router_name == "my-app-router"
    assert result.warnings == []

    document = store.read()
    assert list(document.routers) == ["my-app-router"]
    assert document.routers["my-app-router"].service == "my-app-v2-svc@docker"
    assert document.routers["my-app-router"].rule == "Host(`localhost`)"
    assert document.services == {}

    assert OLD_CONTAINER not in runtime.containers
    assert runtime.containers[NEW_CONTAINER] is True
    assert not (project / "main-nginx").exists()
    assert (project / "my-app-v2" / "compose.yaml").exists()
    assert not store.backup_path.exists()


def test_canary_validation_runs_ten_checks_then_one_final_probe(make_deployment, sleeps):
    deployment = make_deployment()
    deployment.run()

    assert len(deployment.prober.public_calls()) == 11
    # 9 pauses between the 10 canary checks, then the cutover settle delay
    assert sleeps == [3.0] * 9 + [5.0]


def test_canary_validation_sees_weighted_route(make_deployment, store):
    seen = []

    def handler(url):
        if url == PUBLIC:
            doc = store.read()
            router = doc.routers["my-app-router"]
            seen.append((router.service, doc.service_targets("my-app-router")))
        return True

    make_deployment(handler=handler).run()

    canary = seen[:10]
    assert all(service == "my-app-v2-weighted-svc" for service, _ in canary)
    targets = canary[0][1]
    assert [(t.name, t.weight) for t in targets] == [
        ("main-nginx-svc@docker", 9),
        ("my-app-v2-svc@docker", 1),
    ]
    # final probe happens after the 100% cutover write
    assert seen[10][0] == "my-app-v2-svc@docker"


def test_instance_probed_by_resolved_address(make_deployment):
    deployment = make_deployment()
    deployment.run()

    assert deployment.prober.instance_calls() == ["http://172.18.0.5/"]
    assert deployment.handle.network_address == "172.18.0.5"


def test_instance_health_port_is_appended(make_deployment):
    deployment = make_deployment(config_overrides={"INSTANCE_HEALTH_PORT": 8080,
                                                   "INSTANCE_HEALTH_PATH": "/ready"})
    deployment.run()

    assert deployment.prober.instance_calls() == ["http://172.18.0.5:8080/ready"]


def test_live_router_name_and_rule_are_preserved(make_deployment, store):
    store.path.write_text(
        "http:\n"
        "  routers:\n"
        "    main-app-router:\n"
        "      rule: Host(`app.example.com`)\n"
        "      service: legacy-svc@docker\n"
        "      entryPoints: [websecure]\n"
        "      tls: {certResolver: le}\n"
    )
    deployment = make_deployment()
    result = deployment.run()

    assert result.router_name == "main-app-router"
    router = store.read().routers["main-app-router"]
    assert router.rule == "Host(`app.example.com`)"
    assert router.entry_points == ["websecure"]
    assert router.model_extra["tls"] == {"certResolver": "le"}


def test_canary_uses_live_service_as_old_target(make_deployment, store):
    store.path.write_text(INITIAL_ROUTES.replace("main-nginx-svc@docker", "blue-svc@docker"))
    captured = []

    def handler(url):
        if url == PUBLIC and not captured:
            captured.extend(store.read().service_targets("my-app-router"))
        return True

    make_deployment(handler=handler).run()

    assert captured[0].name == "blue-svc@docker"


def test_leftover_weighted_route_falls_back_to_workspace_name(make_deployment, store):
    store.path.write_text(
        "http:\n"
        "  routers:\n"
        "    my-app-router:\n"
        "      rule: Host(`localhost`)\n"
        "      service: old-weighted-svc\n"
        "  services:\n"
        "    old-weighted-svc:\n"
        "      weighted:\n"
        "        services:\n"
        "          - {name: a@docker, weight: 1}\n"
    )
    captured = []

    def handler(url):
        if url == PUBLIC and not captured:
            captured.extend(store.read().service_targets("my-app-router"))
        return True

    make_deployment(handler=handler).run()

    assert captured[0].name == "main-nginx-svc@docker"


def test_decommission_failure_is_only_a_warning(make_deployment, runtime):
    runtime.fail_remove.add(OLD_CONTAINER)
    result = make_deployment().run()

    assert result.state == DeploymentState.COMMITTED
    assert len(result.warnings) == 1
    assert isinstance(result.warnings[0], DecommissionWarning)
    assert NEW_CONTAINER in runtime.containers


# ── Pre-flight ────────────────────────────────────────────────

def test_preflight_rejects_new_name_equal_to_old_instance(make_deployment, runtime, store):
    before = store.read_bytes()
    deployment = make_deployment(new_service_name=OLD_CONTAINER)

    with pytest.raises(PreflightError):
        deployment.run()

    assert runtime.started == []
    assert runtime.removed == []
    assert store.read_bytes() == before
    assert not store.backup_path.exists()
    assert deployment.transitions == [DeploymentState.IDLE]


def test_preflight_rejects_container_name_collision(make_deployment, runtime):
    with pytest.raises(PreflightError):
        make_deployment(new_service_name="main-nginx").run()
    assert runtime.started == []


def test_preflight_rejects_missing_old_workspace(make_deployment, runtime):
    with pytest.raises(PreflightError, match="not found"):
        make_deployment(old_service_workspace="does-not-exist").run()
    assert runtime.started == []


def test_preflight_rejects_stopped_old_instance(make_deployment, runtime):
    runtime.containers[OLD_CONTAINER] = False
    with pytest.raises(PreflightError, match="not running"):
        make_deployment().run()
    assert runtime.started == []


def test_preflight_rejects_missing_image(make_deployment, runtime):
    runtime.images.clear()
    with pytest.raises(PreflightError, match="not found locally"):
        make_deployment().run()
    assert runtime.started == []


def test_preflight_rejects_existing_new_workspace(make_deployment, runtime, project):
    (project / "my-app-v2").mkdir()
    with pytest.raises(PreflightError, match="already exists"):
        make_deployment().run()
    assert runtime.started == []
    assert (project / "my-app-v2").exists()


def test_preflight_rejects_project_root_as_old_workspace(make_deployment, runtime):
    with pytest.raises(PreflightError):
        make_deployment(old_service_workspace=".").run()
    assert runtime.started == []


def test_preflight_rejects_existing_new_container(make_deployment, runtime, store):
    runtime.containers[NEW_CONTAINER] = False
    runtime.fail_start = True

    with pytest.raises(PreflightError, match="already exists"):
        make_deployment().run()

    assert runtime.started == []
    assert runtime.removed == []
    assert runtime.containers == {OLD_CONTAINER: True, NEW_CONTAINER: False}
    assert store.read_bytes() == INITIAL_ROUTES.encode()


@pytest.mark.parametrize("outside", ["..", "../elsewhere"])
def test_preflight_rejects_old_workspace_outside_project(make_deployment, runtime, project, outside):
    (project.parent / "elsewhere").mkdir(exist_ok=True)
    with pytest.raises(PreflightError, match="inside the project root"):
        make_deployment(old_service_workspace=outside).run()
    assert runtime.started == []
    assert runtime.removed == []
    assert (project.parent / "elsewhere").is_dir()


def test_preflight_rejects_absolute_old_workspace_elsewhere(make_deployment, runtime, tmp_path_factory):
    foreign = tmp_path_factory.mktemp("srv")
    with pytest.raises(PreflightError, match="inside the project root"):
        make_deployment(old_service_workspace=str(foreign)).run()
    assert foreign.is_dir()
    assert runtime.removed == []


def test_absolute_old_workspace_inside_project_is_accepted(make_deployment, project):
    result = make_deployment(old_service_workspace=str(project / "main-nginx")).run()
    assert result.state == DeploymentState.COMMITTED
    assert not (project / "main-nginx").exists()


def test_concurrent_deployment_is_rejected(make_deployment, runtime, project):
    with DeploymentLock(project / ".canary-deploy.lock"):
        with pytest.raises(PreflightError, match="Another deployment"):
            make_deployment().run()
    assert runtime.started == []


# ── Failures and rollback ─────────────────────────────────────

def test_initial_health_check_exhausts_attempts(make_deployment, runtime, store, project, sleeps):
    before = store.read_bytes()
    deployment = make_deployment(handler=lambda url: False)

    with pytest.raises(HealthCheckError):
        deployment.run()

    assert len(deployment.prober.instance_calls()) == 15
    assert sleeps == [2.0] * 14
    assert DeploymentState.CANARY_ROUTING not in deployment.transitions
    assert deployment.state == DeploymentState.ROLLED_BACK
    assert NEW_CONTAINER not in runtime.containers
    assert not (project / "my-app-v2").exists()
    assert store.read_bytes() == before
    assert not store.backup_path.exists()
    assert runtime.containers[OLD_CONTAINER] is True


def test_address_never_resolving_is_a_creation_error(make_deployment, runtime, project):
    runtime.addresses.clear()
    deployment = make_deployment()

    with pytest.raises(InstanceCreationError, match="network address"):
        deployment.run()

    assert deployment.prober.calls == []
    assert NEW_CONTAINER not in runtime.containers
    assert not (project / "my-app-v2").exists()


def test_instance_creation_failure_removes_workspace(make_deployment, runtime, store, project):
    runtime.fail_start = True
    before = store.read_bytes()
    deployment = make_deployment()

    with pytest.raises(InstanceCreationError):
        deployment.run()

    assert deployment.transitions[-2:] == [
        DeploymentState.NEW_INSTANCE_STARTING, DeploymentState.ROLLED_BACK,
    ]
    assert not (project / "my-app-v2").exists()
    assert store.read_bytes() == before


def test_unreadable_route_document_aborts_before_routing(make_deployment, runtime, store, project):
    store.path.unlink()
    deployment = make_deployment()

    with pytest.raises(SnapshotError):
        deployment.run()

    assert not store.path.exists()
    assert NEW_CONTAINER not in runtime.containers
    assert not (project / "my-app-v2").exists()
    assert runtime.containers[OLD_CONTAINER] is True


def test_canary_failure_restores_previous_routes(make_deployment, runtime, store, project):
    before = store.read_bytes()
    deployment = make_deployment(handler=public_script(True, True, True, False))

    with pytest.raises(HealthCheckError, match="under traffic"):
        deployment.run()

    # fail-fast: 4 canary probes, then the post-rollback reachability probe
    assert len(deployment.prober.public_calls()) == 5
    assert DeploymentState.FULL_CUTOVER not in deployment.transitions
    assert store.read_bytes() == before
    assert not store.backup_path.exists()
    assert NEW_CONTAINER not in runtime.containers
    assert runtime.containers[OLD_CONTAINER] is True
    assert (project / "main-nginx").exists()
    assert deployment.rollback.report.route_verified is True


def test_cutover_probe_failure_restores_pre_canary_routes(make_deployment, runtime, store, project):
    before = store.read_bytes()
    deployment = make_deployment(handler=public_script(*([True] * 10), False))

    with pytest.raises(CutoverError):
        deployment.run()

    assert deployment.transitions[-2:] == [
        DeploymentState.POST_CUTOVER_CHECK, DeploymentState.ROLLED_BACK,
    ]
    assert store.read_bytes() == before
    assert store.read().routers["my-app-router"].service == "main-nginx-svc@docker"
    assert NEW_CONTAINER not in runtime.containers
    assert runtime.containers[OLD_CONTAINER] is True
    assert (project / "main-nginx").exists()
    assert not (project / "my-app-v2").exists()


def test_rollback_is_not_repeated(make_deployment, runtime):
    deployment = make_deployment(handler=public_script(False))
    with pytest.raises(HealthCheckError):
        deployment.run()
    removed = list(runtime.removed)

    deployment.rollback.run(reason="second call")

    assert runtime.removed == removed == [NEW_CONTAINER]


def test_abort_signal_interrupts_canary_and_rolls_back(config, runtime, store, project):
    abort = AbortSignal()
    before = store.read_bytes()

    def handler(url):
        if url == PUBLIC:
            abort.set("SIGTERM received")
        return True

    deployment = CanaryDeployment(
        DeploymentRequest(**REQUEST),
        config=config.model_copy(update={"ROLLBACK_SETTLE_SECONDS": 0.0}),
        runtime=runtime,
        store=store,
        prober=FakeProber(handler, sleep=abort.wait),
        abort=abort,
    )

    with pytest.raises(DeploymentAborted, match="SIGTERM"):
        deployment.run()

    assert deployment.state == DeploymentState.ROLLED_BACK
    assert store.read_bytes() == before
    assert NEW_CONTAINER not in runtime.containers


def test_keyboard_interrupt_still_rolls_back(make_deployment, runtime, store):
    before = store.read_bytes()
    interrupted = []

    def handler(url):
        if url == PUBLIC and not interrupted:
            interrupted.append(True)
            raise KeyboardInterrupt
        return True

    deployment = make_deployment(handler=handler)
    with pytest.raises(KeyboardInterrupt):
        deployment.run()

    assert store.read_bytes() == before
    assert NEW_CONTAINER not in runtime.containers
    assert deployment.state == DeploymentState.ROLLED_BACK


def test_lock_is_released_after_failure(make_deployment, project):
    with pytest.raises(HealthCheckError):
        make_deployment(handler=lambda url: False).run()

    assert not DeploymentLock(project / ".canary-deploy.lock").is_locked()
