import shutil

import pytest

from canary_deploy.config import Settings
from canary_deploy.errors import CommandError, InstanceCreationError
from canary_deploy.health import HealthProber
from canary_deploy.models import DeploymentRequest, InstanceHandle
from canary_deploy.orchestrator import CanaryDeployment
from canary_deploy.routes import RouteStore
from canary_deploy.runtime import RuntimeAdapter

INITIAL_ROUTES = """\
http:
  routers:
    my-app-router:
      rule: "Host(`localhost`)"
      service: "main-nginx-svc@docker"
      entryPoints:
        - web
"""

REQUEST = dict(
    new_service_name="my-app-v2",
    new_image_ref="my-registry/my-app:v2.1",
    old_service_workspace="main-nginx",
    old_instance_name="main-nginx-container",
    binding_port=8001,
)

NEW_CONTAINER = "my-app-v2-container"
OLD_CONTAINER = "main-nginx-container"
PUBLIC = "http://localhost"


class FakeRuntime(RuntimeAdapter):
    """In-memory container runtime. Workspaces are real directories."""

    def __init__(self, project_root):
        super().__init__(str(project_root))
        self.containers = {}
        self.images = set()
        self.addresses = {}
        self.started = []
        self.removed = []
        self.fail_start = False
        self.fail_remove = set()

    def start_instance(self, template, image_ref, service_name, port):
        workspace = self.workspace_for(service_name)
        shutil.copytree(self.project_root / template, workspace)
        if self.fail_start:
            raise InstanceCreationError(f"runtime rejected image {image_ref}")
        name = f"{service_name}-container"
        self.containers[name] = True
        self.started.append(name)
        return InstanceHandle(name=name, workspace_path=workspace)

    def resolve_address(self, name):
        if name not in self.containers:
            return ""
        return self.addresses.get(name, "")

    def is_running(self, name):
        return self.containers.get(name, False)

    def exists(self, name):
        return name in self.containers

    def image_exists(self, ref):
        return ref in self.images

    def remove(self, name):
        if name in self.fail_remove:
            raise CommandError(f"Command failed: docker rm -f {name}", returncode=1)
        if name not in self.containers:
            return False
        del self.containers[name]
        self.removed.append(name)
        return True


class FakeProber(HealthProber):
    """Real retry/validation loops, scripted probe outcomes."""

    def __init__(self, handler, sleep):
        super().__init__(sleep=sleep)
        self.handler = handler
        self.calls = []

    def probe(self, url):
        self.calls.append(url)
        return self.handler(url)

    def public_calls(self):
        return [c for c in self.calls if c == PUBLIC]

    def instance_calls(self):
        return [c for c in self.calls if c != PUBLIC]


@pytest.fixture
def project(tmp_path):
    (tmp_path / "base-compose").mkdir()
    (tmp_path / "base-compose" / "compose.yaml").write_text("services: {}\n")
    (tmp_path / "main-nginx").mkdir()
    (tmp_path / "main-nginx" / "compose.yaml").write_text("services: {}\n")
    (tmp_path / "traefik").mkdir()
    (tmp_path / "traefik" / "dynamic-config.yaml").write_text(INITIAL_ROUTES)
    return tmp_path


@pytest.fixture
def config(project):
    return Settings(PROJECT_ROOT=str(project), LOG_FILE=None, METRICS_FILE=None)


@pytest.fixture
def store(project):
    return RouteStore(project / "traefik" / "dynamic-config.yaml")


@pytest.fixture
def runtime(project):
    rt = FakeRuntime(project)
    rt.containers[OLD_CONTAINER] = True
    rt.images.add(REQUEST["new_image_ref"])
    rt.addresses[NEW_CONTAINER] = "172.18.0.5"
    return rt


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_deployment(config, runtime, store, sleeps):
    def _make(handler=lambda url: True, config_overrides=None, **request_overrides):
        cfg = config.model_copy(update=config_overrides) if config_overrides else config
        request = DeploymentRequest(**{**REQUEST, **request_overrides})
        prober = FakeProber(handler, sleep=sleeps.append)
        return CanaryDeployment(
            request, config=cfg, runtime=runtime, store=store, prober=prober, sleep=sleeps.append,
        )
    return _make
