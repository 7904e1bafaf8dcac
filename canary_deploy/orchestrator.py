"""
Canary Deployment Orchestrator

Replaces a running container behind Traefik without downtime:

  1. Pre-flight checks (nothing is touched if any of them fails)
  2. Start the new instance in isolation
  3. Poll the new instance directly until it is healthy
  4. Snapshot the route document, shift 10% of traffic to the new instance
  5. Probe the public entrypoint while the canary takes traffic
  6. Shift 100% of traffic, settle, probe once more
  7. Remove the old instance and its workspace

Any failure from step 2 on runs the rollback controller, which puts the
pre-canary route document back and removes everything the attempt created.
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Optional

from canary_deploy import metrics
from canary_deploy.config import Settings, settings
from canary_deploy.errors import (
    CommandError,
    CutoverError,
    DecommissionWarning,
    DeploymentError,
    HealthCheckError,
    InstanceCreationError,
    PreflightError,
    RouteDocumentError,
)
from canary_deploy.health import AbortSignal, HealthProber, RetryPolicy
from canary_deploy.lock import DeploymentLock
from canary_deploy.models import (
    DeploymentRequest,
    DeploymentResult,
    DeploymentState,
    InstanceHandle,
)
from canary_deploy.rollback import RollbackController
from canary_deploy.routes import RouteDocument, Router, RouteSnapshot, RouteStore, WeightedTarget
from canary_deploy.runtime import RuntimeAdapter

logger = logging.getLogger("canary_deploy.orchestrator")


class CanaryDeployment:
    def __init__(
        self,
        request: DeploymentRequest,
        config: Settings = settings,
        runtime: Optional[RuntimeAdapter] = None,
        store: Optional[RouteStore] = None,
        prober: Optional[HealthProber] = None,
        abort: Optional[AbortSignal] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.request = request
        self.config = config
        self.project_root = Path(config.PROJECT_ROOT).resolve()

        self.abort = abort or AbortSignal()
        self.sleep = sleep or self.abort.wait
        self.runtime = runtime or RuntimeAdapter(
            str(self.project_root),
            command_timeout=config.COMMAND_TIMEOUT,
            compose_file_name=config.COMPOSE_FILE_NAME,
        )
        self.store = store or RouteStore(self._resolve(config.ROUTE_CONFIG_PATH))
        self.prober = prober or HealthProber(timeout=config.PROBE_TIMEOUT, sleep=self.sleep)
        self.lock = DeploymentLock(self._resolve(config.LOCK_FILE))
        self.rollback = RollbackController(
            self.runtime,
            self.store,
            prober=self.prober,
            public_endpoint=config.PUBLIC_ENDPOINT,
            settle_seconds=config.ROLLBACK_SETTLE_SECONDS,
            sleep=sleep or time.sleep,
        )

        self.state = DeploymentState.IDLE
        self.transitions = [DeploymentState.IDLE]
        self.router_name = config.ROUTER_NAME
        self.handle: Optional[InstanceHandle] = None
        self.snapshot: Optional[RouteSnapshot] = None
        self.warnings: list = []
        self.error: Optional[BaseException] = None
        self._stage_started = time.monotonic()

    def log(self, msg: str, level: str = "INFO", **extra):
        extra.setdefault("stage", self.state.value)
        getattr(logger, level.lower(), logger.info)(msg, extra=extra)

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.project_root / p

    # ── State ─────────────────────────────────────────────────────

    def _enter(self, state: DeploymentState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Deployment already finished in state {self.state.value}")
        now = time.monotonic()
        metrics.record_stage(self.state.value, now - self._stage_started)
        self._stage_started = now
        self.state = state
        self.transitions.append(state)
        self.log(f"[{state.value}]", level="DEBUG")

    # ── Derived names ─────────────────────────────────────────────

    @property
    def old_workspace(self) -> Path:
        return self._resolve(self.request.old_service_workspace)

    @property
    def template_dir(self) -> Path:
        return self._resolve(self.config.TEMPLATE_DIR)

    @property
    def new_service_ref(self) -> str:
        return f"{self.request.new_compose_service}{self.config.PROVIDER_SUFFIX}"

    def old_service_ref(self, baseline: RouteDocument) -> str:
        """The backend the live router points at, if it is a plain service."""
        live = baseline.routers.get(self.router_name)
        if live is not None:
            service = baseline.services.get(live.service)
            if service is None or service.weighted is None:
                return live.service
            self.log(
                f"Router '{self.router_name}' points at weighted service '{live.service}'; "
                f"deriving the old service from the workspace name",
                level="WARNING",
            )
        return f"{self.old_workspace.name}-svc{self.config.PROVIDER_SUFFIX}"

    def _router_template(self, baseline: RouteDocument) -> Router:
        live = baseline.routers.get(self.router_name)
        if live is not None:
            return live
        return Router(
            rule=self.config.PUBLIC_HOST_RULE,
            service="",
            entry_points=list(self.config.ENTRY_POINTS),
        )

    def canary_document(self, baseline: RouteDocument) -> RouteDocument:
        targets = [
            WeightedTarget(name=self.old_service_ref(baseline), weight=self.config.WEIGHT_OLD),
            WeightedTarget(name=self.new_service_ref, weight=self.config.WEIGHT_NEW),
        ]
        return baseline.weighted_route(
            self._router_template(baseline),
            self.router_name,
            self.request.weighted_service_name,
            targets,
        )

    def cutover_document(self, baseline: RouteDocument) -> RouteDocument:
        return baseline.single_route(
            self._router_template(baseline),
            self.router_name,
            self.new_service_ref,
            drop_services=(self.request.weighted_service_name,),
        )

    # ── Pre-flight Checks ─────────────────────────────────────────

    def preflight(self) -> None:
        req = self.request

        if req.new_service_name == req.old_instance_name:
            raise PreflightError(
                f"New service name ('{req.new_service_name}') cannot be the same "
                f"as the old container name ('{req.old_instance_name}')."
            )
        if req.new_container_name == req.old_instance_name:
            raise PreflightError(
                f"New container name ('{req.new_container_name}') cannot be the same "
                f"as the old one ('{req.old_instance_name}')."
            )

        old_ws = self.old_workspace
        if not old_ws.is_dir():
            raise PreflightError(f"Old service folder '{req.old_service_workspace}' not found.")
        if self.project_root not in old_ws.resolve().parents:
            raise PreflightError(
                f"Old service folder '{req.old_service_workspace}' must be inside the "
                f"project root '{self.project_root}'."
            )
        if old_ws.resolve() == self.template_dir.resolve():
            raise PreflightError(
                f"Old service folder '{req.old_service_workspace}' cannot be the "
                f"template folder."
            )
        if not self.template_dir.is_dir():
            raise PreflightError(f"Template folder '{self.template_dir}' not found.")

        new_ws = self.runtime.workspace_for(req.new_service_name)
        if new_ws.exists():
            raise PreflightError(f"New service folder '{new_ws}' already exists.")

        try:
            if not self.runtime.is_running(req.old_instance_name):
                raise PreflightError(
                    f"Old container '{req.old_instance_name}' is not running or does not exist."
                )
            if not self.runtime.image_exists(req.new_image_ref):
                raise PreflightError(
                    f"The new image '{req.new_image_ref}' was not found locally. "
                    f"Please pull it first."
                )
            if self.runtime.exists(req.new_container_name):
                raise PreflightError(
                    f"A container named '{req.new_container_name}' already exists. "
                    f"Remove it before deploying."
                )
        except CommandError as e:
            raise PreflightError(f"Container runtime unavailable: {e}")

        self.router_name = self.store.discover_router(self.config.ROUTER_NAME)
        self.log(f"  Live router: {self.router_name}", router=self.router_name)

    # ── Stages ────────────────────────────────────────────────────

    def _instance_address(self) -> str:
        address = self.runtime.resolve_address(self.handle.name)
        if not address:
            return ""
        self.handle.network_address = address
        if self.config.INSTANCE_HEALTH_PORT:
            return f"{address}:{self.config.INSTANCE_HEALTH_PORT}"
        return address

    def start_new_instance(self) -> None:
        req = self.request
        self.log(f"Deploying new version ({req.new_container_name}) without exposing it to traffic...")
        self.rollback.track_instance(
            req.new_container_name, self.runtime.workspace_for(req.new_service_name)
        )
        self.handle = self.runtime.start_instance(
            str(self.template_dir), req.new_image_ref, req.new_service_name, req.binding_port,
        )

    def initial_health_check(self) -> None:
        self.log("Performing initial health check on the new container...")
        policy = RetryPolicy(
            attempts=self.config.HEALTH_ATTEMPTS,
            interval=self.config.HEALTH_INTERVAL,
            backoff=self.config.HEALTH_BACKOFF,
            max_interval=self.config.HEALTH_MAX_INTERVAL,
        )
        healthy = self.prober.wait_until_healthy(
            self._instance_address, policy, path=self.config.INSTANCE_HEALTH_PATH,
        )
        if healthy:
            self.log(f"Initial health check passed! Container {self.handle.name} is healthy.",
                     instance=self.handle.name)
            return
        if not self.handle.has_address:
            raise InstanceCreationError(
                f"{self.handle.name} never reported a network address "
                f"after {policy.attempts} attempts"
            )
        raise HealthCheckError(f"Initial health check failed for {self.handle.name}")

    def shift_canary_traffic(self) -> RouteDocument:
        self.log(
            f"Performing Canary Release: shifting "
            f"{self.config.WEIGHT_NEW}/{self.config.WEIGHT_OLD + self.config.WEIGHT_NEW} "
            f"of traffic to the new version..."
        )
        self.snapshot = self.store.snapshot()
        self.rollback.track_snapshot(self.snapshot)

        try:
            baseline = RouteDocument.from_yaml(self.snapshot.content.decode("utf-8"))
        except (RouteDocumentError, UnicodeDecodeError) as e:
            self.log(f"Current route document is unusable ({e}); starting from an empty one",
                     level="WARNING")
            baseline = RouteDocument()

        self.store.write(self.canary_document(baseline))
        self.log(f"  Router '{self.router_name}' now splits traffic via "
                 f"'{self.request.weighted_service_name}'", router=self.router_name)
        return baseline

    def validate_canary(self) -> None:
        checks = self.config.VALIDATION_CHECKS
        self.log(f"Monitoring canary health ({checks} checks)...")
        if not self.prober.validate_under_load(
            self.config.PUBLIC_ENDPOINT, checks, self.config.VALIDATION_INTERVAL
        ):
            raise HealthCheckError("Canary deployment failed health checks under traffic.")
        self.log("Canary deployment is stable.")

    def full_cutover(self, baseline: RouteDocument) -> None:
        self.log("Shifting 100% of traffic to the new version...")
        self.store.write(self.cutover_document(baseline))

    def post_cutover_check(self) -> None:
        settle = self.config.CUTOVER_SETTLE_SECONDS
        self.log(f"Allowing time for connections to transition... ({settle}s)")
        self.sleep(settle)
        if not self.prober.probe(self.config.PUBLIC_ENDPOINT):
            metrics.record_probe_failure("cutover")
            raise CutoverError("Final health check failed after shifting 100% traffic.")
        self.log("New version is stable with 100% traffic.")

    def decommission(self) -> list:
        """Best effort: the new version is already live, so nothing here is fatal."""
        req = self.request
        warnings = []
        self.log(f"Decommissioning the old container ({req.old_instance_name})...")
        try:
            self.runtime.remove(req.old_instance_name)
        except DeploymentError as e:
            warnings.append(DecommissionWarning(
                f"Could not remove old container '{req.old_instance_name}': {e}"
            ))

        self.log(f"  - Removing old service folder: {self.old_workspace}...")
        try:
            if self.old_workspace.exists():
                shutil.rmtree(self.old_workspace)
        except OSError as e:
            warnings.append(DecommissionWarning(
                f"Could not remove old service folder '{self.old_workspace}': {e}"
            ))

        for w in warnings:
            self.log(f"  {w}", level="WARNING")
        return warnings

    def _run_stages(self) -> None:
        self._enter(DeploymentState.NEW_INSTANCE_STARTING)
        self.start_new_instance()

        self._enter(DeploymentState.INITIAL_HEALTH_CHECK)
        self.initial_health_check()

        self._enter(DeploymentState.CANARY_ROUTING)
        baseline = self.shift_canary_traffic()

        self._enter(DeploymentState.CANARY_VALIDATION)
        self.validate_canary()

        self._enter(DeploymentState.FULL_CUTOVER)
        self.full_cutover(baseline)

        self._enter(DeploymentState.POST_CUTOVER_CHECK)
        self.post_cutover_check()

        self._enter(DeploymentState.DECOMMISSIONING)
        self.warnings = self.decommission()

        self.rollback.disarm()
        try:
            self.store.discard(self.snapshot)
        except OSError as e:
            self.log(f"Could not remove snapshot {self.snapshot.path}: {e}", level="WARNING")
        self.snapshot = None
        self._enter(DeploymentState.COMMITTED)

    # ── Main Deploy Sequence ──────────────────────────────────────

    def run(self) -> DeploymentResult:
        req = self.request
        deployment_start = time.time()

        self.log("=" * 60)
        self.log(f"DEPLOYMENT START: {req.old_instance_name} -> {req.new_container_name} "
                 f"({req.new_image_ref})")
        self.log("=" * 60)

        try:
            try:
                self.log("Performing pre-flight validation...")
                self.lock.acquire()
                self.preflight()
                self.log("Pre-flight validation successful.")
            except PreflightError as e:
                self.error = e
                self.log(f"Pre-flight failed: {e}", level="ERROR")
                metrics.record_outcome("rejected")
                raise

            try:
                with self.rollback:
                    self._run_stages()
            except BaseException as e:
                self.error = e
                self._enter(DeploymentState.ROLLED_BACK)
                metrics.record_outcome("rolled_back")
                self.log(f"DEPLOYMENT FAILED: {e}", level="ERROR")
                raise
            metrics.record_outcome("committed")
        finally:
            self.lock.release()
            metrics.export_textfile(self.config.METRICS_FILE)

        elapsed = round(time.time() - deployment_start, 1)
        self.log("=" * 60)
        self.log(f"DEPLOYMENT COMPLETE: {req.new_service_name} with image {req.new_image_ref} "
                 f"is live ({elapsed}s)", elapsed_s=elapsed)
        self.log("=" * 60)

        return DeploymentResult(
            state=self.state,
            router_name=self.router_name,
            instance=self.handle,
            duration_seconds=elapsed,
            warnings=self.warnings,
        )
