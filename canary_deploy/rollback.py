"""
Rollback controller and emergency restore.

The controller is armed before the first mutating action of a deployment and
runs its compensating actions at most once, whichever path triggers it first:
an explicit failure in the state machine, or an exception (Ctrl-C, SIGTERM
abort) unwinding through the guarded block.
"""

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from canary_deploy import metrics
from canary_deploy.errors import SnapshotError
from canary_deploy.health import HealthProber
from canary_deploy.routes import RouteSnapshot, RouteStore
from canary_deploy.runtime import RuntimeAdapter

logger = logging.getLogger(__name__)


@dataclass
class RollbackReport:
    executed: bool = False
    route_restored: bool = False
    route_verified: bool = False
    instance_removed: bool = False
    workspace_removed: bool = False
    errors: list = field(default_factory=list)


class RollbackController:
    def __init__(
        self,
        runtime: RuntimeAdapter,
        store: RouteStore,
        prober: Optional[HealthProber] = None,
        public_endpoint: Optional[str] = None,
        settle_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runtime = runtime
        self.store = store
        self.prober = prober
        self.public_endpoint = public_endpoint
        self.settle_seconds = settle_seconds
        # Never the abort-aware sleeper: rollback must finish once started.
        self.sleep = sleep

        self.armed = False
        self.instance_name: Optional[str] = None
        self.workspace: Optional[Path] = None
        self.snapshot: Optional[RouteSnapshot] = None
        self.report = RollbackReport()
        self._lock = threading.Lock()

    # ── Registration ──────────────────────────────────────────────

    def arm(self) -> None:
        self.armed = True

    def disarm(self) -> None:
        self.armed = False

    def track_instance(self, name: str, workspace: Path) -> None:
        self.instance_name = name
        self.workspace = Path(workspace)

    def track_snapshot(self, snapshot: RouteSnapshot) -> None:
        self.snapshot = snapshot

    @property
    def executed(self) -> bool:
        return self.report.executed

    # ── Execution ─────────────────────────────────────────────────

    def run(self, reason: str = "") -> RollbackReport:
        with self._lock:
            if self.report.executed or not self.armed:
                return self.report
            self.report.executed = True

        logger.warning(f"Initiating rollback and cleanup... {reason}".rstrip())
        metrics.record_rollback()

        interrupt = None
        for name, action in (
            ("restore route document", self._restore_routes),
            ("remove new instance", self._remove_instance),
            ("remove new workspace", self._remove_workspace),
            ("discard snapshot", self._discard_snapshot),
        ):
            caught = self._step(name, action)
            if interrupt is None:
                interrupt = caught

        self.armed = False
        if interrupt is not None:
            logger.warning("Rollback was interrupted; all compensating steps still ran")
            raise interrupt
        if self.report.errors:
            logger.warning(f"Rollback finished with {len(self.report.errors)} warning(s)")
        logger.info("Rollback complete. System restored to its previous state.")
        return self.report

    def _step(self, name: str, action: Callable[[], None]) -> Optional[BaseException]:
        """Run one step. Ctrl-C or SystemExit is held back until every step ran."""
        try:
            action()
        except Exception as e:
            self.report.errors.append(f"{name}: {e}")
            logger.error(f"  Rollback step '{name}' failed: {e}")
        except BaseException as e:
            self.report.errors.append(f"{name}: interrupted ({type(e).__name__})")
            logger.error(f"  Rollback step '{name}' interrupted; continuing")
            return e
        return None

    def _restore_routes(self) -> None:
        if self.snapshot is None:
            return
        logger.info("  - Restoring route configuration from snapshot...")
        self.report.route_verified = self.store.restore(self.snapshot)
        self.report.route_restored = True

        logger.info("  - Waiting for the proxy to reload the previous configuration...")
        self.sleep(self.settle_seconds)
        if self.prober is not None and self.public_endpoint:
            if not self.prober.probe(self.public_endpoint):
                logger.warning("Original service is not responding after rollback")

    def _remove_instance(self) -> None:
        if not self.instance_name:
            return
        logger.info(f"  - Removing new container '{self.instance_name}'...")
        self.report.instance_removed = self.runtime.remove(self.instance_name)

    def _remove_workspace(self) -> None:
        if self.workspace is None or not self.workspace.exists():
            return
        logger.info(f"  - Removing new service folder '{self.workspace}'...")
        shutil.rmtree(self.workspace)
        self.report.workspace_removed = True

    def _discard_snapshot(self) -> None:
        if self.snapshot is not None:
            self.store.discard(self.snapshot)

    # ── Scoped guard ──────────────────────────────────────────────

    def __enter__(self):
        self.arm()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None and self.armed:
            self.run(reason=f"({exc_type.__name__}: {exc})")
        return False


def emergency_restore(store: RouteStore) -> bool:
    """
    Restore a snapshot left behind by a run that could not clean up after
    itself (for example a SIGKILL mid-canary). Returns False when there is
    nothing to restore.
    """
    try:
        snapshot = store.pending_snapshot()
    except OSError as e:
        raise SnapshotError(f"Cannot read snapshot {store.backup_path}: {e}")
    if snapshot is None:
        logger.info(f"No pending snapshot at {store.backup_path}; nothing to restore")
        return False

    logger.warning(f"Restoring {store.path} from {snapshot.path.name}")
    try:
        verified = store.restore(snapshot)
    except OSError as e:
        raise SnapshotError(
            f"Cannot restore {store.path} from {snapshot.path.name}: {e}. "
            f"The snapshot was left in place."
        )
    store.discard(snapshot)
    if verified:
        logger.info("Route document restored")
    return True
