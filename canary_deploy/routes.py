"""
Route configuration store for the Traefik file provider.

The proxy watches a single YAML document. Every change the orchestrator makes
is a whole-file replace (temp file + rename in the same directory) so the
proxy never observes a half-written document.
"""

import contextlib
import hashlib
import logging
import os
import stat
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from canary_deploy.errors import RouteDocumentError, SnapshotError

logger = logging.getLogger(__name__)


# ── Document model ────────────────────────────────────────────

class Router(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    rule: str
    service: str
    entry_points: list[str] = Field(default_factory=list, alias="entryPoints")


class WeightedTarget(BaseModel):
    name: str
    weight: int = Field(default=1, ge=0)


class Weighted(BaseModel):
    model_config = ConfigDict(extra="allow")

    services: list[WeightedTarget]


class Service(BaseModel):
    model_config = ConfigDict(extra="allow")

    weighted: Optional[Weighted] = None


class RouteDocument(BaseModel):
    """The ``http`` section of a Traefik dynamic configuration file."""

    model_config = ConfigDict(extra="allow")

    routers: dict[str, Router] = Field(default_factory=dict)
    services: dict[str, Service] = Field(default_factory=dict)

    @classmethod
    def from_yaml(cls, text: str) -> "RouteDocument":
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise RouteDocumentError(f"Route document is not valid YAML: {e}")

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise RouteDocumentError("Route document must be a mapping")

        http = data.get("http") or {}
        if not isinstance(http, dict):
            raise RouteDocumentError("'http' section must be a mapping")
        try:
            return cls.model_validate(http)
        except ValidationError as e:
            raise RouteDocumentError(f"Route document has an invalid shape: {e}")

    def to_yaml(self) -> str:
        http: dict[str, Any] = self.model_dump(by_alias=True, exclude_none=True)
        if not http.get("services"):
            http.pop("services", None)
        return yaml.safe_dump(
            {"http": http}, default_flow_style=False, sort_keys=False, width=120
        )

    @property
    def primary_router(self) -> Optional[str]:
        return next(iter(self.routers), None)

    def service_targets(self, router_name: str) -> list[WeightedTarget]:
        """Backends a router sends traffic to, with their weights."""
        router = self.routers.get(router_name)
        if router is None:
            return []
        service = self.services.get(router.service)
        if service is not None and service.weighted is not None:
            return list(service.weighted.services)
        return [WeightedTarget(name=router.service, weight=1)]

    def single_route(self, router: Router, router_name: str, service_ref: str,
                     drop_services: tuple = ()) -> "RouteDocument":
        """Copy of this document with one router sending everything to service_ref."""
        services = {k: v for k, v in self.services.items() if k not in drop_services}
        return self.model_copy(
            deep=True,
            update={
                "routers": {
                    router_name: router.model_copy(update={"service": service_ref}),
                },
                "services": services,
            },
        )

    def weighted_route(self, router: Router, router_name: str, weighted_name: str,
                       targets: list[WeightedTarget]) -> "RouteDocument":
        """Copy of this document with one router sending traffic to a weighted service."""
        services = dict(self.services)
        services[weighted_name] = Service(weighted=Weighted(services=list(targets)))
        return self.model_copy(
            deep=True,
            update={
                "routers": {
                    router_name: router.model_copy(update={"service": weighted_name}),
                },
                "services": services,
            },
        )


# ── Snapshot ──────────────────────────────────────────────────

@dataclass(frozen=True)
class RouteSnapshot:
    content: bytes
    path: Path
    taken_at: float

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


# ── Store ─────────────────────────────────────────────────────

class RouteStore:
    def __init__(self, path, backup_suffix: str = ".bak"):
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.name + backup_suffix)

    def exists(self) -> bool:
        return self.path.is_file()

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def read(self) -> RouteDocument:
        return RouteDocument.from_yaml(self.read_bytes().decode("utf-8"))

    def discover_router(self, default: str) -> str:
        """Name of the router that is live right now, or ``default``."""
        try:
            name = self.read().primary_router
        except (OSError, UnicodeDecodeError, RouteDocumentError) as e:
            logger.warning(f"Could not read {self.path} ({e}); using router '{default}'")
            return default
        if name is None:
            logger.warning(f"No routers in {self.path}; using router '{default}'")
            return default
        return name

    def write(self, document: RouteDocument) -> None:
        self._atomic_write(self.path, document.to_yaml().encode("utf-8"))
        logger.debug(f"Wrote route document {self.path}")

    def snapshot(self) -> RouteSnapshot:
        try:
            content = self.read_bytes()
        except OSError as e:
            raise SnapshotError(f"Cannot read route document {self.path}: {e}")
        try:
            self._atomic_write(self.backup_path, content)
        except OSError as e:
            raise SnapshotError(f"Cannot write snapshot {self.backup_path}: {e}")
        snapshot = RouteSnapshot(content=content, path=self.backup_path, taken_at=time.time())
        logger.info(f"  Route snapshot saved to {self.backup_path.name} ({snapshot.digest[:12]})")
        return snapshot

    def restore(self, snapshot: RouteSnapshot) -> bool:
        """Put the snapshot back in place. Returns False if read-back differs."""
        self._atomic_write(self.path, snapshot.content)
        try:
            current = self.read_bytes()
        except OSError as e:
            logger.warning(f"Could not verify restored route document: {e}")
            return False
        if current != snapshot.content:
            logger.warning("Route document restoration may have failed: content differs from snapshot")
            return False
        return True

    def discard(self, snapshot: Optional[RouteSnapshot] = None) -> None:
        path = snapshot.path if snapshot is not None else self.backup_path
        with contextlib.suppress(FileNotFoundError):
            path.unlink()

    def pending_snapshot(self) -> Optional[RouteSnapshot]:
        """A snapshot left behind by an attempt that never finished."""
        if not self.backup_path.is_file():
            return None
        return RouteSnapshot(
            content=self.backup_path.read_bytes(),
            path=self.backup_path,
            taken_at=self.backup_path.stat().st_mtime,
        )

    @staticmethod
    def _atomic_write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            mode = stat.S_IMODE(target.stat().st_mode) if target.exists() else 0o644
            os.chmod(tmp, mode)
            os.replace(tmp, target)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)
            raise
