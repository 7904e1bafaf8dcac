import logging
import time
from pathlib import Path
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile

logger = logging.getLogger(__name__)

# Deploy runs are short-lived batch jobs, so metrics live on a private
# registry and are flushed to a node-exporter textfile at the end of a run.
registry = CollectorRegistry()

# ── Metric definitions ──

deployments_total = Counter(
    "canary_deployments_total",
    "Deployment attempts by outcome",
    ["outcome"],
    registry=registry,
)

rollbacks_total = Counter(
    "canary_rollbacks_total",
    "Rollback controller executions",
    registry=registry,
)

stage_duration_seconds = Histogram(
    "canary_stage_duration_seconds",
    "Time spent in each deployment stage",
    ["stage"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
    registry=registry,
)

probe_failures_total = Counter(
    "canary_probe_failures_total",
    "Failed health probes",
    ["kind"],
    registry=registry,
)

last_success_timestamp = Gauge(
    "canary_last_success_timestamp_seconds",
    "Unix time of the last committed deployment",
    registry=registry,
)


# ── Helper functions ──

def record_stage(stage: str, duration_seconds: float) -> None:
    stage_duration_seconds.labels(stage=stage).observe(duration_seconds)


def record_outcome(outcome: str) -> None:
    """Outcome is one of committed, rolled_back, rejected."""
    deployments_total.labels(outcome=outcome).inc()
    if outcome == "committed":
        last_success_timestamp.set(time.time())


def record_rollback() -> None:
    rollbacks_total.inc()


def record_probe_failure(kind: str) -> None:
    probe_failures_total.labels(kind=kind).inc()


def export_textfile(path: Optional[str]) -> None:
    """Write the registry to a textfile collector file, if one is configured."""
    if not path:
        return
    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(target), registry)
    except OSError as e:
        logger.warning(f"Could not write metrics to {target}: {e}")
