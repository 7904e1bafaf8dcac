"""
Health probing with bounded retries.

Every wait goes through an injected ``sleep`` callable. The deploy command
passes ``AbortSignal.wait`` so that a SIGTERM interrupts a probe loop
immediately; tests pass a recorder and never sleep at all.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Union

import requests

from canary_deploy import metrics
from canary_deploy.errors import DeploymentAborted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    interval: float
    backoff: float = 1.0
    max_interval: Optional[float] = None

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.interval < 0 or self.backoff < 1.0:
            raise ValueError("interval must be >= 0 and backoff >= 1.0")

    def delays(self) -> Iterator[float]:
        """Delay after each failed attempt except the last one."""
        delay = self.interval
        for _ in range(self.attempts - 1):
            yield delay
            delay = delay * self.backoff
            if self.max_interval is not None:
                delay = min(delay, self.max_interval)


class AbortSignal:
    """Cancellable sleeper shared by every timed wait of one deployment."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    def set(self, reason: str = "aborted") -> None:
        self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> None:
        if self._event.wait(seconds):
            raise DeploymentAborted(f"Deployment aborted: {self.reason}")


AddressSource = Union[str, Callable[[], str]]


class HealthProber:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.sleep = sleep

    def probe(self, url: str) -> bool:
        """One GET. Any status below 400 counts as healthy."""
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            logger.debug(f"  Probe {url}: connection failed ({type(e).__name__})")
            return False
        if response.status_code >= 400:
            logger.debug(f"  Probe {url}: HTTP {response.status_code}")
            return False
        return True

    def wait_until_healthy(self, address: AddressSource, policy: RetryPolicy,
                           path: str = "/") -> bool:
        """
        Probe ``address`` until it answers or the policy runs out of attempts.

        ``address`` may be a resolver that is called on every attempt, since a
        freshly started container has no address until the runtime assigns one.
        An empty address counts as a failed attempt.
        """
        delays = policy.delays()
        for attempt in range(1, policy.attempts + 1):
            current = address() if callable(address) else address
            if current and self.probe(self._url(current, path)):
                logger.info(f"  Health OK after {attempt} attempt(s)", extra={"attempt": attempt})
                return True

            metrics.record_probe_failure("readiness")
            if not current:
                logger.info(f"  - No address assigned yet... attempt {attempt}/{policy.attempts}")
            else:
                logger.info(f"  - Waiting for {current} to be healthy... attempt {attempt}/{policy.attempts}")

            delay = next(delays, None)
            if delay is not None:
                self.sleep(delay)

        logger.warning(f"  Health check gave up after {policy.attempts} attempts")
        return False

    def validate_under_load(self, endpoint: str, checks: int, interval: float) -> bool:
        """Fail-fast: the first failed probe ends validation."""
        for i in range(1, checks + 1):
            if not self.probe(endpoint):
                metrics.record_probe_failure("canary")
                logger.error(f"  - Canary check {i}/{checks} failed!", extra={"attempt": i})
                return False
            logger.info(f"  - Canary check {i}/{checks} passed.", extra={"attempt": i})
            if i < checks:
                self.sleep(interval)
        return True

    @staticmethod
    def _url(address: str, path: str) -> str:
        if "://" in address:
            return f"{address.rstrip('/')}{path}"
        return f"http://{address}{path}"
