"""HealthVerifier: composite readiness scoring with bounded retries.

Each attempt samples every readiness dimension concurrently, scores the
samples against the :class:`HealthPolicy` and either declares the
release ready or waits and tries again.
"""

from __future__ import annotations

import abc
import logging
import re
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from pydantic import BaseModel, Field

from infracore.deployment.errors import HealthCheckTimeout
from infracore.deployment.host import CancelToken, HostInspector
from infracore.deployment.inventory import ServiceDescriptor
from infracore.deployment.models import DeploymentConfig, HealthDimension, HealthPolicy
from infracore.deployment.strategies.base import ActivationStrategy

logger = logging.getLogger(__name__)

_ERROR_LINE_RE = re.compile(r"\b(error|fatal|panic)\b", re.IGNORECASE)


class HealthSample(BaseModel):
    """One observation of one readiness dimension."""

    dimension: str
    passed: bool = False
    value: float = 0.0
    detail: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HealthResult(BaseModel):
    """Scored outcome of one attempt."""

    attempt: int = 1
    samples: list[HealthSample] = Field(default_factory=list)
    score: float = 0.0
    ready: bool = False
    failed_mandatory: list[str] = Field(default_factory=list)

    @property
    def status(self) -> str:
        if self.ready:
            return "healthy"
        if self.failed_mandatory:
            return "unhealthy"
        return "degraded"

    def sample(self, dimension: str | HealthDimension) -> HealthSample | None:
        key = dimension.value if isinstance(dimension, HealthDimension) else dimension
        for s in self.samples:
            if s.dimension == key:
                return s
        return None


# -- Probes -------------------------------------------------------------------


class HealthProbe(abc.ABC):
    """Samples one readiness dimension across the service set."""

    dimension: HealthDimension

    @abc.abstractmethod
    def probe(self, services: Sequence[ServiceDescriptor]) -> HealthSample:
        """Return a sample for :attr:`dimension`."""

    def _sample(self, passed: bool, value: float, detail: str) -> HealthSample:
        return HealthSample(
            dimension=self.dimension.value, passed=passed, value=value, detail=detail,
        )


class LivenessProbe(HealthProbe):
    """Every service process or container is running."""

    dimension = HealthDimension.LIVENESS

    def __init__(self, strategy: ActivationStrategy) -> None:
        self.strategy = strategy

    def probe(self, services: Sequence[ServiceDescriptor]) -> HealthSample:
        down = [s.name for s in services if not self.strategy.is_running(s)]
        up = len(services) - len(down)
        if down:
            return self._sample(False, up / max(len(services), 1), f"not running: {', '.join(down)}")
        return self._sample(True, 1.0, f"{up} service(s) running")


class EndpointProbe(HealthProbe):
    """Every HTTP health endpoint answers below 400."""

    dimension = HealthDimension.ENDPOINT

    def __init__(self, inspector: HostInspector, timeout: float) -> None:
        self.inspector = inspector
        self.timeout = timeout

    def probe(self, services: Sequence[ServiceDescriptor]) -> HealthSample:
        urls = [(s.name, s.health_url) for s in services if s.health_url]
        if not urls:
            return self._sample(True, 1.0, "no HTTP endpoints to probe")
        failing: list[str] = []
        for name, url in urls:
            status = self.inspector.http_status(url, self.timeout)
            if status is None or status >= 400:
                failing.append(f"{name} ({status or 'unreachable'})")
        ok = len(urls) - len(failing)
        if failing:
            return self._sample(False, ok / len(urls), f"failing: {', '.join(failing)}")
        return self._sample(True, 1.0, f"{ok} endpoint(s) healthy")


class DiskProbe(HealthProbe):
    dimension = HealthDimension.DISK

    def __init__(self, inspector: HostInspector, path: Path, max_ratio: float) -> None:
        self.inspector = inspector
        self.path = path
        self.max_ratio = max_ratio

    def probe(self, services: Sequence[ServiceDescriptor]) -> HealthSample:
        ratio = self.inspector.disk_usage_ratio(self.path)
        return self._sample(
            ratio <= self.max_ratio, ratio, f"disk {ratio:.0%} used under {self.path}",
        )


class MemoryProbe(HealthProbe):
    dimension = HealthDimension.MEMORY

    def __init__(self, inspector: HostInspector, max_ratio: float) -> None:
        self.inspector = inspector
        self.max_ratio = max_ratio

    def probe(self, services: Sequence[ServiceDescriptor]) -> HealthSample:
        ratio = self.inspector.memory_usage_ratio()
        return self._sample(ratio <= self.max_ratio, ratio, f"memory {ratio:.0%} used")


class PermissionsProbe(HealthProbe):
    """Deployment directories and secret files carry the expected modes."""

    dimension = HealthDimension.PERMISSIONS

    def __init__(self, inspector: HostInspector, expected: dict[Path, int]) -> None:
        self.inspector = inspector
        self.expected = dict(expected)

    def probe(self, services: Sequence[ServiceDescriptor]) -> HealthSample:
        wrong: list[str] = []
        for path, mode in self.expected.items():
            actual = self.inspector.file_mode(path)
            if actual != mode:
                found = "missing" if actual is None else oct(actual)
                wrong.append(f"{path} ({found}, want {oct(mode)})")
        total = max(len(self.expected), 1)
        if wrong:
            return self._sample(False, 1 - len(wrong) / total, "; ".join(wrong))
        return self._sample(True, 1.0, f"{len(self.expected)} path(s) correct")


class LogErrorsProbe(HealthProbe):
    """Recent service logs contain no more than the allowed error lines."""

    dimension = HealthDimension.LOG_ERRORS

    def __init__(self, strategy: ActivationStrategy, lines: int, max_errors: int) -> None:
        self.strategy = strategy
        self.lines = lines
        self.max_errors = max_errors

    def probe(self, services: Sequence[ServiceDescriptor]) -> HealthSample:
        counts: dict[str, int] = {}
        for svc in services:
            hits = sum(1 for line in self.strategy.logs(svc, self.lines) if _ERROR_LINE_RE.search(line))
            if hits:
                counts[svc.name] = hits
        total = sum(counts.values())
        detail = ", ".join(f"{n}: {c}" for n, c in counts.items()) or "no error lines"
        return self._sample(total <= self.max_errors, float(total), detail)


def default_probes(
    config: DeploymentConfig,
    strategy: ActivationStrategy,
    inspector: HostInspector,
    expected_permissions: dict[Path, int] | None = None,
) -> list[HealthProbe]:
    """One probe per readiness dimension, configured from *config*."""
    policy = config.health
    return [
        LivenessProbe(strategy),
        EndpointProbe(inspector, policy.endpoint_timeout_s),
        DiskProbe(inspector, config.paths.deploy_dir, policy.max_disk_ratio),
        MemoryProbe(inspector, policy.max_memory_ratio),
        PermissionsProbe(inspector, expected_permissions or {}),
        LogErrorsProbe(strategy, policy.log_lines, policy.max_log_errors),
    ]


# -- Scoring ------------------------------------------------------------------


def score_samples(
    samples: Sequence[HealthSample], policy: HealthPolicy,
) -> tuple[float, bool, list[str]]:
    """Return ``(score, ready, failed_mandatory)`` for one attempt.

    A mandatory dimension with no sample counts as failed.
    """
    by_dim = {s.dimension: s for s in samples}
    total = sum(w for w in policy.weights.values() if w > 0)
    passing = sum(
        w for dim, w in policy.weights.items()
        if w > 0 and dim in by_dim and by_dim[dim].passed
    )
    score = passing / total if total else 0.0
    failed_mandatory = [
        m for m in policy.mandatory if m not in by_dim or not by_dim[m].passed
    ]
    ready = not failed_mandatory and score >= policy.readiness_threshold
    return score, ready, failed_mandatory


class HealthVerifier:
    """Retry sampling until the release is ready or the budget is spent.

    Parameters
    ----------
    probes:
        One probe per dimension.  Dimensions without a positive weight
        are still sampled but do not affect the score.
    policy:
        Weights, mandatory dimensions, threshold and retry budget.
    sleep:
        Wait between attempts.  Defaults to :func:`time.sleep`, or to the
        cancel token's wait when one is given.
    cancel_token:
        Checked before every attempt.
    """

    def __init__(
        self,
        probes: Sequence[HealthProbe],
        policy: HealthPolicy | None = None,
        sleep: Callable[[float], object] | None = None,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self.probes = list(probes)
        self.policy = policy or HealthPolicy()
        self.cancel_token = cancel_token
        if sleep is not None:
            self._sleep = sleep
        elif cancel_token is not None:
            self._sleep = cancel_token.wait
        else:
            self._sleep = time.sleep
        self.history: list[HealthResult] = []

    def sample_once(
        self, services: Sequence[ServiceDescriptor], attempt: int = 1,
    ) -> HealthResult:
        """Run every probe once, concurrently, and score the samples."""
        samples = self._collect(services)
        score, ready, failed_mandatory = score_samples(samples, self.policy)
        result = HealthResult(
            attempt=attempt,
            samples=samples,
            score=score,
            ready=ready,
            failed_mandatory=failed_mandatory,
        )
        self.history.append(result)
        return result

    def verify(self, services: Sequence[ServiceDescriptor]) -> HealthResult:
        """Sample until ready.

        Raises
        ------
        HealthCheckTimeout
            When ``max_attempts`` attempts all failed.
        DeploymentCancelled
            If the cancel token fired.
        """
        last: HealthResult | None = None
        attempts = self.policy.max_attempts
        for attempt in range(1, attempts + 1):
            if self.cancel_token:
                self.cancel_token.raise_if_cancelled()
            last = self.sample_once(services, attempt)
            logger.info(
                "Health attempt %d/%d: score %.2f (%s)",
                attempt, attempts, last.score, last.status,
            )
            if last.ready:
                return last
            for s in last.samples:
                if not s.passed:
                    logger.debug("  %s failing: %s", s.dimension, s.detail)
            if attempt < attempts:
                self._sleep(self.policy.interval_s)

        score = last.score if last else 0.0
        raise HealthCheckTimeout(score, attempts)

    def _collect(self, services: Sequence[ServiceDescriptor]) -> list[HealthSample]:
        if not self.probes:
            return []
        pool = ThreadPoolExecutor(max_workers=len(self.probes), thread_name_prefix="health")
        futures: dict[Future, HealthProbe] = {
            pool.submit(p.probe, services): p for p in self.probes
        }
        try:
            done, _ = wait(futures, timeout=self.policy.attempt_timeout_s)
            samples: list[HealthSample] = []
            for future, probe in futures.items():
                dim = probe.dimension.value
                if future not in done:
                    samples.append(HealthSample(
                        dimension=dim,
                        detail=f"timed out after {self.policy.attempt_timeout_s:.0f}s",
                    ))
                    continue
                try:
                    samples.append(future.result())
                except Exception as exc:
                    logger.debug("Probe %s raised", dim, exc_info=True)
                    samples.append(HealthSample(dimension=dim, detail=f"probe error: {exc}"))
            return samples
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
