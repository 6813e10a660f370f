"""ServiceController: day-two operations on an installed release."""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional

from pydantic import BaseModel, Field

from infracore.deployment.environment import read_release
from infracore.deployment.errors import NotDeployed
from infracore.deployment.health import HealthResult, HealthVerifier
from infracore.deployment.inventory import ServiceDescriptor, ServiceInventory
from infracore.deployment.models import DeploymentConfig
from infracore.deployment.strategies.base import ActivationStrategy

logger = logging.getLogger(__name__)


class ServiceStatus(BaseModel):
    name: str
    rank: int
    installed: bool = False
    running: bool = False


class StatusSnapshot(BaseModel):
    """Release record, per-service state and one health pass."""

    release: dict[str, Any] = Field(default_factory=dict)
    services: list[ServiceStatus] = Field(default_factory=list)
    health: Optional[HealthResult] = None

    @property
    def all_running(self) -> bool:
        return all(s.running for s in self.services)


class ServiceController:
    """Start, stop, restart, tail logs and report status.

    Every operation requires a release record; without one
    :class:`NotDeployed` is raised before the host is touched.

    Parameters
    ----------
    strategy:
        Strategy the release was deployed with.
    inventory:
        Managed services.
    config:
        Locates the release record.
    verifier:
        Used for the single health pass in :meth:`status`.
    """

    def __init__(
        self,
        strategy: ActivationStrategy,
        inventory: ServiceInventory,
        config: DeploymentConfig,
        verifier: HealthVerifier | None = None,
    ) -> None:
        self.strategy = strategy
        self.inventory = inventory
        self.config = config
        self.verifier = verifier

    def _require_release(self) -> dict[str, Any]:
        release = read_release(self.config)
        if release is None:
            raise NotDeployed(
                f"No release recorded at {self.config.paths.release_record}"
            )
        return release

    def _targets(self, service: str | None) -> list[ServiceDescriptor]:
        return self.inventory.select(service)

    def start(self, service: str | None = None) -> list[str]:
        """Start one service, or all in rank order."""
        self._require_release()
        started = []
        for svc in self._targets(service):
            logger.info("Starting %s", svc.name)
            self.strategy.start(svc)
            started.append(svc.name)
        return started

    def stop(self, service: str | None = None) -> list[str]:
        """Stop one service, or all in reverse rank order."""
        self._require_release()
        stopped = []
        for svc in reversed(self._targets(service)):
            logger.info("Stopping %s", svc.name)
            self.strategy.stop(svc)
            stopped.append(svc.name)
        return stopped

    def restart(self, service: str | None = None) -> list[str]:
        """Restart one service, or stop all then start all."""
        self._require_release()
        if service is not None:
            svc = self.inventory.select(service)[0]
            logger.info("Restarting %s", svc.name)
            self.strategy.restart(svc)
            return [svc.name]
        self.stop()
        return self.start()

    def logs(self, service: str | None = None, lines: int = 100) -> Iterator[str]:
        """Yield recent log lines prefixed with the service name."""
        self._require_release()
        targets = self._targets(service)
        return (
            f"[{svc.name}] {line}"
            for svc in targets
            for line in self.strategy.logs(svc, lines)
        )

    def status(self) -> StatusSnapshot:
        """Return the release record, service states and one health pass."""
        release = self._require_release()
        services = [
            ServiceStatus(
                name=svc.name,
                rank=svc.rank,
                installed=self.strategy.is_installed(svc),
                running=self.strategy.is_running(svc),
            )
            for svc in self.inventory
        ]
        health = None
        if self.verifier is not None:
            health = self.verifier.sample_once(list(self.inventory))
        return StatusSnapshot(release=release, services=services, health=health)
