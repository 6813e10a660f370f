"""ComposeBuilder: renders docker-compose.yml for the service inventory."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

import yaml

from infracore import config as settings
from infracore.deployment.inventory import ServiceDescriptor
from infracore.deployment.models import DeploymentConfig

logger = logging.getLogger(__name__)

_HEADER = """\
# InfraCore services, generated by the deployment pipeline.
# Manual edits are overwritten on the next deploy.
"""


class ComposeBuilder:
    """Generate Docker Compose configuration from service descriptors.

    Parameters
    ----------
    config:
        Supplies resource limits and the project layout.
    """

    def __init__(self, config: DeploymentConfig) -> None:
        self.config = config

    def service_entry(self, svc: ServiceDescriptor) -> dict[str, Any]:
        """Return the compose mapping for one service."""
        if svc.container is None:
            raise ValueError(f"{svc.name} has no container activation")

        container = svc.container
        entry: dict[str, Any] = {
            "image": container.image,
            "container_name": svc.unit_name,
            "restart": "unless-stopped",
            "mem_limit": self.config.resources.memory_limit,
            "cpus": self.config.resources.cpu_limit,
        }
        if container.build_context:
            entry["build"] = {"context": container.build_context}
        if svc.ports:
            entry["ports"] = [f"{port}:{port}" for port in svc.ports]
        if container.environment:
            entry["environment"] = dict(sorted(container.environment.items()))
        if container.volumes:
            entry["volumes"] = list(container.volumes)
        return entry

    def render(self, services: Iterable[ServiceDescriptor]) -> str:
        """Render the full compose document."""
        document = {
            "name": settings.SERVICE_PREFIX,
            "services": {svc.name: self.service_entry(svc) for svc in services},
        }
        return _HEADER + yaml.safe_dump(document, sort_keys=False)

    def generate_compose(
        self,
        services: Iterable[ServiceDescriptor],
        path: str | Path | None = None,
    ) -> Path:
        """Write docker-compose.yml and return its path."""
        target = Path(path) if path else self.config.paths.compose_file
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.render(services), encoding="utf-8")
        logger.info("docker-compose.yml generated: %s", target)
        return target
