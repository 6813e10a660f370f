"""ContainerStrategy: services as Docker Compose containers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from infracore import config as settings
from infracore.deployment.docker import ComposeBuilder
from infracore.deployment.environment import write_file_step
from infracore.deployment.errors import ExecutionFailed
from infracore.deployment.host import CommandRunner, Deadline
from infracore.deployment.inventory import ServiceDescriptor
from infracore.deployment.models import DeploymentConfig, Phase
from infracore.deployment.rollback import RollbackStep
from infracore.deployment.strategies.base import ActivationStrategy, Recorder

logger = logging.getLogger(__name__)

PREVIOUS_COMPOSE_FILE = "docker-compose.previous.yml"


class ContainerStrategy(ActivationStrategy):
    """Build or pull images, write the compose file, start containers.

    On upgrade the compose file of the running release is copied aside so
    an undone activation can bring the previous container back.  The
    running release is the one holding a release record: ``current/``, or
    ``previous/`` once a source checkout has replaced ``current/``.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        runner: CommandRunner,
        builder: ComposeBuilder | None = None,
    ) -> None:
        super().__init__(config, runner)
        self.builder = builder or ComposeBuilder(config)
        self.project = settings.SERVICE_PREFIX

    @property
    def name(self) -> str:
        return "container"

    @property
    def compose_file(self) -> Path:
        return self.config.paths.compose_file

    @property
    def previous_compose_file(self) -> Path:
        return self.config.paths.current_dir / PREVIOUS_COMPOSE_FILE

    def running_compose_file(self) -> Path | None:
        """Compose file of the release that is deployed now, if any."""
        paths = self.config.paths
        for release in (paths.current_dir, paths.previous_dir):
            if (release / settings.RELEASE_RECORD).is_file():
                compose = release / settings.COMPOSE_FILE
                return compose if compose.is_file() else None
        return None

    def _compose(self, *args: str, compose_file: Path | None = None) -> list[str]:
        target = compose_file or self.compose_file
        return ["docker", "compose", "-p", self.project, "-f", str(target), *args]

    # -- Pipeline -------------------------------------------------------------

    def begin(
        self,
        services: Sequence[ServiceDescriptor],
        deadline: Deadline,
        record: Recorder,
    ) -> None:
        missing = [s.name for s in services if s.container is None]
        if missing:
            raise ExecutionFailed(missing[0], "no container activation configured")

        self.compose_file.parent.mkdir(parents=True, exist_ok=True)
        running = self.running_compose_file()
        if running is not None:
            record(write_file_step(
                self.previous_compose_file,
                running.read_text(encoding="utf-8"),
                0o644,
                Phase.EXECUTING,
            ))
        record(write_file_step(
            self.compose_file, self.builder.render(services), 0o644, Phase.EXECUTING,
        ))
        logger.info("docker-compose.yml written: %s", self.compose_file)

    def prepare_service(self, service: ServiceDescriptor, deadline: Deadline) -> None:
        if service.container and service.container.build_context:
            logger.info("Building image for %s", service.name)
            self._run(self._compose("build", service.name), deadline)
        else:
            logger.info("Pulling image for %s", service.name)
            self._run(self._compose("pull", service.name), deadline)

    def activate(self, service: ServiceDescriptor, deadline: Deadline) -> RollbackStep:
        was_running = (
            self.previous_compose_file.is_file() and self.is_running(service)
        )

        def _undo() -> None:
            self.runner.run(self._compose("rm", "-s", "-f", service.name))
            if was_running:
                self.runner.run(self._compose(
                    "up", "-d", "--no-deps", service.name,
                    compose_file=self.previous_compose_file,
                ))

        logger.info("Starting container %s", service.unit_name)
        try:
            self._run(
                self._compose("up", "-d", "--no-deps", "--force-recreate", service.name),
                deadline,
            )
        except BaseException:
            self._cleanup(service, _undo)
            raise

        return RollbackStep(
            label=f"remove container {service.unit_name}",
            undo=_undo,
            action=f"start container {service.unit_name}",
            phase=Phase.EXECUTING.value,
        )

    # -- Control --------------------------------------------------------------

    def start(self, service: ServiceDescriptor) -> None:
        self._run(self._compose("up", "-d", "--no-deps", service.name))

    def stop(self, service: ServiceDescriptor) -> None:
        self._run(self._compose("stop", service.name))

    def restart(self, service: ServiceDescriptor) -> None:
        self._run(self._compose("restart", service.name))

    def is_running(self, service: ServiceDescriptor) -> bool:
        result = self._run(
            self._compose("ps", "--status", "running", "--services"), check=False,
        )
        if not result.ok:
            return False
        return service.name in result.stdout.split()

    def logs(self, service: ServiceDescriptor, lines: int = 100) -> list[str]:
        result = self._run(
            self._compose("logs", "--no-color", "--tail", str(lines), service.name),
            check=False,
        )
        return result.stdout.splitlines()

    def is_installed(self, service: ServiceDescriptor) -> bool:
        return self.compose_file.is_file()
