"""Abstract ActivationStrategy interface."""

from __future__ import annotations

import abc
import logging
from typing import Callable, Sequence

from infracore.deployment.host import CommandResult, CommandRunner, Deadline
from infracore.deployment.inventory import ServiceDescriptor
from infracore.deployment.models import DeploymentConfig
from infracore.deployment.rollback import RollbackStep

logger = logging.getLogger(__name__)

Recorder = Callable[[RollbackStep], None]


class ActivationStrategy(abc.ABC):
    """Base class for the container and binary strategies.

    The executor drives a strategy in three stages: :meth:`begin` once for
    the whole service set, :meth:`prepare_service` for every service, then
    :meth:`activate` per service in rank order.  ``activate`` returns the
    step that undoes it; on its own failure it cleans up what it started.

    Parameters
    ----------
    config:
        Resolved configuration snapshot.
    runner:
        Executes docker, systemctl and build commands.
    """

    def __init__(self, config: DeploymentConfig, runner: CommandRunner) -> None:
        self.config = config
        self.runner = runner

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Strategy name."""

    @abc.abstractmethod
    def begin(
        self,
        services: Sequence[ServiceDescriptor],
        deadline: Deadline,
        record: Recorder,
    ) -> None:
        """Shared setup before any service is prepared."""

    @abc.abstractmethod
    def prepare_service(self, service: ServiceDescriptor, deadline: Deadline) -> None:
        """Build, pull or locate the service artifact."""

    @abc.abstractmethod
    def activate(self, service: ServiceDescriptor, deadline: Deadline) -> RollbackStep:
        """Start *service* and return the step that reverses the start."""

    @abc.abstractmethod
    def start(self, service: ServiceDescriptor) -> None:
        """Start an installed service."""

    @abc.abstractmethod
    def stop(self, service: ServiceDescriptor) -> None:
        """Stop a running service."""

    @abc.abstractmethod
    def restart(self, service: ServiceDescriptor) -> None:
        """Restart a service."""

    @abc.abstractmethod
    def is_running(self, service: ServiceDescriptor) -> bool:
        """Return True if the service process or container is up."""

    @abc.abstractmethod
    def logs(self, service: ServiceDescriptor, lines: int = 100) -> list[str]:
        """Return the most recent log lines of *service*."""

    @abc.abstractmethod
    def is_installed(self, service: ServiceDescriptor) -> bool:
        """Return True if the service has been activated on this host."""

    # -- Helpers --------------------------------------------------------------

    def _run(
        self,
        args: Sequence[str],
        deadline: Deadline | None = None,
        *,
        check: bool = True,
        cwd: str | None = None,
    ) -> CommandResult:
        cap = self.config.timeouts.command_s
        timeout = deadline.remaining(cap=cap) if deadline else cap
        return self.runner.run(args, cwd=cwd, timeout=timeout, check=check)

    @staticmethod
    def _cleanup(service: ServiceDescriptor, undo: Callable[[], None]) -> None:
        """Undo a partially applied activation, logging any failure."""
        try:
            undo()
        except Exception as exc:
            logger.error("Cleanup after failed start of %s failed: %s", service.name, exc)
