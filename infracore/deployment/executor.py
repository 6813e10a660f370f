"""DeploymentExecutor: activates services in rank order via a strategy."""

from __future__ import annotations

import dataclasses
import logging

from infracore.deployment.errors import (
    CommandError,
    DeploymentCancelled,
    ExecutionFailed,
    PhaseTimeout,
)
from infracore.deployment.host import CancelToken, Deadline
from infracore.deployment.inventory import ServiceDescriptor, ServiceInventory
from infracore.deployment.rollback import RollbackManager
from infracore.deployment.strategies.base import ActivationStrategy

logger = logging.getLogger(__name__)


class DeploymentExecutor:
    """Prepare every service, then activate them one by one.

    Each activation's undo step is recorded before the next service is
    attempted.  The first failure stops the run.

    Parameters
    ----------
    strategy:
        Container or binary activation.
    rollback:
        Log receiving undo steps.
    """

    def __init__(self, strategy: ActivationStrategy, rollback: RollbackManager) -> None:
        self.strategy = strategy
        self.rollback = rollback
        self.activated: list[str] = []

    def execute(
        self,
        inventory: ServiceInventory,
        deadline: Deadline | None = None,
        cancel_token: CancelToken | None = None,
    ) -> list[str]:
        """Activate every service of *inventory*; return their names.

        *deadline* is checked before each service, so an expired budget
        fails the next service with :class:`ExecutionFailed`.

        Raises
        ------
        ExecutionFailed
            Naming the first service that could not be prepared or started.
        DeploymentCancelled
            If *cancel_token* fired between services.
        """
        deadline = deadline or Deadline(None, "executing")
        services = list(inventory)
        logger.info(
            "Executing %s strategy for %d service(s)", self.strategy.name, len(services),
        )

        self._guard(services[0], lambda: self.strategy.begin(
            services, deadline, self.rollback.record,
        ))
        for svc in services:
            self._checkpoint(svc, deadline, cancel_token)
            self._guard(svc, lambda: self.strategy.prepare_service(svc, deadline))

        for svc in services:
            self._checkpoint(svc, deadline, cancel_token)
            logger.info("Activating %s (rank %d)", svc.name, svc.rank)
            step = self._guard(svc, lambda: self.strategy.activate(svc, deadline))
            self.rollback.record(dataclasses.replace(step, service=svc.name))
            self.activated.append(svc.name)

        return list(self.activated)

    def _checkpoint(
        self,
        service: ServiceDescriptor,
        deadline: Deadline,
        cancel_token: CancelToken | None,
    ) -> None:
        if cancel_token:
            cancel_token.raise_if_cancelled()
        self._guard(service, deadline.check)

    @staticmethod
    def _guard(service: ServiceDescriptor, action):
        try:
            return action()
        except (ExecutionFailed, DeploymentCancelled):
            raise
        except (CommandError, PhaseTimeout, OSError) as exc:
            logger.error("Service %s failed: %s", service.name, exc)
            raise ExecutionFailed(service.name, str(exc)) from exc
