"""Activation strategies: container (Docker Compose) and binary (systemd)."""

from __future__ import annotations

from infracore.deployment.host import CommandRunner
from infracore.deployment.models import DeploymentConfig, Strategy
from infracore.deployment.strategies.base import ActivationStrategy
from infracore.deployment.strategies.binary import BinaryStrategy
from infracore.deployment.strategies.container import ContainerStrategy


def strategy_for(config: DeploymentConfig, runner: CommandRunner) -> ActivationStrategy:
    """Return the strategy selected by ``config.strategy``."""
    if config.strategy is Strategy.BINARY:
        return BinaryStrategy(config, runner)
    return ContainerStrategy(config, runner)


__all__ = [
    "ActivationStrategy",
    "BinaryStrategy",
    "ContainerStrategy",
    "strategy_for",
]
