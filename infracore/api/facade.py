"""InfraCore: the single entry point for deployment and service control.

Usage::

    from infracore import InfraCore

    ic = InfraCore(config_path="/etc/infra-core/config.yaml")
    report = ic.deploy()
    print(report.to_markdown())
    ic.status()
    ic.logs("gate", lines=50)
    ic.restart("console")
    ic.stop()
    ic.start()
    ic.rollback()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from infracore.deployment.config_manager import ConfigResolver, env_overrides
from infracore.deployment.controller import ServiceController, StatusSnapshot
from infracore.deployment.driver import OrchestrationDriver
from infracore.deployment.inventory import load_inventory
from infracore.deployment.models import DeploymentConfig
from infracore.deployment.notifications import (
    ConsoleNotifier,
    MultiNotifier,
    NotificationProvider,
    WebhookNotifier,
)
from infracore.deployment.report import DeploymentReport

logger = logging.getLogger(__name__)


class InfraCore:
    """The public interface of the deployment engine.

    Parameters
    ----------
    config_path:
        Persisted YAML or JSON configuration.  A missing file is allowed.
    overrides:
        Highest-priority configuration values (dotted or nested keys).
    environ:
        Source of ``INFRA_CORE_*`` variables; defaults to ``os.environ``.
        Explicit *overrides* win over environment values.
    inventory_path:
        Optional YAML/JSON service inventory replacing the built-in one.
    webhook_url:
        When set, events are also POSTed to this URL.
    components:
        Passed to :class:`OrchestrationDriver` (runner, inspector,
        strategy, ...), mainly for tests.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        overrides: Mapping[str, Any] | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        inventory_path: str | Path | None = None,
        notifier: NotificationProvider | None = None,
        webhook_url: str | None = None,
        **components: Any,
    ) -> None:
        layered = env_overrides(environ)
        layered.update(overrides or {})
        self.resolver = ConfigResolver(config_path, layered)

        if notifier is None:
            notifier = ConsoleNotifier()
            if webhook_url:
                notifier = MultiNotifier([notifier, WebhookNotifier(webhook_url)])
        self.notifier = notifier

        if inventory_path is not None:
            components.setdefault("inventory", load_inventory(inventory_path))
        self.driver = OrchestrationDriver(self.resolver, notifier=notifier, **components)

    # -- Configuration --------------------------------------------------------

    @property
    def config(self) -> DeploymentConfig:
        """Resolved configuration; resolved on first access."""
        return self.driver.resolve()

    def _controller(self) -> ServiceController:
        return self.driver.controller()

    # -- Commands -------------------------------------------------------------

    def deploy(self) -> DeploymentReport:
        """Run the full pipeline and return its report."""
        report = self.driver.deploy()
        logger.info("deploy finished: %s", report.final_state.value)
        return report

    def status(self) -> StatusSnapshot:
        """Release record, per-service state and one health pass."""
        return self._controller().status()

    def logs(self, service: str | None = None, lines: int = 100) -> list[str]:
        """Recent log lines, prefixed with the service name."""
        return list(self._controller().logs(service, lines))

    def start(self, service: str | None = None) -> list[str]:
        return self._controller().start(service)

    def stop(self, service: str | None = None) -> list[str]:
        return self._controller().stop(service)

    def restart(self, service: str | None = None) -> list[str]:
        return self._controller().restart(service)

    def rollback(self, label: str | None = None) -> dict[str, Any]:
        """Restore the newest (or named) release snapshot."""
        return self.driver.rollback_release(label)

    # -- Snapshots ------------------------------------------------------------

    def create_snapshot(self, label: str | None = None) -> dict[str, Any]:
        """Back up the current release."""
        self.driver.resolve()
        return self.driver.snapshots.create_snapshot(label)

    def list_snapshots(self) -> list[dict[str, Any]]:
        """List available release snapshots."""
        self.driver.resolve()
        return self.driver.snapshots.list_snapshots()
