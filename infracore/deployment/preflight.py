"""PreflightChecker: non-mutating host validation before any deploy step.

Usage::

    checker = PreflightChecker(HostInspector())
    result = checker.run(config, inventory)   # raises PreflightFailed
    result.mode                               # fresh or upgrade
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from infracore.deployment.errors import PreflightFailed
from infracore.deployment.host import HostInspector
from infracore.deployment.inventory import ServiceInventory
from infracore.deployment.models import DeploymentConfig, DeployMode, Strategy

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


class CheckResult(BaseModel):
    """Result of a single pre-flight check."""

    name: str = ""
    passed: bool = True
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class PreflightResult(BaseModel):
    """Aggregate of every check, plus the detected install mode."""

    checks: list[CheckResult] = Field(default_factory=list)
    mode: DeployMode = DeployMode.FRESH

    @property
    def failures(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.passed]

    @property
    def passed(self) -> bool:
        return not self.failures


@dataclass
class PreflightContext:
    """Inputs shared by all checks of one run."""

    config: DeploymentConfig
    inventory: ServiceInventory
    inspector: HostInspector
    mode: DeployMode = DeployMode.FRESH


class PreflightCheck(abc.ABC):
    """Base class for all pre-flight checks."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short check identifier."""

    @abc.abstractmethod
    def check(self, ctx: PreflightContext) -> CheckResult:
        """Inspect the host and return pass/fail with a diagnostic."""

    def _result(self, passed: bool, message: str, **details: Any) -> CheckResult:
        return CheckResult(name=self.name, passed=passed, message=message, details=details)


class ExistingDeploymentCheck(PreflightCheck):
    """Detect a prior release to choose upgrade or fresh-install semantics."""

    name = "existing_deployment"

    def check(self, ctx: PreflightContext) -> CheckResult:
        record = ctx.config.paths.release_record
        if record.is_file():
            ctx.mode = DeployMode.UPGRADE
            return self._result(True, f"Existing release found at {record}; upgrading")
        ctx.mode = DeployMode.FRESH
        return self._result(True, "No existing release; fresh install")


class PrivilegeCheck(PreflightCheck):
    """User creation, package installs and systemd units need root."""

    name = "root_privileges"

    def check(self, ctx: PreflightContext) -> CheckResult:
        if not ctx.config.preflight.require_root:
            return self._result(True, "Root privileges not required")
        if ctx.inspector.is_root():
            return self._result(True, "Running as root")
        return self._result(False, "Deployment must run as root (use sudo)")


class ConfigCompletenessCheck(PreflightCheck):
    name = "config_complete"

    def check(self, ctx: PreflightContext) -> CheckResult:
        cfg = ctx.config
        missing: list[str] = []
        if not cfg.domain.strip():
            missing.append("domain")
        if not cfg.admin_contact.strip():
            missing.append("admin_contact")
        if not cfg.secrets.signing_key.get_secret_value():
            missing.append("secrets.signing_key")
        if not cfg.ports.exposed():
            missing.append("ports")
        if cfg.tls_enabled and cfg.ports.https is None:
            missing.append("ports.https (TLS enabled)")
        if missing:
            return self._result(False, f"Configuration incomplete: {', '.join(missing)}")
        return self._result(True, "Configuration complete")


class PortsAvailableCheck(PreflightCheck):
    name = "ports_available"

    def check(self, ctx: PreflightContext) -> CheckResult:
        busy = [p for p in ctx.inventory.ports() if ctx.inspector.port_in_use(p)]
        if not busy:
            return self._result(True, "All service ports are free")
        if ctx.mode is DeployMode.UPGRADE:
            return self._result(
                True, f"Ports {busy} held by the existing release", busy=busy,
            )
        return self._result(
            False, f"Ports already bound: {', '.join(map(str, busy))}", busy=busy,
        )


class DiskSpaceCheck(PreflightCheck):
    name = "disk_space"

    def check(self, ctx: PreflightContext) -> CheckResult:
        path = ctx.config.paths.deploy_dir
        free_mb = ctx.inspector.disk_free_bytes(path) // _MB
        need = ctx.config.preflight.min_free_disk_mb
        if free_mb < need:
            return self._result(
                False, f"Only {free_mb} MB free under {path}, need {need} MB",
                free_mb=free_mb,
            )
        return self._result(True, f"{free_mb} MB free under {path}", free_mb=free_mb)


class MemoryCheck(PreflightCheck):
    name = "memory"

    def check(self, ctx: PreflightContext) -> CheckResult:
        free_mb = ctx.inspector.memory_available_bytes() // _MB
        need = ctx.config.preflight.min_free_memory_mb
        if free_mb < need:
            return self._result(
                False, f"Only {free_mb} MB memory available, need {need} MB",
                free_mb=free_mb,
            )
        return self._result(True, f"{free_mb} MB memory available", free_mb=free_mb)


class HostToolsCheck(PreflightCheck):
    """Tools the installer itself relies on, plus a package manager."""

    name = "host_tools"

    def check(self, ctx: PreflightContext) -> CheckResult:
        thresholds = ctx.config.preflight
        tools = list(thresholds.host_tools)
        if ctx.config.strategy is Strategy.BINARY:
            tools.append("systemctl")
        missing = [t for t in tools if not ctx.inspector.which(t)]

        managers = [m for m in thresholds.package_managers if ctx.inspector.which(m)]
        if thresholds.package_managers and not managers:
            missing.append(f"package manager ({' or '.join(thresholds.package_managers)})")

        if missing:
            return self._result(False, f"Missing host tools: {', '.join(missing)}")
        return self._result(True, f"Host tools present: {', '.join(tools + managers)}")


class NetworkCheck(PreflightCheck):
    name = "network"

    def check(self, ctx: PreflightContext) -> CheckResult:
        thresholds = ctx.config.preflight
        if not thresholds.network_endpoints:
            return self._result(True, "No network endpoints configured")
        for url in thresholds.network_endpoints:
            if ctx.inspector.url_reachable(url, thresholds.network_timeout_s):
                return self._result(True, f"Reached {url}")
        return self._result(
            False,
            f"None of {len(thresholds.network_endpoints)} network endpoint(s) reachable",
        )


def default_checks() -> list[PreflightCheck]:
    """Built-in checks.  Deployment detection runs first; it sets the mode."""
    return [
        ExistingDeploymentCheck(),
        PrivilegeCheck(),
        ConfigCompletenessCheck(),
        PortsAvailableCheck(),
        DiskSpaceCheck(),
        MemoryCheck(),
        HostToolsCheck(),
        NetworkCheck(),
    ]


class PreflightChecker:
    """Run every check and fail once with all failures listed.

    Additional checks can be registered via :meth:`add_check`.
    """

    def __init__(
        self,
        inspector: HostInspector | None = None,
        checks: list[PreflightCheck] | None = None,
    ) -> None:
        self.inspector = inspector or HostInspector()
        self.checks: list[PreflightCheck] = default_checks() if checks is None else list(checks)

    def add_check(self, check: PreflightCheck) -> None:
        """Register an additional check."""
        self.checks.append(check)

    def run(self, config: DeploymentConfig, inventory: ServiceInventory) -> PreflightResult:
        """Run all checks.

        Raises
        ------
        PreflightFailed
            Listing every failed check.
        """
        ctx = PreflightContext(config=config, inventory=inventory, inspector=self.inspector)
        results: list[CheckResult] = []

        for check in self.checks:
            try:
                result = check.check(ctx)
            except Exception as exc:
                logger.debug("Check %s raised", check.name, exc_info=True)
                result = CheckResult(
                    name=check.name, passed=False, message=f"{check.name} errored: {exc}",
                )
            level = logging.INFO if result.passed else logging.ERROR
            logger.log(level, "[preflight] %s: %s", result.name, result.message)
            results.append(result)

        outcome = PreflightResult(checks=results, mode=ctx.mode)
        if not outcome.passed:
            raise PreflightFailed(outcome.failures)
        return outcome
