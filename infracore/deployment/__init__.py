"""Deployment pipeline.

Provides configuration resolution, pre-flight checks, dependency
installation, container and binary activation, health verification,
transactional rollback and post-deployment service control.
"""

from infracore.deployment.config_manager import ConfigResolver
from infracore.deployment.controller import ServiceController, StatusSnapshot
from infracore.deployment.docker import ComposeBuilder
from infracore.deployment.driver import OrchestrationDriver
from infracore.deployment.errors import (
    ConfigInvalid,
    DependencyInstallFailed,
    DeploymentCancelled,
    DeploymentError,
    ExecutionFailed,
    HealthCheckTimeout,
    NotDeployed,
    PreflightFailed,
    RollbackIncomplete,
)
from infracore.deployment.executor import DeploymentExecutor
from infracore.deployment.health import HealthResult, HealthSample, HealthVerifier
from infracore.deployment.host import CancelToken, CommandRunner, HostInspector
from infracore.deployment.installer import DependencyInstaller, InstallResult
from infracore.deployment.inventory import ServiceDescriptor, ServiceInventory
from infracore.deployment.models import DeploymentConfig, Phase, Strategy
from infracore.deployment.preflight import CheckResult, PreflightChecker
from infracore.deployment.report import DeploymentReport
from infracore.deployment.rollback import RollbackManager, RollbackStep
from infracore.deployment.snapshots import SnapshotStore
from infracore.deployment.source import SourceCheckout

__all__ = [
    "CancelToken",
    "CheckResult",
    "CommandRunner",
    "ComposeBuilder",
    "ConfigInvalid",
    "ConfigResolver",
    "DependencyInstallFailed",
    "DependencyInstaller",
    "DeploymentCancelled",
    "DeploymentConfig",
    "DeploymentError",
    "DeploymentExecutor",
    "DeploymentReport",
    "ExecutionFailed",
    "HealthCheckTimeout",
    "HealthResult",
    "HealthSample",
    "HealthVerifier",
    "HostInspector",
    "InstallResult",
    "NotDeployed",
    "OrchestrationDriver",
    "Phase",
    "PreflightChecker",
    "PreflightFailed",
    "RollbackIncomplete",
    "RollbackManager",
    "RollbackStep",
    "ServiceController",
    "ServiceDescriptor",
    "ServiceInventory",
    "SnapshotStore",
    "SourceCheckout",
    "StatusSnapshot",
    "Strategy",
]
