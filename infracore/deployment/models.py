"""Pydantic models for the resolved configuration snapshot."""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from infracore import config as defaults


class Strategy(str, Enum):
    """Mutually exclusive service activation mechanisms."""

    CONTAINER = "container"
    BINARY = "binary"


class Phase(str, Enum):
    """States of the orchestration pipeline."""

    RESOLVING = "resolving"
    PREFLIGHT_CHECKING = "preflight_checking"
    INSTALLING_DEPENDENCIES = "installing_dependencies"
    EXECUTING = "executing"
    VERIFYING_HEALTH = "verifying_health"
    ROLLING_BACK = "rolling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Failures in these phases may have touched the host and need an unwind
MUTATING_PHASES = frozenset({
    Phase.INSTALLING_DEPENDENCIES,
    Phase.EXECUTING,
    Phase.VERIFYING_HEALTH,
})


class DeployMode(str, Enum):
    """Whether a deploy replaces an existing release."""

    FRESH = "fresh"
    UPGRADE = "upgrade"


class HealthDimension(str, Enum):
    """Independent readiness dimensions scored by the health verifier."""

    LIVENESS = "liveness"
    ENDPOINT = "endpoint"
    DISK = "disk"
    MEMORY = "memory"
    PERMISSIONS = "permissions"
    LOG_ERRORS = "log_errors"


_MEMORY_RE = re.compile(r"^(\d+(?:\.\d+)?)([kmgt]?)(?:i?b)?$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


def parse_memory(value: str) -> int:
    """Convert a quantity such as ``512m`` or ``1.5GiB`` to bytes."""
    match = _MEMORY_RE.match(value.strip())
    if not match:
        raise ValueError(f"not a memory quantity: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PortsConfig(_Frozen):
    """Ports exposed on the host.  ``None`` means not exposed."""

    http: Optional[int] = 80
    https: Optional[int] = 443
    api: Optional[int] = 8082

    def exposed(self) -> dict[str, int]:
        """Return the exposed ports keyed by their role."""
        pairs = (("http", self.http), ("https", self.https), ("api", self.api))
        return {name: port for name, port in pairs if port is not None}


class ResourceLimits(_Frozen):
    """Per-service resource ceilings."""

    memory_limit: str = "1g"
    cpu_limit: float = Field(1.0, gt=0)

    @field_validator("memory_limit")
    @classmethod
    def _check_memory(cls, value: str) -> str:
        parse_memory(value)
        return value.strip().lower()

    @property
    def memory_limit_bytes(self) -> int:
        return parse_memory(self.memory_limit)


class BackupPolicy(_Frozen):
    """Release backup settings."""

    enabled: bool = True
    retention_days: int = Field(7, ge=1)


class SecretsConfig(_Frozen):
    """Secret material handed to the services."""

    signing_key: SecretStr


class PathsConfig(_Frozen):
    """Host directories owned by the deployment."""

    deploy_dir: Path = defaults.DEFAULT_DEPLOY_DIR
    config_dir: Path = defaults.DEFAULT_CONFIG_DIR
    log_dir: Path = defaults.DEFAULT_LOG_DIR
    data_dir: Path = defaults.DEFAULT_DATA_DIR
    unit_dir: Path = defaults.DEFAULT_UNIT_DIR

    @property
    def current_dir(self) -> Path:
        return self.deploy_dir / defaults.CURRENT_RELEASE_DIR

    @property
    def previous_dir(self) -> Path:
        return self.deploy_dir / defaults.PREVIOUS_RELEASE_DIR

    @property
    def backups_dir(self) -> Path:
        return self.deploy_dir / defaults.BACKUPS_DIR

    @property
    def release_record(self) -> Path:
        return self.current_dir / defaults.RELEASE_RECORD

    @property
    def compose_file(self) -> Path:
        return self.current_dir / defaults.COMPOSE_FILE

    @property
    def config_file(self) -> Path:
        return self.config_dir / defaults.CONFIG_FILE

    @property
    def environment_file(self) -> Path:
        return self.config_dir / defaults.ENVIRONMENT_FILE


class SourceConfig(_Frozen):
    """Repository checked out as the release.  An empty URL deploys in place."""

    repo_url: str = defaults.DEFAULT_REPO_URL
    branch: str = defaults.DEFAULT_BRANCH


class PreflightThresholds(_Frozen):
    """Minimum host resources and prerequisites checked before mutation."""

    min_free_disk_mb: int = Field(1024, ge=0)
    min_free_memory_mb: int = Field(512, ge=0)
    network_endpoints: tuple[str, ...] = (
        "https://github.com",
        "https://registry-1.docker.io/v2/",
    )
    network_timeout_s: float = Field(5.0, gt=0)
    host_tools: tuple[str, ...] = ("curl",)
    package_managers: tuple[str, ...] = ("apt-get", "yum")
    require_root: bool = True


class HealthPolicy(_Frozen):
    """Weights, mandatory dimensions and retry budget for readiness.

    A run is ready when every mandatory dimension passes and the weighted
    fraction of passing dimensions reaches ``readiness_threshold``.  With
    the default weights, liveness plus endpoint alone score exactly 0.6.
    """

    weights: dict[str, float] = Field(default_factory=lambda: {
        HealthDimension.LIVENESS.value: 3.0,
        HealthDimension.ENDPOINT.value: 3.0,
        HealthDimension.DISK.value: 1.0,
        HealthDimension.MEMORY.value: 1.0,
        HealthDimension.PERMISSIONS.value: 1.0,
        HealthDimension.LOG_ERRORS.value: 1.0,
    })
    mandatory: tuple[str, ...] = (
        HealthDimension.LIVENESS.value,
        HealthDimension.ENDPOINT.value,
    )
    readiness_threshold: float = Field(0.6, ge=0.0, le=1.0)
    max_attempts: int = Field(30, ge=1)
    interval_s: float = Field(2.0, ge=0.0)
    attempt_timeout_s: float = Field(10.0, gt=0.0)
    endpoint_timeout_s: float = Field(3.0, gt=0.0)
    max_disk_ratio: float = Field(0.9, gt=0.0, le=1.0)
    max_memory_ratio: float = Field(0.9, gt=0.0, le=1.0)
    max_log_errors: int = Field(0, ge=0)
    log_lines: int = Field(200, ge=1)

    @field_validator("weights")
    @classmethod
    def _check_weights(cls, value: dict[str, float]) -> dict[str, float]:
        known = {d.value for d in HealthDimension}
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"unknown health dimensions: {', '.join(unknown)}")
        if any(w < 0 for w in value.values()):
            raise ValueError("weights must not be negative")
        if not any(w > 0 for w in value.values()):
            raise ValueError("at least one weight must be positive")
        return value

    @model_validator(mode="after")
    def _check_mandatory(self) -> HealthPolicy:
        missing = [m for m in self.mandatory if m not in self.weights]
        if missing:
            raise ValueError(f"mandatory dimensions without a weight: {', '.join(missing)}")
        return self


class PhaseTimeouts(_Frozen):
    """Upper bounds, in seconds, for the long-running phases."""

    install_s: float = Field(600.0, gt=0)
    execute_s: float = Field(900.0, gt=0)
    command_s: float = Field(300.0, gt=0)


class DeploymentConfig(_Frozen):
    """Immutable configuration snapshot for one pipeline run."""

    environment: str = "production"
    domain: str
    admin_contact: str
    ports: PortsConfig = Field(default_factory=PortsConfig)
    tls_enabled: bool = False
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    backup: BackupPolicy = Field(default_factory=BackupPolicy)
    secrets: SecretsConfig
    strategy: Strategy = Strategy.CONTAINER
    service_user: str = "infracore"
    log_level: str = "INFO"
    source: SourceConfig = Field(default_factory=SourceConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    preflight: PreflightThresholds = Field(default_factory=PreflightThresholds)
    health: HealthPolicy = Field(default_factory=HealthPolicy)
    timeouts: PhaseTimeouts = Field(default_factory=PhaseTimeouts)

    def public_dict(self) -> dict:
        """Return a JSON-ready dict with secret values masked."""
        return self.model_dump(mode="json")

    def rendered_dict(self) -> dict:
        """Return a JSON-ready dict including secret values, for config files."""
        data = self.model_dump(mode="json")
        data["secrets"]["signing_key"] = self.secrets.signing_key.get_secret_value()
        return data
