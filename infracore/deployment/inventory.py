"""Service descriptors and the fixed, rank-ordered service inventory."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from infracore import config as settings
from infracore.deployment.errors import ConfigInvalid
from infracore.deployment.models import DeploymentConfig

logger = logging.getLogger(__name__)


class ContainerActivation(BaseModel):
    """How the container strategy obtains and runs a service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    image: str
    build_context: Optional[str] = None
    """Directory with a Dockerfile.  When unset the image is pulled."""

    environment: dict[str, str] = Field(default_factory=dict)
    volumes: tuple[str, ...] = ()


class BinaryActivation(BaseModel):
    """How the binary strategy obtains and runs a service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    executable: str
    """Path of the executable, relative to ``workdir`` unless absolute."""

    build_command: tuple[str, ...] = ()
    """Command producing the executable.  Empty means locate only."""

    workdir: Optional[str] = None
    args: tuple[str, ...] = ()


class ServiceDescriptor(BaseModel):
    """One managed service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1, pattern=r"^[a-z][a-z0-9-]*$")
    rank: int = Field(ge=0)
    ports: tuple[int, ...] = ()
    health_path: Optional[str] = None
    probe: str = "http"
    """``http`` probes ``health_path`` on the first port; ``process`` checks liveness only."""

    container: Optional[ContainerActivation] = None
    binary: Optional[BinaryActivation] = None

    @model_validator(mode="after")
    def _check_probe(self) -> ServiceDescriptor:
        if self.probe not in ("http", "process"):
            raise ValueError(f"probe must be 'http' or 'process', not {self.probe!r}")
        if self.probe == "http" and (not self.health_path or not self.ports):
            raise ValueError("http probe needs a health_path and at least one port")
        return self

    @property
    def unit_name(self) -> str:
        return f"{settings.SERVICE_PREFIX}-{self.name}"

    @property
    def health_url(self) -> str | None:
        if self.probe != "http" or not self.ports or not self.health_path:
            return None
        return f"http://127.0.0.1:{self.ports[0]}{self.health_path}"


class ServiceInventory:
    """Immutable set of services, iterated in ascending rank order.

    Raises :class:`ConfigInvalid` when names, ranks or ports repeat.
    """

    def __init__(self, services: Iterable[ServiceDescriptor]) -> None:
        ordered = tuple(sorted(services, key=lambda s: s.rank))
        errors: list[str] = []
        if not ordered:
            errors.append("service inventory is empty")

        seen_names: set[str] = set()
        seen_ranks: dict[int, str] = {}
        seen_ports: dict[int, str] = {}
        for svc in ordered:
            if svc.name in seen_names:
                errors.append(f"duplicate service name: {svc.name}")
            seen_names.add(svc.name)
            if svc.rank in seen_ranks:
                errors.append(
                    f"{svc.name} shares rank {svc.rank} with {seen_ranks[svc.rank]}"
                )
            seen_ranks.setdefault(svc.rank, svc.name)
            for port in svc.ports:
                if port in seen_ports:
                    errors.append(
                        f"{svc.name} shares port {port} with {seen_ports[port]}"
                    )
                seen_ports.setdefault(port, svc.name)

        if errors:
            raise ConfigInvalid(errors)
        self._services = ordered

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]]) -> ServiceInventory:
        """Build an inventory from plain dicts (e.g. parsed YAML)."""
        services: list[ServiceDescriptor] = []
        errors: list[str] = []
        for index, record in enumerate(records):
            try:
                services.append(ServiceDescriptor.model_validate(record))
            except ValidationError as exc:
                name = record.get("name", f"#{index}") if isinstance(record, dict) else f"#{index}"
                for err in exc.errors():
                    loc = ".".join(str(p) for p in err["loc"]) or "service"
                    errors.append(f"{name}.{loc}: {err['msg']}")
        if errors:
            raise ConfigInvalid(errors)
        return cls(services)

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self._services)

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, name: object) -> bool:
        return any(s.name == name for s in self._services)

    def get(self, name: str) -> ServiceDescriptor:
        for svc in self._services:
            if svc.name == name:
                return svc
        raise KeyError(name)

    def names(self) -> list[str]:
        return [s.name for s in self._services]

    def ports(self) -> list[int]:
        return [p for s in self._services for p in s.ports]

    def select(self, name: str | None = None) -> list[ServiceDescriptor]:
        """Return one named service, or all services when *name* is None."""
        if name is None:
            return list(self._services)
        try:
            return [self.get(name)]
        except KeyError:
            raise ConfigInvalid([f"unknown service: {name}"]) from None


def load_inventory(path: str | Path) -> ServiceInventory:
    """Load an inventory from a YAML or JSON list of service records."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if p.suffix in (".yaml", ".yml") else json.loads(text)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigInvalid([f"cannot read inventory {p}: {exc}"]) from exc

    if isinstance(data, dict):
        data = data.get("services", [])
    if not isinstance(data, list):
        raise ConfigInvalid([f"{p}: expected a list of services"])
    return ServiceInventory.from_records(data)


def default_inventory(config: DeploymentConfig) -> ServiceInventory:
    """Return the five InfraCore services wired to the configured ports.

    The console starts first because the gateway proxies to it.
    """
    registry = "ghcr.io/last-emo-boy/infra-core"
    gate_ports = tuple(
        p for p in (config.ports.http, config.ports.https) if p is not None
    )
    api_port = config.ports.api

    def _container(name: str) -> ContainerActivation:
        return ContainerActivation(
            image=f"{registry}-{name}:latest",
            environment={
                "INFRA_CORE_ENV": config.environment,
                "INFRA_CORE_CONFIG_PATH": str(config.paths.config_file),
            },
            volumes=(
                f"{config.paths.config_dir}:{config.paths.config_dir}:ro",
                f"{config.paths.data_dir}:{config.paths.data_dir}",
                f"{config.paths.log_dir}:{config.paths.log_dir}",
            ),
        )

    def _binary(name: str) -> BinaryActivation:
        return BinaryActivation(
            executable=f"bin/{name}",
            build_command=(
                "go", "build", "-ldflags=-s -w", "-o", f"bin/{name}", f"./cmd/{name}",
            ),
            workdir=str(config.paths.current_dir),
        )

    records: list[ServiceDescriptor] = []
    if api_port is not None:
        records.append(ServiceDescriptor(
            name="console", rank=1, ports=(api_port,), health_path="/api/v1/health",
            container=_container("console"), binary=_binary("console"),
        ))
    if gate_ports:
        records.append(ServiceDescriptor(
            name="gate", rank=2, ports=gate_ports, health_path="/health",
            container=_container("gate"), binary=_binary("gate"),
        ))
    records.extend([
        ServiceDescriptor(
            name="orchestrator", rank=3, ports=(settings.ORCHESTRATOR_PORT,),
            health_path="/health",
            container=_container("orch"), binary=_binary("orch"),
        ),
        ServiceDescriptor(
            name="probe", rank=4, ports=(settings.PROBE_PORT,), health_path="/health",
            container=_container("probe"), binary=_binary("probe"),
        ),
        ServiceDescriptor(
            name="snap", rank=5, ports=(settings.SNAP_PORT,), health_path="/health",
            container=_container("snap"), binary=_binary("snap"),
        ),
    ])
    inventory = ServiceInventory(records)
    logger.debug("Default inventory: %s", ", ".join(inventory.names()))
    return inventory
