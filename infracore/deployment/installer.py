"""DependencyInstaller: idempotently ensures runtimes and tools exist."""

from __future__ import annotations

import logging
import re
from typing import Optional

from packaging.version import InvalidVersion, Version
from pydantic import BaseModel, ConfigDict, Field

from infracore.deployment.errors import (
    CommandError,
    DependencyInstallFailed,
    PhaseTimeout,
)
from infracore.deployment.host import CancelToken, CommandRunner, Deadline, HostInspector
from infracore.deployment.models import Phase, Strategy
from infracore.deployment.rollback import RollbackManager, RollbackStep

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)+)")


class Requirement(BaseModel):
    """An external tool or runtime a strategy needs on the host."""

    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    """Executable looked up on PATH to decide presence."""

    version_command: tuple[str, ...] = ()
    min_version: Optional[str] = None
    install_commands: dict[str, tuple[tuple[str, ...], ...]] = Field(default_factory=dict)
    """Install commands keyed by package manager executable."""

    remove_commands: tuple[tuple[str, ...], ...] = ()
    """Undo for a fresh install.  Empty means the install is kept on rollback."""


class InstallResult(BaseModel):
    """Result of one installer run."""

    installed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


_APT_DOCKER = (
    ("apt-get", "update"),
    ("apt-get", "install", "-y", "docker.io"),
    ("systemctl", "enable", "--now", "docker"),
)
_YUM_DOCKER = (
    ("yum", "install", "-y", "docker"),
    ("systemctl", "enable", "--now", "docker"),
)


_GIT = Requirement(
    name="git",
    command="git",
    install_commands={
        "apt-get": (("apt-get", "install", "-y", "git"),),
        "yum": (("yum", "install", "-y", "git"),),
    },
)


def default_requirements(strategy: Strategy, checkout: bool = True) -> list[Requirement]:
    """Tools each strategy needs before activation can start.

    git comes first when the release is checked out from a repository.
    """
    requirements = [_GIT] if checkout else []
    if strategy is Strategy.CONTAINER:
        return requirements + [
            Requirement(
                name="docker",
                command="docker",
                version_command=("docker", "version", "--format", "{{.Server.Version}}"),
                min_version="20.10",
                install_commands={"apt-get": _APT_DOCKER, "yum": _YUM_DOCKER},
            ),
            Requirement(
                name="docker-compose",
                command="docker",
                version_command=("docker", "compose", "version", "--short"),
                min_version="2.0",
                install_commands={
                    "apt-get": (("apt-get", "install", "-y", "docker-compose-plugin"),),
                    "yum": (("yum", "install", "-y", "docker-compose-plugin"),),
                },
            ),
        ]
    return requirements + [
        Requirement(
            name="go",
            command="go",
            version_command=("go", "version"),
            min_version="1.21",
            install_commands={
                "apt-get": (("apt-get", "install", "-y", "golang-go"),),
                "yum": (("yum", "install", "-y", "golang"),),
            },
        ),
    ]


def parse_version(text: str) -> Version | None:
    """Extract the first dotted version number from command output."""
    match = _VERSION_RE.search(text)
    if not match:
        return None
    try:
        return Version(match.group(1))
    except InvalidVersion:
        return None


class DependencyInstaller:
    """Install missing requirements, skipping those already satisfied.

    Parameters
    ----------
    runner:
        Executes version probes and install commands.
    inspector:
        Answers ``which`` lookups.
    requirements:
        Ordered requirements; later ones may assume earlier ones exist.
    package_managers:
        Candidate package managers, first available wins.
    """

    def __init__(
        self,
        runner: CommandRunner,
        inspector: HostInspector,
        requirements: list[Requirement],
        package_managers: tuple[str, ...] = ("apt-get", "yum"),
    ) -> None:
        self.runner = runner
        self.inspector = inspector
        self.requirements = list(requirements)
        self.package_managers = package_managers

    def is_satisfied(self, req: Requirement, deadline: Deadline | None = None) -> bool:
        """Return True if *req* is present at an acceptable version."""
        if not self.inspector.which(req.command):
            return False
        if not req.version_command:
            return True

        timeout = deadline.remaining(cap=30.0) if deadline else 30.0
        try:
            result = self.runner.run(req.version_command, timeout=timeout, check=False)
        except CommandError:
            return False
        if not result.ok:
            return False
        if req.min_version is None:
            return True

        found = parse_version(result.stdout)
        if found is None:
            logger.warning("Could not parse %s version from %r", req.name, result.stdout)
            return False
        return found >= Version(req.min_version)

    def _package_manager(self) -> str | None:
        for manager in self.package_managers:
            if self.inspector.which(manager):
                return manager
        return None

    def install(
        self,
        rollback: RollbackManager,
        deadline: Deadline | None = None,
        cancel_token: CancelToken | None = None,
    ) -> InstallResult:
        """Ensure every requirement is present.

        Raises
        ------
        DependencyInstallFailed
            On the first requirement that could not be installed.
        """
        deadline = deadline or Deadline(None)
        result = InstallResult()

        for req in self.requirements:
            if cancel_token:
                cancel_token.raise_if_cancelled()
            try:
                if self.is_satisfied(req, deadline):
                    logger.info("%s already satisfied", req.name)
                    result.skipped.append(req.name)
                    continue
                self._install_one(req, rollback, deadline)
            except PhaseTimeout as exc:
                raise DependencyInstallFailed(req.name, str(exc)) from exc
            result.installed.append(req.name)

        return result

    def _install_one(
        self, req: Requirement, rollback: RollbackManager, deadline: Deadline,
    ) -> None:
        manager = self._package_manager()
        commands = req.install_commands.get(manager or "", ())
        if not commands:
            raise DependencyInstallFailed(
                req.name, f"no install recipe for package manager {manager or 'none'}",
            )

        logger.info("Installing %s via %s", req.name, manager)
        try:
            for cmd in commands:
                self.runner.run(cmd, timeout=deadline.remaining())
        except CommandError as exc:
            raise DependencyInstallFailed(req.name, str(exc)) from exc

        if req.remove_commands:
            rollback.record(RollbackStep(
                label=f"remove {req.name}",
                undo=lambda: self._remove(req),
                action=f"install {req.name}",
                phase=Phase.INSTALLING_DEPENDENCIES.value,
            ))
        else:
            rollback.record(RollbackStep.noop(
                label=f"keep {req.name} installed",
                action=f"install {req.name}",
                phase=Phase.INSTALLING_DEPENDENCIES.value,
            ))

        if not self.is_satisfied(req, deadline):
            raise DependencyInstallFailed(req.name, "still missing after installation")

    def _remove(self, req: Requirement) -> None:
        for cmd in req.remove_commands:
            self.runner.run(cmd)
