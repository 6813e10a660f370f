"""EnvironmentPreparer: idempotent host layout for a release.

Creates the service user and directories, renders the configuration
files the services read, and records the release once activated.  Each
mutation registers its undo with the :class:`RollbackManager`.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from infracore.deployment.errors import CommandError, DependencyInstallFailed, PhaseTimeout
from infracore.deployment.host import CommandRunner, Deadline, HostInspector
from infracore.deployment.models import DeploymentConfig, DeployMode, Phase
from infracore.deployment.rollback import RollbackManager, RollbackStep
from infracore.deployment.snapshots import SnapshotStore
from infracore.deployment.source import SourceCheckout

logger = logging.getLogger(__name__)

DIR_MODE = 0o755
SECRET_FILE_MODE = 0o600


def write_file_step(
    path: Path,
    content: str,
    mode: int,
    phase: Phase,
) -> RollbackStep:
    """Write *content* to *path* and return the step that restores it.

    The file carries *mode* before any content is written.
    """
    previous: bytes | None = path.read_bytes() if path.is_file() else None
    previous_mode = path.stat().st_mode & 0o777 if previous is not None else None

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        # An existing file keeps its old bits through O_CREAT
        os.fchmod(fd, mode)
        fh.write(content)

    def _undo() -> None:
        if previous is None:
            path.unlink(missing_ok=True)
        else:
            path.write_bytes(previous)
            os.chmod(path, previous_mode or mode)

    return RollbackStep(
        label=f"restore {path}" if previous is not None else f"remove {path}",
        undo=_undo,
        action=f"write {path}",
        phase=phase.value,
    )


class EnvironmentPreparer:
    """Prepare directories, user and config files for one release.

    Parameters
    ----------
    config:
        Resolved configuration snapshot.
    runner:
        Used for user management commands.
    inspector:
        Used to test for the service user.
    snapshots:
        Receives the backup taken before an upgrade.
    source:
        Checks the release out of its repository.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        runner: CommandRunner,
        inspector: HostInspector,
        snapshots: SnapshotStore | None = None,
        source: SourceCheckout | None = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.inspector = inspector
        self.snapshots = snapshots or SnapshotStore(config.paths)
        self.source = source or SourceCheckout(config, runner)
        self.source_info: dict[str, Any] = {}

    # -- Layout ---------------------------------------------------------------

    def directories(self) -> list[Path]:
        paths = self.config.paths
        return [
            paths.deploy_dir,
            paths.current_dir,
            paths.backups_dir,
            paths.config_dir,
            paths.log_dir,
            paths.data_dir,
        ]

    def expected_permissions(self) -> dict[Path, int]:
        """Permission bits the health verifier expects after a deploy."""
        expected = {d: DIR_MODE for d in self.directories()}
        expected[self.config.paths.config_file] = SECRET_FILE_MODE
        expected[self.config.paths.environment_file] = SECRET_FILE_MODE
        return expected

    # -- Preparation ----------------------------------------------------------

    def prepare(
        self,
        rollback: RollbackManager,
        mode: DeployMode,
        deadline: Deadline | None = None,
    ) -> None:
        """Run every preparation step, recording undo steps as it goes."""
        deadline = deadline or Deadline(None)
        if mode is DeployMode.UPGRADE and self.config.backup.enabled:
            meta = self.snapshots.create_snapshot()
            rollback.record(RollbackStep.noop(
                label=f"keep backup {meta['label']}",
                action="snapshot current release",
                phase=Phase.INSTALLING_DEPENDENCIES.value,
            ))

        self._ensure_user(rollback, deadline)
        for directory in self.directories():
            self._ensure_directory(directory, rollback)
        if self.source.enabled:
            self._checkout_source(rollback, deadline)
        self._render_config(rollback)

    def finish(self) -> None:
        """Drop what a successful run no longer needs to undo."""
        self.source.discard_stash()

    def _ensure_user(self, rollback: RollbackManager, deadline: Deadline) -> None:
        user = self.config.service_user
        if not user or self.inspector.user_exists(user):
            return
        logger.info("Creating service user: %s", user)
        self.runner.run(
            ["useradd", "-r", "-s", "/bin/false", "-d", str(self.config.paths.deploy_dir), user],
            timeout=deadline.remaining(cap=60.0),
        )
        rollback.record(RollbackStep(
            label=f"delete user {user}",
            undo=lambda: self.runner.run(["userdel", user]),
            action=f"useradd {user}",
            phase=Phase.INSTALLING_DEPENDENCIES.value,
        ))

    def _ensure_directory(self, directory: Path, rollback: RollbackManager) -> None:
        if directory.is_dir():
            previous_mode = directory.stat().st_mode & 0o777
            if previous_mode != DIR_MODE:
                os.chmod(directory, DIR_MODE)
                rollback.record(RollbackStep(
                    label=f"chmod {oct(previous_mode)} {directory}",
                    undo=lambda: os.chmod(directory, previous_mode),
                    action=f"chmod {oct(DIR_MODE)} {directory}",
                    phase=Phase.INSTALLING_DEPENDENCIES.value,
                ))
            return

        # Remember the outermost missing ancestor so undo removes all of it
        top = directory
        while not top.parent.exists():
            top = top.parent
        logger.info("Creating directory: %s", directory)
        directory.mkdir(parents=True, mode=DIR_MODE)
        os.chmod(directory, DIR_MODE)
        self._chown(directory)
        rollback.record(RollbackStep(
            label=f"remove {top}",
            undo=lambda: shutil.rmtree(top),
            action=f"mkdir {directory}",
            phase=Phase.INSTALLING_DEPENDENCIES.value,
        ))

    def _chown(self, path: Path) -> None:
        user = self.config.service_user
        if not user or not self.inspector.user_exists(user):
            return
        try:
            shutil.chown(path, user=user, group=user)
        except (LookupError, PermissionError) as exc:
            logger.warning("Could not chown %s to %s: %s", path, user, exc)

    def _checkout_source(self, rollback: RollbackManager, deadline: Deadline) -> None:
        try:
            info, step = self.source.checkout(deadline)
        except (CommandError, PhaseTimeout, OSError) as exc:
            raise DependencyInstallFailed("source checkout", str(exc)) from exc
        rollback.record(step)

        current = self.config.paths.current_dir
        os.chmod(current, DIR_MODE)
        for path in (current, *current.rglob("*")):
            self._chown(path)
        self.source_info = info

    def _render_config(self, rollback: RollbackManager) -> None:
        paths = self.config.paths
        rendered = yaml.safe_dump(self.config.rendered_dict(), sort_keys=True)
        rollback.record(write_file_step(
            paths.config_file, rendered, SECRET_FILE_MODE, Phase.INSTALLING_DEPENDENCIES,
        ))

        env_lines = [
            f"INFRA_CORE_ENV={self.config.environment}",
            f"INFRA_CORE_CONFIG_PATH={paths.config_file}",
            f"INFRA_CORE_DATA_DIR={paths.data_dir}",
            f"INFRA_CORE_LOG_DIR={paths.log_dir}",
            f"INFRA_CORE_DOMAIN={self.config.domain}",
            "",
        ]
        rollback.record(write_file_step(
            paths.environment_file, "\n".join(env_lines), SECRET_FILE_MODE,
            Phase.INSTALLING_DEPENDENCIES,
        ))

    # -- Release record -------------------------------------------------------

    def record_release(
        self,
        rollback: RollbackManager,
        services: list[str],
        mode: DeployMode,
    ) -> dict[str, Any]:
        """Write ``deployment-info.json`` for the activated release."""
        info: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": self.config.environment,
            "domain": self.config.domain,
            "deployment_type": self.config.strategy.value,
            "mode": mode.value,
            "services": services,
            **self.source_info,
        }
        record = self.config.paths.release_record
        record.parent.mkdir(parents=True, exist_ok=True)
        rollback.record(write_file_step(
            record, json.dumps(info, indent=2), 0o644, Phase.EXECUTING,
        ))
        return info


def read_release(config: DeploymentConfig) -> dict[str, Any] | None:
    """Return the current release record, or None when nothing is deployed."""
    record = config.paths.release_record
    if not record.is_file():
        return None
    try:
        return json.loads(record.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        logger.warning("Unreadable release record at %s", record)
        return None

