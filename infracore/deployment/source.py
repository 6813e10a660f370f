"""SourceCheckout: put the configured branch in place as the release.

The branch is cloned shallowly into a temporary directory under the
deploy directory.  The running release moves from ``current/`` to
``previous/`` and the clone takes its place.  All git operations go
through the :class:`CommandRunner`.
"""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Any

from infracore.deployment.host import CommandRunner, Deadline
from infracore.deployment.models import DeploymentConfig, Phase
from infracore.deployment.rollback import RollbackStep

logger = logging.getLogger(__name__)


class SourceCheckout:
    """Clone ``source.branch`` of ``source.repo_url`` into ``current/``.

    Parameters
    ----------
    config:
        Resolved configuration snapshot.
    runner:
        Executes git.
    """

    def __init__(self, config: DeploymentConfig, runner: CommandRunner) -> None:
        self.config = config
        self.runner = runner
        self._stash: Path | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.config.source.repo_url)

    def _git(self, *args: str, cwd: Path | None = None, deadline: Deadline | None = None) -> str:
        cap = self.config.timeouts.command_s
        timeout = deadline.remaining(cap=cap) if deadline else cap
        result = self.runner.run(
            ["git", *args], cwd=str(cwd) if cwd else None, timeout=timeout,
        )
        return result.stdout.strip()

    def checkout(self, deadline: Deadline | None = None) -> tuple[dict[str, Any], RollbackStep]:
        """Clone the branch and swap it in as the current release.

        Returns the commit details for the release record and the step
        that puts the earlier ``current/`` and ``previous/`` back.

        Raises
        ------
        CommandError
            If git failed.  The temporary clone is removed first.
        OSError
            If the clone is missing or cannot be moved into place.
        """
        paths = self.config.paths
        source = self.config.source
        current, previous = paths.current_dir, paths.previous_dir
        temp = paths.deploy_dir / f"tmp-{time.time_ns()}"

        logger.info("Cloning %s (branch %s) to %s", source.repo_url, source.branch, temp)
        try:
            self._git(
                "clone", "--depth", "1", "--branch", source.branch, source.repo_url, str(temp),
                deadline=deadline,
            )
            commit = self._git("rev-parse", "HEAD", cwd=temp, deadline=deadline)
            message = self._git("log", "-1", "--pretty=format:%s", cwd=temp, deadline=deadline)
        except BaseException:
            shutil.rmtree(temp, ignore_errors=True)
            raise
        if not temp.is_dir():
            raise FileNotFoundError(f"git clone left no checkout at {temp}")
        logger.info("Cloned commit %s: %s", commit, message)

        stash: Path | None = None
        if previous.exists():
            stash = paths.deploy_dir / f"{previous.name}-{time.time_ns()}"
            previous.rename(stash)
        had_current = current.is_dir()
        moved_current = had_current and any(current.iterdir())
        if moved_current:
            current.rename(previous)
        elif had_current:
            current.rmdir()
        temp.rename(current)
        self._stash = stash

        def _undo() -> None:
            if current.exists():
                shutil.rmtree(current)
            if moved_current:
                previous.rename(current)
            elif had_current:
                current.mkdir()
            if stash is not None and stash.exists():
                stash.rename(previous)
            self._stash = None

        info = {
            "repository": source.repo_url,
            "branch": source.branch,
            "commit": commit,
            "commit_message": message,
        }
        step = RollbackStep(
            label=f"restore release directory {current}",
            undo=_undo,
            action=f"checkout {source.branch}@{commit[:12]}",
            phase=Phase.INSTALLING_DEPENDENCIES.value,
        )
        return info, step

    def discard_stash(self) -> None:
        """Delete the release that was in ``previous/`` before this checkout."""
        if self._stash is not None and self._stash.exists():
            logger.debug("Removing superseded release %s", self._stash)
            shutil.rmtree(self._stash)
        self._stash = None
