"""Host access: external commands, host facts, deadlines and cancellation.

Every mutation and probe of the host goes through :class:`CommandRunner`
or :class:`HostInspector` so tests can substitute fakes.
"""

from __future__ import annotations

import logging
import os
import pwd
import shutil
import socket
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import psutil
import requests

from infracore.deployment.errors import (
    CommandError,
    CommandTimeout,
    DeploymentCancelled,
    PhaseTimeout,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Run external commands via :func:`subprocess.run`.

    Parameters
    ----------
    default_timeout:
        Timeout applied when the caller passes none.
    """

    def __init__(self, default_timeout: float | None = 300.0) -> None:
        self.default_timeout = default_timeout

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Execute *args* and return the result.

        Raises
        ------
        CommandTimeout
            If the command did not finish within *timeout*.
        CommandError
            If *check* is true and the exit code is non-zero, or the
            executable does not exist.
        """
        timeout = self.default_timeout if timeout is None else timeout
        logger.debug("run %s (cwd=%s, timeout=%s)", " ".join(args), cwd, timeout)
        try:
            proc = subprocess.run(
                list(args),
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(args, timeout or 0.0) from exc
        except FileNotFoundError as exc:
            raise CommandError(args, 127, f"command not found: {args[0]}") from exc

        result = CommandResult(tuple(args), proc.returncode, proc.stdout, proc.stderr)
        if check and not result.ok:
            raise CommandError(args, result.returncode, result.stderr)
        return result


class HostInspector:
    """Read-only facts about the host."""

    def which(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def port_in_use(self, port: int) -> bool:
        """Return True when nothing can bind *port* on all interfaces."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind(("0.0.0.0", port))
            except PermissionError:
                # Privileged port without root: fall back to a connect probe
                return self._accepts_connections(port)
            except OSError:
                return True
        return False

    def _accepts_connections(self, port: int) -> bool:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=1.0):
                return True
        except OSError:
            return False

    def disk_free_bytes(self, path: str | Path) -> int:
        return shutil.disk_usage(_existing_parent(path)).free

    def disk_usage_ratio(self, path: str | Path) -> float:
        usage = shutil.disk_usage(_existing_parent(path))
        return usage.used / usage.total if usage.total else 1.0

    def memory_available_bytes(self) -> int:
        return psutil.virtual_memory().available

    def memory_usage_ratio(self) -> float:
        return psutil.virtual_memory().percent / 100.0

    def url_reachable(self, url: str, timeout: float) -> bool:
        """Return True when *url* answers at all (any HTTP status)."""
        try:
            requests.head(url, timeout=timeout, allow_redirects=True)
            return True
        except requests.RequestException:
            return False

    def http_status(self, url: str, timeout: float) -> int | None:
        """GET *url* and return its status code, or None when unreachable."""
        try:
            resp = requests.get(url, timeout=timeout)
            return resp.status_code
        except requests.RequestException:
            return None

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def user_exists(self, name: str) -> bool:
        try:
            pwd.getpwnam(name)
            return True
        except KeyError:
            return False

    def file_mode(self, path: str | Path) -> int | None:
        """Return the permission bits of *path*, or None if it is missing."""
        try:
            return os.stat(path).st_mode & 0o777
        except FileNotFoundError:
            return None


def _existing_parent(path: str | Path) -> Path:
    p = Path(path)
    while not p.exists() and p != p.parent:
        p = p.parent
    return p


class Deadline:
    """Wall-clock budget for one phase.

    Parameters
    ----------
    seconds:
        Budget length.  ``None`` means unbounded.
    label:
        Phase name used in :class:`PhaseTimeout` messages.
    """

    def __init__(self, seconds: float | None, label: str = "phase") -> None:
        self.label = label
        self.seconds = seconds
        self._expires = None if seconds is None else time.monotonic() + seconds

    def remaining(self, cap: float | None = None) -> float | None:
        """Seconds left, optionally capped.  Raises once expired."""
        if self._expires is None:
            return cap
        left = self._expires - time.monotonic()
        if left <= 0:
            raise PhaseTimeout(f"{self.label} exceeded {self.seconds:.1f}s")
        return left if cap is None else min(left, cap)

    def check(self) -> None:
        self.remaining()


class CancelToken:
    """Cooperative cancellation flag shared by the pipeline phases."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled by operator") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DeploymentCancelled(self.reason)

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True early if cancelled."""
        return self._event.wait(seconds)
