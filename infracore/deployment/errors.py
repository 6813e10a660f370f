"""Exception hierarchy for the deployment pipeline."""

from __future__ import annotations

from typing import Sequence


class DeploymentError(Exception):
    """Base class for every failure surfaced by the deployment pipeline."""


class ConfigInvalid(DeploymentError):
    """Raised when the merged configuration cannot produce a snapshot."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class PreflightFailed(DeploymentError):
    """Raised when one or more pre-flight checks failed.

    ``failures`` holds every failed check, not only the first one.
    """

    def __init__(self, failures: Sequence[object]) -> None:
        self.failures = list(failures)
        messages = [getattr(f, "message", str(f)) for f in self.failures]
        super().__init__(
            f"{len(self.failures)} pre-flight check(s) failed: " + "; ".join(messages)
        )


class DependencyInstallFailed(DeploymentError):
    """Raised on the first requirement that could not be installed."""

    def __init__(self, name: str, cause: str) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"Failed to install {name}: {cause}")


class ExecutionFailed(DeploymentError):
    """Raised when a service could not be activated."""

    def __init__(self, service: str, cause: str) -> None:
        self.service = service
        self.cause = cause
        super().__init__(f"Failed to activate {service}: {cause}")


class HealthCheckTimeout(DeploymentError):
    """Raised when the attempt budget ran out before readiness."""

    def __init__(self, last_score: float, attempts: int) -> None:
        self.last_score = last_score
        self.attempts = attempts
        super().__init__(
            f"Services not ready after {attempts} attempt(s) "
            f"(last score {last_score:.2f})"
        )


class RollbackIncomplete(DeploymentError):
    """Raised when some undo actions failed and need manual intervention."""

    def __init__(self, steps: Sequence[str]) -> None:
        self.steps = list(steps)
        super().__init__(
            "Rollback could not reverse: " + ", ".join(self.steps)
        )


class NotDeployed(DeploymentError):
    """Raised by controller operations when no release is installed."""


class DeploymentCancelled(DeploymentError):
    """Raised when an external abort was requested."""


class PhaseTimeout(DeploymentError):
    """Raised when a phase ran past its deadline."""


class CommandError(DeploymentError):
    """Raised when an external command returns a non-zero exit code."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"{' '.join(self.command)} failed (rc={returncode}): {stderr.strip()}"
        )


class CommandTimeout(CommandError):
    """Raised when an external command did not finish in time."""

    def __init__(self, args: Sequence[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(args, -1, f"timed out after {timeout:.1f}s")
