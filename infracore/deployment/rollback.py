"""RollbackManager: append-only undo log replayed in reverse on failure."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


def _noop() -> None:
    return None


@dataclass(frozen=True)
class RollbackStep:
    """A forward action already performed, paired with its reverse."""

    label: str
    undo: Callable[[], None] = _noop
    action: str = ""
    phase: str = ""
    service: str = ""
    """Set on steps that undo a service activation."""

    recorded_at: float = field(default_factory=time.time)

    @classmethod
    def noop(cls, label: str, action: str = "", phase: str = "") -> RollbackStep:
        """A step whose effect is safe to leave in place."""
        return cls(label=label, undo=_noop, action=action, phase=phase)

    @property
    def is_noop(self) -> bool:
        return self.undo is _noop


@dataclass(frozen=True)
class RollbackFailure:
    """A step whose reverse action raised during replay."""

    label: str
    error: str


class RollbackManager:
    """Record reversible actions and replay them LIFO on failure.

    Only the phase currently executing appends, so the log needs no lock.
    """

    def __init__(self) -> None:
        self._steps: list[RollbackStep] = []
        self.replayed: list[RollbackStep] = []

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def steps(self) -> list[RollbackStep]:
        return list(self._steps)

    def record(self, step: RollbackStep) -> None:
        """Append *step* to the log."""
        self._steps.append(step)
        logger.debug("Recorded rollback step %d: %s", len(self._steps), step.label)

    def replay(self) -> list[RollbackFailure]:
        """Run every reverse action, newest first, and drain the log.

        A failing reverse action does not stop the replay.  Returns the
        steps that could not be reversed.
        """
        failures: list[RollbackFailure] = []
        total = len(self._steps)
        if total:
            logger.warning("Rolling back %d step(s)", total)

        while self._steps:
            step = self._steps.pop()
            try:
                step.undo()
            except Exception as exc:
                logger.error("Rollback step failed: %s (%s)", step.label, exc)
                failures.append(RollbackFailure(label=step.label, error=str(exc)))
            else:
                logger.info("Rolled back: %s", step.label)
            self.replayed.append(step)

        return failures

    def discard(self) -> None:
        """Drop the log without replaying it (successful run)."""
        if self._steps:
            logger.debug("Discarding %d rollback step(s)", len(self._steps))
        self._steps.clear()
