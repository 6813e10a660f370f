"""DeploymentReport model and DEPLOYMENT_REPORT.md generation."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from infracore.deployment.errors import DeploymentError, RollbackIncomplete
from infracore.deployment.models import DeployMode, Phase


class PhaseOutcome(BaseModel):
    """Result of one pipeline phase."""

    model_config = ConfigDict(frozen=True)

    phase: Phase
    status: str = "succeeded"  # succeeded, failed
    elapsed_s: float = 0.0
    detail: str = ""


class ReplayedStep(BaseModel):
    """A rollback step that was replayed, with the phase that recorded it."""

    model_config = ConfigDict(frozen=True)

    label: str
    phase: str = ""
    service: str = ""
    reversed: bool = True


class DeploymentReport(BaseModel):
    """Summary produced when the pipeline reaches a terminal state."""

    model_config = ConfigDict(frozen=True)

    final_state: Phase
    phases: tuple[PhaseOutcome, ...] = ()
    failed_phase: Optional[Phase] = None
    cause: str = ""
    error_type: str = ""
    health_score: Optional[float] = None
    elapsed_s: float = 0.0
    strategy: str = ""
    mode: Optional[DeployMode] = None
    services: tuple[str, ...] = ()
    rollback_performed: bool = False
    rollback_steps_replayed: int = 0
    """Replayed undos of service activations."""

    environment_steps_replayed: int = 0
    """Replayed undos of host preparation (packages, directories, files)."""

    replayed_steps: tuple[ReplayedStep, ...] = ()
    unreversed_steps: tuple[str, ...] = ()
    finished_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )

    @property
    def succeeded(self) -> bool:
        return self.final_state is Phase.SUCCEEDED

    @property
    def fully_restored(self) -> bool:
        """True unless a rollback left steps unreversed."""
        return not self.unreversed_steps

    def to_markdown(self) -> str:
        """Generate DEPLOYMENT_REPORT.md content."""
        lines = [
            "# Deployment Report",
            "",
            f"**Finished:** {self.finished_at}",
            f"**Final state:** {self.final_state.value}",
            f"**Strategy:** {self.strategy or 'n/a'}",
            f"**Mode:** {self.mode.value if self.mode else 'n/a'}",
            f"**Elapsed:** {self.elapsed_s:.1f}s",
        ]
        if self.health_score is not None:
            lines.append(f"**Health score:** {self.health_score:.2f}")
        lines.append("")

        lines.append("## Phases")
        lines.append("")
        for outcome in self.phases:
            detail = f": {outcome.detail}" if outcome.detail else ""
            lines.append(
                f"- {outcome.phase.value} [{outcome.status}] "
                f"({outcome.elapsed_s:.1f}s){detail}"
            )
        lines.append("")

        if self.failed_phase is not None:
            lines.append("## Failure")
            lines.append("")
            lines.append(f"- Phase: {self.failed_phase.value}")
            lines.append(f"- Error: {self.error_type}: {self.cause}")
            if self.rollback_performed:
                lines.append(f"- Rollback steps replayed: {self.rollback_steps_replayed}")
                lines.append(
                    f"- Environment steps replayed: {self.environment_steps_replayed}"
                )
                lines.append(
                    f"- Fully restored: {'Yes' if self.fully_restored else 'NO'}"
                )
                for label in self.unreversed_steps:
                    lines.append(f"  - manual action needed: {label}")
            else:
                lines.append("- Rollback: not needed (host untouched)")
            lines.append("")

        return "\n".join(lines)

    def to_json(self) -> str:
        """Return structured JSON report."""
        data = self.model_dump(mode="json")
        data["fully_restored"] = self.fully_restored
        return json.dumps(data, indent=2)

    def replayed_in(self, phase: Phase | str) -> list[str]:
        """Labels of replayed steps recorded during *phase*."""
        key = phase.value if isinstance(phase, Phase) else phase
        return [s.label for s in self.replayed_steps if s.phase == key]

    def raise_for_status(self) -> None:
        """Raise if the run failed.

        Raises
        ------
        RollbackIncomplete
            When rollback left steps unreversed.
        DeploymentError
            For any other failed run.
        """
        if self.unreversed_steps:
            raise RollbackIncomplete(self.unreversed_steps)
        if not self.succeeded:
            phase = self.failed_phase.value if self.failed_phase else "unknown"
            raise DeploymentError(f"{phase} failed: {self.cause}")
