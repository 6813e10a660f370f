"""OrchestrationDriver: the deploy state machine.

States run strictly forward::

    resolving -> preflight_checking -> installing_dependencies
              -> executing -> verifying_health -> succeeded

Any failure after pre-flight moves to ``rolling_back`` and then
``failed``; failures while resolving or checking go straight to
``failed`` because nothing on the host has changed yet.  A
:class:`DeploymentReport` is produced on entering either terminal state.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, TypeVar

from infracore.deployment.config_manager import ConfigResolver
from infracore.deployment.controller import ServiceController
from infracore.deployment.environment import EnvironmentPreparer
from infracore.deployment.errors import (
    DeploymentCancelled,
    DeploymentError,
    HealthCheckTimeout,
    NotDeployed,
    RollbackIncomplete,
)
from infracore.deployment.executor import DeploymentExecutor
from infracore.deployment.health import HealthVerifier, default_probes
from infracore.deployment.host import CancelToken, CommandRunner, Deadline, HostInspector
from infracore.deployment.installer import DependencyInstaller, default_requirements
from infracore.deployment.inventory import ServiceInventory, default_inventory
from infracore.deployment.models import (
    MUTATING_PHASES,
    DeploymentConfig,
    DeployMode,
    Phase,
)
from infracore.deployment.notifications import ConsoleNotifier, NotificationProvider, make_event
from infracore.deployment.preflight import PreflightChecker
from infracore.deployment.report import DeploymentReport, PhaseOutcome, ReplayedStep
from infracore.deployment.rollback import RollbackFailure, RollbackManager
from infracore.deployment.snapshots import SnapshotStore
from infracore.deployment.strategies import ActivationStrategy, strategy_for

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrchestrationDriver:
    """Run one deployment through every phase and report the outcome.

    Components left as ``None`` are built from the resolved configuration,
    so tests can inject fakes for any subset of them.

    Parameters
    ----------
    resolver:
        Produces the configuration snapshot.
    inventory:
        Managed services.  Defaults to the five InfraCore services.
    notifier:
        Receives phase, rollback and report events.
    cancel_token:
        External abort signal, checked at every phase boundary and
        between services and health attempts.
    sleep:
        Wait between health attempts.
    """

    def __init__(
        self,
        resolver: ConfigResolver,
        *,
        inventory: ServiceInventory | None = None,
        runner: CommandRunner | None = None,
        inspector: HostInspector | None = None,
        strategy: ActivationStrategy | None = None,
        preflight: PreflightChecker | None = None,
        installer: DependencyInstaller | None = None,
        preparer: EnvironmentPreparer | None = None,
        verifier: HealthVerifier | None = None,
        snapshots: SnapshotStore | None = None,
        notifier: NotificationProvider | None = None,
        cancel_token: CancelToken | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self.resolver = resolver
        self.inventory = inventory
        self.runner = runner
        self.inspector = inspector
        self.strategy = strategy
        self.preflight = preflight
        self.installer = installer
        self.preparer = preparer
        self.verifier = verifier
        self.snapshots = snapshots
        self.notifier = notifier or ConsoleNotifier()
        self.cancel_token = cancel_token or CancelToken()
        self._sleep = sleep

        self.config: DeploymentConfig | None = None
        self.phase: Phase | None = None
        self.rollback = RollbackManager()
        self._outcomes: list[PhaseOutcome] = []

    # -- Assembly -------------------------------------------------------------

    def _build(self, config: DeploymentConfig) -> None:
        self.config = config
        logging.getLogger("infracore").setLevel(config.log_level.upper())
        if self.runner is None:
            self.runner = CommandRunner(default_timeout=config.timeouts.command_s)
        if self.inspector is None:
            self.inspector = HostInspector()
        if self.inventory is None:
            self.inventory = default_inventory(config)
        if self.strategy is None:
            self.strategy = strategy_for(config, self.runner)
        if self.preflight is None:
            self.preflight = PreflightChecker(self.inspector)
        if self.installer is None:
            self.installer = DependencyInstaller(
                self.runner,
                self.inspector,
                default_requirements(config.strategy, checkout=bool(config.source.repo_url)),
                config.preflight.package_managers,
            )
        if self.snapshots is None:
            self.snapshots = SnapshotStore(config.paths)
        if self.preparer is None:
            self.preparer = EnvironmentPreparer(
                config, self.runner, self.inspector, self.snapshots,
            )
        if self.verifier is None:
            probes = default_probes(
                config, self.strategy, self.inspector,
                self.preparer.expected_permissions(),
            )
            self.verifier = HealthVerifier(
                probes, config.health, sleep=self._sleep, cancel_token=self.cancel_token,
            )

    def resolve(self) -> DeploymentConfig:
        """Resolve the configuration once and assemble the components."""
        if self.config is None:
            self._build(self.resolver.resolve())
        return self.config

    def controller(self) -> ServiceController:
        """Return a controller bound to this driver's components."""
        config = self.resolve()
        return ServiceController(self.strategy, self.inventory, config, self.verifier)

    # -- Events ---------------------------------------------------------------

    def _emit(self, event_type: str, **details: Any) -> None:
        try:
            self.notifier.notify(make_event(event_type, **details))
        except Exception as exc:
            logger.warning("Notifier %s failed: %s", type(self.notifier).__name__, exc)

    def _run_phase(self, phase: Phase, action: Callable[[], T]) -> T:
        self.phase = phase
        logger.info("== %s ==", phase.value)
        self._emit("phase_started", phase=phase.value)
        started = time.monotonic()
        try:
            self.cancel_token.raise_if_cancelled()
            result = action()
        except KeyboardInterrupt:
            self.cancel_token.cancel("interrupted")
            self._phase_failed(phase, started, "interrupted")
            raise DeploymentCancelled("interrupted") from None
        except Exception as exc:
            self._phase_failed(phase, started, str(exc))
            raise
        elapsed = time.monotonic() - started
        self._outcomes.append(PhaseOutcome(phase=phase, elapsed_s=elapsed))
        self._emit("phase_succeeded", phase=phase.value, elapsed_s=round(elapsed, 3))
        return result

    def _phase_failed(self, phase: Phase, started: float, detail: str) -> None:
        elapsed = time.monotonic() - started
        self._outcomes.append(PhaseOutcome(
            phase=phase, status="failed", elapsed_s=elapsed, detail=detail,
        ))
        self._emit("phase_failed", phase=phase.value, detail=detail)

    # -- Phases ---------------------------------------------------------------

    def _install(self, mode: DeployMode) -> None:
        deadline = Deadline(self.config.timeouts.install_s, Phase.INSTALLING_DEPENDENCIES.value)
        self.installer.install(self.rollback, deadline, self.cancel_token)
        self.cancel_token.raise_if_cancelled()
        self.preparer.prepare(self.rollback, mode, deadline)

    def _execute(self, mode: DeployMode) -> list[str]:
        deadline = Deadline(self.config.timeouts.execute_s, Phase.EXECUTING.value)
        executor = DeploymentExecutor(self.strategy, self.rollback)
        activated = executor.execute(self.inventory, deadline, self.cancel_token)
        self.preparer.record_release(self.rollback, activated, mode)
        return activated

    def deploy(self) -> DeploymentReport:
        """Run the pipeline to a terminal state and return its report.

        Phase errors never escape; they are captured in the report.
        Use :meth:`DeploymentReport.raise_for_status` to turn a failed
        report into an exception.
        """
        started = time.monotonic()
        self._outcomes = []
        self.rollback = RollbackManager()
        mode: DeployMode | None = None
        health_score: float | None = None
        failure: BaseException | None = None

        try:
            self._run_phase(Phase.RESOLVING, self.resolve)
            checked = self._run_phase(
                Phase.PREFLIGHT_CHECKING,
                lambda: self.preflight.run(self.config, self.inventory),
            )
            mode = checked.mode
            self._run_phase(Phase.INSTALLING_DEPENDENCIES, lambda: self._install(mode))
            self._run_phase(Phase.EXECUTING, lambda: self._execute(mode))
            health = self._run_phase(
                Phase.VERIFYING_HEALTH, lambda: self.verifier.verify(list(self.inventory)),
            )
            health_score = health.score
        except HealthCheckTimeout as exc:
            health_score = exc.last_score
            failure = exc
        except DeploymentError as exc:
            failure = exc
        except Exception as exc:
            logger.exception("Unexpected error during %s", self.phase.value if self.phase else "startup")
            failure = exc

        if failure is None:
            return self._succeed(started, mode, health_score)
        return self._fail(failure, started, mode, health_score)

    def _succeed(
        self, started: float, mode: DeployMode | None, health_score: float | None,
    ) -> DeploymentReport:
        self.rollback.discard()
        self.preparer.finish()
        self.phase = Phase.SUCCEEDED
        if self.config.backup.enabled:
            removed = self.snapshots.prune(self.config.backup.retention_days)
            if removed:
                logger.info("Pruned %d old snapshot(s)", len(removed))
        report = self._report(started, mode, health_score)
        logger.info("Deployment succeeded in %.1fs", report.elapsed_s)
        self._emit("report", final_state=report.final_state.value, report=report.model_dump(mode="json"))
        return report

    def _fail(
        self,
        failure: BaseException,
        started: float,
        mode: DeployMode | None,
        health_score: float | None,
    ) -> DeploymentReport:
        failed_phase = self.phase or Phase.RESOLVING
        logger.error("Phase %s failed: %s", failed_phase.value, failure)

        failures: list[RollbackFailure] = []
        replayed: list[ReplayedStep] = []
        rolled_back = failed_phase in MUTATING_PHASES
        if rolled_back:
            self.phase = Phase.ROLLING_BACK
            self._emit("phase_started", phase=Phase.ROLLING_BACK.value)
            failures = self.rollback.replay()
            failed_labels = {f.label for f in failures}
            for step in self.rollback.replayed:
                ok = step.label not in failed_labels
                replayed.append(ReplayedStep(
                    label=step.label, phase=step.phase, service=step.service, reversed=ok,
                ))
                self._emit("rollback_step", label=step.label, phase=step.phase, reversed=ok)

        unreversed = tuple(f.label for f in failures)
        if unreversed:
            logger.error("%s", RollbackIncomplete(unreversed))

        self.phase = Phase.FAILED
        report = self._report(
            started,
            mode,
            health_score,
            failed_phase=failed_phase,
            cause=str(failure),
            error_type=type(failure).__name__,
            rollback_performed=rolled_back,
            rollback_steps_replayed=sum(1 for s in replayed if s.service),
            environment_steps_replayed=sum(1 for s in replayed if not s.service),
            replayed_steps=tuple(replayed),
            unreversed_steps=unreversed,
        )
        self._emit("report", final_state=report.final_state.value, report=report.model_dump(mode="json"))
        return report

    def _report(
        self,
        started: float,
        mode: DeployMode | None,
        health_score: float | None,
        **failure: Any,
    ) -> DeploymentReport:
        return DeploymentReport(
            final_state=self.phase,
            phases=tuple(self._outcomes),
            health_score=health_score,
            elapsed_s=time.monotonic() - started,
            strategy=self.config.strategy.value if self.config else "",
            mode=mode,
            services=tuple(self.inventory.names()) if self.inventory else (),
            **failure,
        )

    # -- Release rollback -----------------------------------------------------

    def rollback_release(self, label: str | None = None) -> dict[str, Any]:
        """Stop services, restore a snapshot and start services again.

        Restores the newest snapshot unless *label* names one.

        Raises
        ------
        NotDeployed
            When no snapshot exists, or *label* is unknown.
        """
        self.resolve()
        if label is None:
            latest = self.snapshots.latest()
            if latest is None:
                raise NotDeployed(f"No snapshots under {self.config.paths.backups_dir}")
            label = latest["label"]
        elif label not in {s["label"] for s in self.snapshots.list_snapshots()}:
            raise NotDeployed(f"Snapshot not found: {label}")

        controller = self.controller()
        if self.config.paths.release_record.is_file():
            controller.stop()
        if not self.snapshots.restore(label):
            raise NotDeployed(f"Snapshot not found: {label}")
        started = controller.start()
        logger.info("Rolled back to %s (%d service(s) started)", label, len(started))
        self._emit("rollback_release", label=label, detail=f"restored {label}")
        return {"label": label, "services": started}
