"""Tests for the deployment executor."""

from __future__ import annotations

import time

import pytest

from infracore.deployment.errors import DeploymentCancelled, ExecutionFailed
from infracore.deployment.executor import DeploymentExecutor
from infracore.deployment.host import CancelToken, Deadline
from infracore.deployment.inventory import ServiceDescriptor, ServiceInventory
from infracore.deployment.rollback import RollbackManager
from infracore.testing import FailureInjector, RecordingStrategy


def _inventory(count=3):
    return ServiceInventory([
        ServiceDescriptor(name=f"svc{rank}", rank=rank, ports=(9000 + rank,), probe="process")
        for rank in range(count, 0, -1)
    ])


# ── DeploymentExecutor ───────────────────────────────────────────────────────

class TestDeploymentExecutor:

    def test_activates_in_rank_order(self):
        strategy = RecordingStrategy()
        rollback = RollbackManager()
        activated = DeploymentExecutor(strategy, rollback).execute(_inventory())

        assert activated == ["svc1", "svc2", "svc3"]
        assert [e for e in strategy.events if e.startswith("activate")] == [
            "activate svc1", "activate svc2", "activate svc3",
        ]
        assert strategy.events[0] == "begin"
        assert [s.label for s in rollback.steps] == ["stop svc1", "stop svc2", "stop svc3"]
        assert [s.service for s in rollback.steps] == ["svc1", "svc2", "svc3"]

    def test_failure_stops_further_activation(self):
        strategy = RecordingStrategy(injector=FailureInjector({"activate:svc2": 1}))
        rollback = RollbackManager()
        executor = DeploymentExecutor(strategy, rollback)

        with pytest.raises(ExecutionFailed) as exc_info:
            executor.execute(_inventory())
        assert exc_info.value.service == "svc2"
        assert "injected activation failure" in exc_info.value.cause
        assert "activate svc3" not in strategy.events
        assert [s.label for s in rollback.steps] == ["stop svc1"]
        assert executor.activated == ["svc1"]
        assert "svc2" not in strategy.running

    def test_prepare_failure_activates_nothing(self):
        strategy = RecordingStrategy(injector=FailureInjector({"prepare:svc3": 1}))
        rollback = RollbackManager()
        with pytest.raises(ExecutionFailed) as exc_info:
            DeploymentExecutor(strategy, rollback).execute(_inventory())
        assert exc_info.value.service == "svc3"
        assert not [e for e in strategy.events if e.startswith("activate")]
        assert len(rollback) == 0

    def test_cancellation_between_services(self):
        token = CancelToken()

        class CancellingStrategy(RecordingStrategy):
            def activate(self, service, deadline):
                step = super().activate(service, deadline)
                token.cancel("operator abort")
                return step

        strategy = CancellingStrategy()
        rollback = RollbackManager()
        with pytest.raises(DeploymentCancelled, match="operator abort"):
            DeploymentExecutor(strategy, rollback).execute(_inventory(), cancel_token=token)
        assert [s.label for s in rollback.steps] == ["stop svc1"]

    def test_expired_deadline_fails_next_service(self):
        class SlowStrategy(RecordingStrategy):
            def activate(self, service, deadline):
                step = super().activate(service, deadline)
                time.sleep(0.3)
                return step

        strategy = SlowStrategy()
        rollback = RollbackManager()
        with pytest.raises(ExecutionFailed, match="executing exceeded 0.2s") as exc_info:
            DeploymentExecutor(strategy, rollback).execute(
                _inventory(), Deadline(0.2, "executing"),
            )
        assert exc_info.value.service == "svc2"
        assert "activate svc2" not in strategy.events
        assert [s.label for s in rollback.steps] == ["stop svc1"]
