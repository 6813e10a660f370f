"""Tests for day-two service control."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

import pytest

from infracore.deployment.config_manager import ConfigResolver
from infracore.deployment.controller import ServiceController
from infracore.deployment.errors import ConfigInvalid, NotDeployed
from infracore.deployment.health import HealthVerifier
from infracore.deployment.inventory import ServiceDescriptor, ServiceInventory
from infracore.deployment.models import HealthDimension
from infracore.testing import RecordingStrategy, StaticProbe


def _config(root: Path):
    return ConfigResolver(overrides={
        "domain": "infra.example.com",
        "admin_contact": "ops@example.com",
        "secrets.signing_key": "key",
        "paths.deploy_dir": str(root / "opt"),
        "paths.config_dir": str(root / "etc"),
    }).resolve()


def _inventory():
    return ServiceInventory([
        ServiceDescriptor(name="gate", rank=2, ports=(80,), probe="process"),
        ServiceDescriptor(name="console", rank=1, ports=(8082,), probe="process"),
        ServiceDescriptor(name="snap", rank=3, ports=(8086,), probe="process"),
    ])


def _release(config, services=("console", "gate", "snap")):
    config.paths.current_dir.mkdir(parents=True, exist_ok=True)
    config.paths.release_record.write_text(json.dumps({"services": list(services)}))


def _controller(root: Path, strategy=None, deployed=True, verifier=None):
    config = _config(root)
    if deployed:
        _release(config)
    return ServiceController(strategy or RecordingStrategy(), _inventory(), config, verifier)


# ── ServiceController ────────────────────────────────────────────────────────

class TestServiceController:

    def test_every_operation_requires_a_release(self):
        with tempfile.TemporaryDirectory() as d:
            strategy = RecordingStrategy()
            controller = _controller(Path(d), strategy, deployed=False)
            for op in (controller.start, controller.stop, controller.restart,
                       controller.logs, controller.status):
                with pytest.raises(NotDeployed):
                    op()
            assert strategy.events == []

    def test_start_in_rank_order(self):
        with tempfile.TemporaryDirectory() as d:
            strategy = RecordingStrategy()
            assert _controller(Path(d), strategy).start() == ["console", "gate", "snap"]
            assert strategy.events == ["start console", "start gate", "start snap"]

    def test_stop_in_reverse_order(self):
        with tempfile.TemporaryDirectory() as d:
            assert _controller(Path(d)).stop() == ["snap", "gate", "console"]

    def test_single_service(self):
        with tempfile.TemporaryDirectory() as d:
            strategy = RecordingStrategy()
            controller = _controller(Path(d), strategy)
            assert controller.stop("gate") == ["gate"]
            assert controller.restart("gate") == ["gate"]
            assert strategy.events == ["stop gate", "restart gate"]

    def test_unknown_service(self):
        with tempfile.TemporaryDirectory() as d:
            with pytest.raises(ConfigInvalid, match="unknown service"):
                _controller(Path(d)).start("nope")

    def test_restart_all_stops_then_starts(self):
        with tempfile.TemporaryDirectory() as d:
            strategy = RecordingStrategy()
            _controller(Path(d), strategy).restart()
            assert strategy.events == [
                "stop snap", "stop gate", "stop console",
                "start console", "start gate", "start snap",
            ]

    def test_logs_are_prefixed(self):
        with tempfile.TemporaryDirectory() as d:
            strategy = RecordingStrategy(logs={
                "console": ["one", "two", "three"],
                "gate": ["ready"],
            })
            controller = _controller(Path(d), strategy)
            assert list(controller.logs(lines=2)) == [
                "[console] two", "[console] three", "[gate] ready",
            ]
            assert list(controller.logs("gate")) == ["[gate] ready"]

    def test_status(self):
        with tempfile.TemporaryDirectory() as d:
            strategy = RecordingStrategy()
            strategy.running = {"console": True, "gate": True}
            strategy.installed = {"console", "gate", "snap"}
            verifier = HealthVerifier([StaticProbe(dim) for dim in HealthDimension])
            snapshot = _controller(Path(d), strategy, verifier=verifier).status()

            assert snapshot.release["services"] == ["console", "gate", "snap"]
            assert [s.running for s in snapshot.services] == [True, True, False]
            assert all(s.installed for s in snapshot.services)
            assert not snapshot.all_running
            assert snapshot.health.ready
