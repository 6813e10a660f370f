"""Tests for pre-flight checks."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from infracore.deployment.config_manager import ConfigResolver
from infracore.deployment.errors import PreflightFailed
from infracore.deployment.inventory import ServiceDescriptor, ServiceInventory
from infracore.deployment.models import DeployMode
from infracore.deployment.preflight import (
    CheckResult,
    PreflightCheck,
    PreflightChecker,
)
from infracore.testing import FakeInspector


def _config(root: Path, **extra):
    values = {
        "domain": "infra.example.com",
        "admin_contact": "ops@example.com",
        "secrets.signing_key": "key",
        "paths.deploy_dir": str(root / "opt" / "infra-core"),
        "paths.config_dir": str(root / "etc" / "infra-core"),
    }
    values.update(extra)
    return ConfigResolver(overrides=values).resolve()


def _inventory():
    return ServiceInventory([
        ServiceDescriptor(name="console", rank=1, ports=(8082,), probe="process"),
        ServiceDescriptor(name="gate", rank=2, ports=(80, 443), probe="process"),
    ])


# ── PreflightChecker ─────────────────────────────────────────────────────────

class TestPreflightChecker:

    def test_healthy_host_passes_fresh(self):
        with tempfile.TemporaryDirectory() as d:
            result = PreflightChecker(FakeInspector()).run(_config(Path(d)), _inventory())
            assert result.passed
            assert result.mode is DeployMode.FRESH
            assert {c.name for c in result.checks} >= {
                "existing_deployment", "root_privileges", "ports_available", "disk_space",
                "memory", "host_tools", "network",
            }

    def test_every_failure_reported(self):
        inspector = FakeInspector(
            tools=(),
            busy_ports=(80,),
            disk_free=10 * 1024 * 1024,
            memory_available=64 * 1024 * 1024,
            reachable=False,
        )
        with tempfile.TemporaryDirectory() as d:
            with pytest.raises(PreflightFailed) as exc_info:
                PreflightChecker(inspector).run(_config(Path(d)), _inventory())
        names = {f.name for f in exc_info.value.failures}
        assert names == {"ports_available", "disk_space", "memory", "host_tools", "network"}
        assert len(exc_info.value.failures) == 5
        assert "5 pre-flight check(s) failed" in str(exc_info.value)

    def test_upgrade_accepts_bound_ports(self):
        with tempfile.TemporaryDirectory() as d:
            config = _config(Path(d))
            config.paths.current_dir.mkdir(parents=True)
            config.paths.release_record.write_text("{}")
            result = PreflightChecker(FakeInspector(busy_ports=(80, 8082))).run(
                config, _inventory(),
            )
            assert result.mode is DeployMode.UPGRADE
            ports = next(c for c in result.checks if c.name == "ports_available")
            assert ports.passed
            assert ports.details["busy"] == [8082, 80]

    def test_binary_strategy_needs_systemctl(self):
        with tempfile.TemporaryDirectory() as d:
            config = _config(Path(d), strategy="binary")
            with pytest.raises(PreflightFailed, match="systemctl"):
                PreflightChecker(FakeInspector(tools=("curl", "apt-get"))).run(
                    config, _inventory(),
                )

    def test_missing_package_manager(self):
        with tempfile.TemporaryDirectory() as d:
            with pytest.raises(PreflightFailed, match="package manager"):
                PreflightChecker(FakeInspector(tools=("curl",))).run(
                    _config(Path(d)), _inventory(),
                )

    def test_non_root_user_rejected(self):
        with tempfile.TemporaryDirectory() as d:
            with pytest.raises(PreflightFailed) as exc_info:
                PreflightChecker(FakeInspector(root=False)).run(_config(Path(d)), _inventory())
        assert [f.name for f in exc_info.value.failures] == ["root_privileges"]
        assert "must run as root" in str(exc_info.value)

    def test_root_requirement_can_be_disabled(self):
        with tempfile.TemporaryDirectory() as d:
            config = _config(Path(d), **{"preflight.require_root": False})
            result = PreflightChecker(FakeInspector(root=False)).run(config, _inventory())
            assert result.passed

    def test_raising_check_becomes_failure(self):

        class Broken(PreflightCheck):
            name = "broken"

            def check(self, ctx) -> CheckResult:
                raise RuntimeError("boom")

        checker = PreflightChecker(FakeInspector(), checks=[Broken()])
        with tempfile.TemporaryDirectory() as d:
            with pytest.raises(PreflightFailed) as exc_info:
                checker.run(_config(Path(d)), _inventory())
        assert exc_info.value.failures[0].message == "broken errored: boom"

    def test_add_check(self):
        class AlwaysFails(PreflightCheck):
            name = "custom"

            def check(self, ctx) -> CheckResult:
                return self._result(False, "custom requirement unmet")

        checker = PreflightChecker(FakeInspector())
        checker.add_check(AlwaysFails())
        with tempfile.TemporaryDirectory() as d:
            with pytest.raises(PreflightFailed, match="custom requirement unmet"):
                checker.run(_config(Path(d)), _inventory())

    def test_checks_do_not_touch_the_host(self):
        with tempfile.TemporaryDirectory() as d:
            config = _config(Path(d))
            PreflightChecker(FakeInspector()).run(config, _inventory())
            assert not config.paths.deploy_dir.exists()
            assert not config.paths.config_dir.exists()
