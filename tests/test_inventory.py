"""Tests for service descriptors and the inventory."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
import yaml

from infracore.deployment.config_manager import ConfigResolver
from infracore.deployment.errors import ConfigInvalid
from infracore.deployment.inventory import (
    ServiceDescriptor,
    ServiceInventory,
    default_inventory,
    load_inventory,
)


def _svc(name, rank, ports=(), **kw):
    kw.setdefault("probe", "process")
    return ServiceDescriptor(name=name, rank=rank, ports=ports, **kw)


# ── ServiceInventory ─────────────────────────────────────────────────────────

class TestServiceInventory:

    def test_iterates_in_rank_order(self):
        inv = ServiceInventory([_svc("c", 3), _svc("a", 1), _svc("b", 2)])
        assert inv.names() == ["a", "b", "c"]
        assert len(inv) == 3
        assert "b" in inv

    def test_duplicates_reported_together(self):
        with pytest.raises(ConfigInvalid) as exc_info:
            ServiceInventory([
                _svc("a", 1, (80,)),
                _svc("a", 2, (81,)),
                _svc("b", 2, (80,)),
            ])
        errors = " ".join(exc_info.value.errors)
        assert "duplicate service name: a" in errors
        assert "rank 2" in errors
        assert "port 80" in errors

    def test_empty_inventory_rejected(self):
        with pytest.raises(ConfigInvalid):
            ServiceInventory([])

    def test_select(self):
        inv = ServiceInventory([_svc("a", 1), _svc("b", 2)])
        assert [s.name for s in inv.select()] == ["a", "b"]
        assert [s.name for s in inv.select("b")] == ["b"]
        with pytest.raises(ConfigInvalid, match="unknown service"):
            inv.select("zzz")

    def test_http_probe_needs_path_and_port(self):
        with pytest.raises(ConfigInvalid):
            ServiceInventory.from_records([{"name": "a", "rank": 1, "probe": "http"}])

    def test_health_url_and_unit_name(self):
        svc = ServiceDescriptor(name="console", rank=1, ports=(8082,), health_path="/api/v1/health")
        assert svc.health_url == "http://127.0.0.1:8082/api/v1/health"
        assert svc.unit_name == "infra-core-console"
        assert _svc("snap", 5, (8086,)).health_url is None


# ── Loading ──────────────────────────────────────────────────────────────────

class TestLoadInventory:

    def test_load_yaml_mapping(self):
        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / "services.yaml"
            path.write_text(yaml.safe_dump({"services": [
                {"name": "api", "rank": 1, "ports": [9000], "health_path": "/health",
                 "container": {"image": "api:1"}},
                {"name": "worker", "rank": 2, "probe": "process",
                 "binary": {"executable": "/usr/bin/worker"}},
            ]}))
            inv = load_inventory(path)
            assert inv.names() == ["api", "worker"]
            assert inv.get("api").container.image == "api:1"

    def test_unreadable_file(self):
        with pytest.raises(ConfigInvalid, match="cannot read"):
            load_inventory("/nonexistent/services.yaml")


# ── Default inventory ────────────────────────────────────────────────────────

class TestDefaultInventory:

    def _config(self, **extra):
        values = {
            "domain": "infra.example.com",
            "admin_contact": "ops@example.com",
            "secrets.signing_key": "key",
        }
        values.update(extra)
        return ConfigResolver(overrides=values).resolve()

    def test_five_services_console_first(self):
        inv = default_inventory(self._config())
        assert inv.names() == ["console", "gate", "orchestrator", "probe", "snap"]
        assert inv.get("gate").ports == (80, 443)
        assert inv.get("console").health_path == "/api/v1/health"
        assert inv.get("orchestrator").ports == (8084,)
        assert inv.get("snap").health_url == "http://127.0.0.1:8086/health"

    def test_unexposed_api_port_drops_console(self):
        inv = default_inventory(self._config(**{"ports.api": None}))
        assert "console" not in inv
        assert inv.names()[0] == "gate"
