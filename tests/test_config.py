"""Tests for configuration resolution."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

import pytest
import yaml

from infracore.deployment.config_manager import (
    ConfigResolver,
    describe_keys,
    env_overrides,
)
from infracore.deployment.errors import ConfigInvalid
from infracore.deployment.models import Strategy


def _base(**extra):
    values = {
        "domain": "infra.example.com",
        "admin_contact": "ops@example.com",
        "secrets.signing_key": "s3cret-signing-key",
    }
    values.update(extra)
    return values


# ── Layering ─────────────────────────────────────────────────────────────────

class TestLayering:

    def test_defaults_fill_unset_keys(self):
        config = ConfigResolver(overrides=_base()).resolve()
        assert config.ports.http == 80
        assert config.ports.https == 443
        assert config.ports.api == 8082
        assert config.resources.memory_limit == "1g"
        assert config.strategy is Strategy.CONTAINER
        assert config.health.readiness_threshold == 0.6
        assert config.source.branch == "main"
        assert config.source.repo_url.endswith("/infra-core.git")
        assert config.preflight.require_root is True

    def test_override_beats_file_beats_default(self):
        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / "config.yaml"
            path.write_text(yaml.safe_dump({
                "domain": "file.example.com",
                "admin_contact": "file@example.com",
                "resources": {"memory_limit": "2g"},
            }))
            config = ConfigResolver(path, overrides={"domain": "cli.example.com"}).resolve()
            assert config.domain == "cli.example.com"
            assert config.admin_contact == "file@example.com"
            assert config.resources.memory_limit == "2g"
            assert config.resources.cpu_limit == 1.0

    def test_json_file_layer(self):
        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / "config.json"
            path.write_text(json.dumps(_base(strategy="binary")))
            config = ConfigResolver(path).resolve()
            assert config.strategy is Strategy.BINARY

    def test_missing_file_is_an_empty_layer(self):
        config = ConfigResolver("/nonexistent/config.yaml", overrides=_base()).resolve()
        assert config.domain == "infra.example.com"

    def test_partial_nested_mapping_keeps_other_defaults(self):
        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / "config.yaml"
            path.write_text(yaml.safe_dump({"health": {"weights": {"disk": 2}}}))
            config = ConfigResolver(path, overrides=_base()).resolve()
            assert config.health.weights["disk"] == 2
            assert config.health.weights["liveness"] == 3

    def test_malformed_file_raises(self):
        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / "config.yaml"
            path.write_text("domain: [unclosed")
            with pytest.raises(ConfigInvalid):
                ConfigResolver(path, overrides=_base()).resolve()


# ── Environment variables ────────────────────────────────────────────────────

class TestEnvOverrides:

    def test_prefixed_variables_map_to_dotted_keys(self):
        env = {
            "INFRA_CORE_DOMAIN": "env.example.com",
            "INFRA_CORE_GATE_HTTP_PORT": "8080",
            "INFRA_CORE_ACME_ENABLED": "true",
            "INFRA_CORE_DEPLOYMENT_TYPE": "docker",
            "UNRELATED": "x",
        }
        result = env_overrides(env)
        assert result == {
            "domain": "env.example.com",
            "ports.http": 8080,
            "tls_enabled": True,
            "strategy": "container",
        }

    def test_source_variables(self):
        env = {"INFRA_CORE_REPO_URL": "https://git.example.com/fork.git", "INFRA_CORE_BRANCH": "stable"}
        assert env_overrides(env) == {
            "source.repo_url": "https://git.example.com/fork.git",
            "source.branch": "stable",
        }

    def test_empty_values_are_ignored(self):
        assert env_overrides({"INFRA_CORE_DOMAIN": ""}) == {}

    def test_describe_keys_lists_env_names(self):
        keys = {k["key"]: k for k in describe_keys()}
        assert keys["secrets.signing_key"]["env"] == "INFRA_CORE_JWT_SECRET"


# ── Validation ───────────────────────────────────────────────────────────────

class TestValidation:

    def test_missing_required_fields_are_all_reported(self):
        with pytest.raises(ConfigInvalid) as exc_info:
            ConfigResolver(overrides={}).resolve()
        errors = exc_info.value.errors
        assert "domain is required" in errors
        assert "admin_contact is required" in errors

    @pytest.mark.parametrize("value", ["${DOMAIN}", "<your-domain>", "CHANGE_ME"])
    def test_placeholders_rejected(self, value):
        with pytest.raises(ConfigInvalid, match="placeholder"):
            ConfigResolver(overrides=_base(domain=value)).resolve()

    def test_port_collision(self):
        with pytest.raises(ConfigInvalid, match="collides"):
            ConfigResolver(overrides=_base(**{"ports.api": 80})).resolve()

    def test_port_out_of_range(self):
        with pytest.raises(ConfigInvalid, match="ports.http"):
            ConfigResolver(overrides=_base(**{"ports.http": 70000})).resolve()

    def test_at_least_one_port(self):
        overrides = _base(**{"ports.http": None, "ports.https": None, "ports.api": None})
        with pytest.raises(ConfigInvalid, match="at least one"):
            ConfigResolver(overrides=overrides).resolve()

    def test_tls_requires_https(self):
        overrides = _base(tls_enabled=True, **{"ports.https": None})
        with pytest.raises(ConfigInvalid, match="tls_enabled"):
            ConfigResolver(overrides=overrides).resolve()

    def test_invalid_memory_limit(self):
        with pytest.raises(ConfigInvalid, match="memory_limit"):
            ConfigResolver(overrides=_base(**{"resources.memory_limit": "lots"})).resolve()

    def test_unknown_strategy(self):
        with pytest.raises(ConfigInvalid, match="strategy"):
            ConfigResolver(overrides=_base(strategy="vm")).resolve()


# ── Secrets ──────────────────────────────────────────────────────────────────

class TestSecrets:

    def test_signing_key_generated_when_absent(self):
        overrides = _base()
        del overrides["secrets.signing_key"]
        config = ConfigResolver(overrides=overrides).resolve()
        assert len(config.secrets.signing_key.get_secret_value()) >= 32

    def test_public_dict_masks_secret(self):
        config = ConfigResolver(overrides=_base()).resolve()
        dumped = json.dumps(config.public_dict())
        assert "s3cret-signing-key" not in dumped
        assert config.rendered_dict()["secrets"]["signing_key"] == "s3cret-signing-key"

    def test_snapshot_is_immutable(self):
        config = ConfigResolver(overrides=_base()).resolve()
        with pytest.raises(Exception):
            config.domain = "other.example.com"
