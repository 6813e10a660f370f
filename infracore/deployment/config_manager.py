"""ConfigResolver: layered defaults, persisted file and overrides."""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml
from pydantic import ValidationError

from infracore import config as settings
from infracore.deployment.errors import ConfigInvalid
from infracore.deployment.models import (
    DeploymentConfig,
    HealthPolicy,
    PhaseTimeouts,
    PreflightThresholds,
)

logger = logging.getLogger(__name__)


def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _to_strategy(value: str) -> str:
    value = value.strip().lower()
    return "container" if value == "docker" else value


# Recognised keys, their compiled-in defaults and environment variables.
# ``None`` defaults must be supplied by the file or overrides.
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "environment": {"default": "production", "env": "ENV", "description": "Environment profile"},
    "domain": {"default": None, "env": "DOMAIN", "description": "Public domain served by the gateway"},
    "admin_contact": {"default": None, "env": "ACME_EMAIL", "description": "Administrator e-mail"},
    "ports.http": {"default": 80, "env": "GATE_HTTP_PORT", "cast": int, "description": "Gateway HTTP port"},
    "ports.https": {"default": 443, "env": "GATE_HTTPS_PORT", "cast": int, "description": "Gateway HTTPS port"},
    "ports.api": {"default": 8082, "env": "CONSOLE_PORT", "cast": int, "description": "Console API port"},
    "tls_enabled": {"default": False, "env": "ACME_ENABLED", "cast": _to_bool, "description": "Terminate TLS at the gateway"},
    "resources.memory_limit": {"default": "1g", "env": "MEMORY_LIMIT", "description": "Memory limit per service"},
    "resources.cpu_limit": {"default": 1.0, "env": "CPU_LIMIT", "cast": float, "description": "CPU limit per service"},
    "backup.enabled": {"default": True, "env": "BACKUP_ENABLED", "cast": _to_bool, "description": "Back up the release before upgrades"},
    "backup.retention_days": {"default": 7, "env": "BACKUP_RETENTION_DAYS", "cast": int, "description": "Days to keep release backups"},
    "secrets.signing_key": {"default": None, "env": "JWT_SECRET", "description": "Authentication signing key (secret, generated if empty)"},
    "strategy": {"default": "container", "env": "DEPLOYMENT_TYPE", "cast": _to_strategy, "description": "container or binary"},
    "service_user": {"default": "infracore", "env": "SERVICE_USER", "description": "System user owning the services"},
    "log_level": {"default": "INFO", "env": "LOG_LEVEL", "description": "Logging level"},
    "source.repo_url": {"default": settings.DEFAULT_REPO_URL, "env": "REPO_URL", "description": "Repository checked out as the release (empty deploys in place)"},
    "source.branch": {"default": settings.DEFAULT_BRANCH, "env": "BRANCH", "description": "Branch to check out"},
    "paths.deploy_dir": {"default": str(settings.DEFAULT_DEPLOY_DIR), "env": "DEPLOY_DIR", "description": "Release directory"},
    "paths.config_dir": {"default": str(settings.DEFAULT_CONFIG_DIR), "env": "CONFIG_DIR", "description": "Rendered config directory"},
    "paths.log_dir": {"default": str(settings.DEFAULT_LOG_DIR), "env": "LOG_DIR", "description": "Service log directory"},
    "paths.data_dir": {"default": str(settings.DEFAULT_DATA_DIR), "env": "DATA_DIR", "description": "Service data directory"},
    "paths.unit_dir": {"default": str(settings.DEFAULT_UNIT_DIR), "env": "UNIT_DIR", "description": "systemd unit directory"},
}


_REQUIRED = ("domain", "admin_contact")
_PORT_KEYS = ("ports.http", "ports.https", "ports.api")
_PLACEHOLDER_RE = re.compile(r"\$\{[^}]*\}|^<[^>]*>$|^change[_-]?me$", re.IGNORECASE)


def describe_keys() -> list[dict[str, Any]]:
    """Return every recognised key with its default and description."""
    return [
        {
            "key": key,
            "default": info["default"],
            "env": settings.ENV_PREFIX + info["env"],
            "description": info["description"],
        }
        for key, info in _CONFIG_KEYS.items()
    ]


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Translate ``INFRA_CORE_*`` environment variables into dotted keys."""
    environ = os.environ if environ is None else environ
    result: dict[str, Any] = {}
    for key, info in _CONFIG_KEYS.items():
        raw = environ.get(settings.ENV_PREFIX + info["env"])
        if raw is None or raw == "":
            continue
        cast: Callable[[str], Any] = info.get("cast", str)
        try:
            result[key] = cast(raw)
        except ValueError:
            # Leave the raw value so validation reports it against the key
            result[key] = raw
    return result


def _flatten(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping) and value:
            flat.update(_flatten(value, prefix=f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


DEFAULTS: dict[str, Any] = {key: info["default"] for key, info in _CONFIG_KEYS.items()}
for _section, _model in (
    ("preflight", PreflightThresholds),
    ("health", HealthPolicy),
    ("timeouts", PhaseTimeouts),
):
    DEFAULTS.update(_flatten(_model().model_dump(mode="json"), prefix=f"{_section}."))


def _unflatten(flat: Mapping[str, Any], errors: list[str]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for dotted in sorted(flat):
        value = flat[dotted]
        parts = dotted.split(".")
        node = nested
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                errors.append(f"{dotted}: conflicts with scalar value at '{part}'")
                break
            node = child
        else:
            if isinstance(node.get(parts[-1]), dict):
                if value is not None:
                    errors.append(f"{dotted}: expected a mapping")
                continue
            node[parts[-1]] = value
    return nested


def _port_value(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not a port")
    port = int(value)
    if not 1 <= port <= 65535:
        raise ValueError(f"{port} is outside 1-65535")
    return port


class ConfigResolver:
    """Merge defaults, a persisted config file and overrides.

    Precedence is applied key by key: an override for ``domain`` does not
    hide a file value for ``resources.memory_limit``.

    Parameters
    ----------
    config_path:
        Optional YAML or JSON file.  A missing file is an empty layer.
    overrides:
        Highest-priority values, nested or with dotted keys.
    defaults:
        Compiled-in defaults; mainly replaced in tests.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        overrides: Mapping[str, Any] | None = None,
        defaults: Mapping[str, Any] | None = None,
    ) -> None:
        self.config_path = Path(config_path) if config_path else None
        self.overrides = dict(overrides or {})
        self.defaults = dict(DEFAULTS if defaults is None else defaults)

    def load_file(self) -> dict[str, Any]:
        """Read the persisted layer.  Raises :class:`ConfigInvalid` if malformed."""
        if self.config_path is None or not self.config_path.is_file():
            return {}
        try:
            text = self.config_path.read_text(encoding="utf-8")
            if self.config_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(text)
            else:
                data = json.loads(text)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ConfigInvalid([f"cannot read {self.config_path}: {exc}"]) from exc

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigInvalid([f"{self.config_path}: top level must be a mapping"])
        return data

    def merged(self) -> dict[str, Any]:
        """Return the flattened merge of all three layers."""
        merged: dict[str, Any] = {}
        merged.update(_flatten(self.defaults))
        file_layer = _flatten(self.load_file())
        merged.update(file_layer)
        merged.update(_flatten(self.overrides))
        logger.debug(
            "Merged %d default, %d file and %d override key(s)",
            len(self.defaults), len(file_layer), len(self.overrides),
        )
        return merged

    def resolve(self) -> DeploymentConfig:
        """Produce the immutable configuration snapshot."""
        merged = self.merged()
        errors: list[str] = []

        for key in _REQUIRED:
            value = merged.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors.append(f"{key} is required")

        for key, value in merged.items():
            if isinstance(value, str) and _PLACEHOLDER_RE.search(value.strip()):
                errors.append(f"{key} still holds a placeholder value: {value!r}")

        ports: dict[str, int] = {}
        for key in _PORT_KEYS:
            try:
                port = _port_value(merged.get(key))
            except (TypeError, ValueError) as exc:
                errors.append(f"{key}: invalid port ({exc})")
                continue
            merged[key] = port
            if port is None:
                continue
            clash = next((k for k, p in ports.items() if p == port), None)
            if clash:
                errors.append(f"{key} collides with {clash} on port {port}")
            ports[key] = port

        if not ports and not any(e.startswith("ports.") for e in errors):
            errors.append("at least one of ports.http, ports.https, ports.api must be set")

        tls = merged.get("tls_enabled")
        if tls is True and merged.get("ports.https") is None:
            errors.append("tls_enabled requires ports.https")

        if errors:
            raise ConfigInvalid(errors)

        if not merged.get("secrets.signing_key"):
            merged["secrets.signing_key"] = secrets.token_urlsafe(32)
            logger.info("No signing key configured; generated a new one")

        nested = _unflatten(merged, errors)
        if errors:
            raise ConfigInvalid(errors)

        try:
            snapshot = DeploymentConfig.model_validate(nested)
        except ValidationError as exc:
            raise ConfigInvalid([
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            ]) from exc

        logger.info(
            "Resolved configuration for %s (%s strategy)",
            snapshot.domain, snapshot.strategy.value,
        )
        return snapshot
