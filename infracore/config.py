"""Global configuration: paths, constants, settings."""

from pathlib import Path

# Host layout used by both deployment strategies
DEFAULT_DEPLOY_DIR = Path("/opt/infra-core")
DEFAULT_CONFIG_DIR = Path("/etc/infra-core")
DEFAULT_LOG_DIR = Path("/var/log/infra-core")
DEFAULT_DATA_DIR = Path("/var/lib/infra-core")
DEFAULT_UNIT_DIR = Path("/etc/systemd/system")

# Sub-paths inside the deploy directory
CURRENT_RELEASE_DIR = "current"
PREVIOUS_RELEASE_DIR = "previous"
BACKUPS_DIR = "backups"
RELEASE_RECORD = "deployment-info.json"
COMPOSE_FILE = "docker-compose.yml"

# Files written into the config directory
CONFIG_FILE = "config.yaml"
ENVIRONMENT_FILE = "environment"

# Prefix for container project names and systemd unit names
SERVICE_PREFIX = "infra-core"

# Environment variable prefix recognised by the configuration resolver
ENV_PREFIX = "INFRA_CORE_"

# Repository the release is checked out from
DEFAULT_REPO_URL = "https://github.com/last-emo-boy/infra-core.git"
DEFAULT_BRANCH = "main"

# Fixed ports for services that are not exposed through the config ports
ORCHESTRATOR_PORT = 8084
PROBE_PORT = 8085
SNAP_PORT = 8086

# Upper bound on kept release snapshots, regardless of retention days
MAX_SNAPSHOTS = 10
