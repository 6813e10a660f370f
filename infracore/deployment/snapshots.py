"""SnapshotStore: release backups and restoration."""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from infracore import config as settings
from infracore.deployment.models import PathsConfig

logger = logging.getLogger(__name__)

_RELEASE_FILES = (settings.RELEASE_RECORD, settings.COMPOSE_FILE)
_CONFIG_FILES = (settings.CONFIG_FILE, settings.ENVIRONMENT_FILE)


class SnapshotStore:
    """Create, list, restore and prune release snapshots.

    A snapshot copies the release record, the compose file and the
    rendered configuration into ``<deploy_dir>/backups/<label>/``.

    Parameters
    ----------
    paths:
        Host layout of the deployment.
    """

    def __init__(self, paths: PathsConfig) -> None:
        self.paths = paths
        self._snapshots_dir = paths.backups_dir

    def create_snapshot(self, label: str | None = None) -> dict[str, Any]:
        """Copy the current release into a new snapshot.

        Returns snapshot metadata dict.
        """
        now = datetime.now(timezone.utc)
        label = self._unique_label(
            label or f"infra-core-backup-{now.strftime('%Y%m%d-%H%M%S-%f')}",
        )
        snap_dir = self._snapshots_dir / label
        snap_dir.mkdir(parents=True)

        copied: list[str] = []
        for name in _RELEASE_FILES:
            src = self.paths.current_dir / name
            if src.is_file():
                shutil.copy2(src, snap_dir / name)
                copied.append(name)

        config_copy = snap_dir / "config"
        for name in _CONFIG_FILES:
            src = self.paths.config_dir / name
            if src.is_file():
                config_copy.mkdir(exist_ok=True)
                shutil.copy2(src, config_copy / name)
                copied.append(f"config/{name}")

        release: dict[str, Any] = {}
        record = self.paths.release_record
        if record.is_file():
            try:
                release = json.loads(record.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                logger.debug("Unreadable release record", exc_info=True)

        metadata: dict[str, Any] = {
            "label": label,
            "timestamp": now.isoformat(),
            "files": copied,
            "release": release,
        }
        (snap_dir / "metadata.json").write_text(
            json.dumps(metadata, indent=2), encoding="utf-8",
        )
        logger.info("Snapshot created: %s (%d file(s))", label, len(copied))
        return metadata

    def _unique_label(self, label: str) -> str:
        """Return *label*, suffixed with -2, -3 ... if a snapshot already uses it."""
        candidate, n = label, 1
        while (self._snapshots_dir / candidate).exists():
            n += 1
            candidate = f"{label}-{n}"
        return candidate

    def list_snapshots(self) -> list[dict[str, Any]]:
        """Return all snapshots sorted by timestamp, oldest first."""
        snapshots: list[dict[str, Any]] = []
        if not self._snapshots_dir.is_dir():
            return snapshots

        for snap_dir in self._snapshots_dir.iterdir():
            meta_path = snap_dir / "metadata.json"
            if meta_path.is_file():
                try:
                    snapshots.append(json.loads(meta_path.read_text(encoding="utf-8")))
                except (json.JSONDecodeError, OSError):
                    logger.warning("Skipping unreadable snapshot %s", snap_dir.name)

        snapshots.sort(key=lambda m: m.get("timestamp", ""))
        return snapshots

    def latest(self) -> dict[str, Any] | None:
        snaps = self.list_snapshots()
        return snaps[-1] if snaps else None

    def restore(self, label: str) -> bool:
        """Copy a snapshot's files back into place.

        Returns True if successful.
        """
        snap_dir = self._snapshots_dir / label
        if not (snap_dir / "metadata.json").is_file():
            logger.error("Snapshot not found: %s", label)
            return False

        self.paths.current_dir.mkdir(parents=True, exist_ok=True)
        for name in _RELEASE_FILES:
            src = snap_dir / name
            if src.is_file():
                shutil.copy2(src, self.paths.current_dir / name)

        config_copy = snap_dir / "config"
        if config_copy.is_dir():
            self.paths.config_dir.mkdir(parents=True, exist_ok=True)
            for name in _CONFIG_FILES:
                src = config_copy / name
                if src.is_file():
                    shutil.copy2(src, self.paths.config_dir / name)

        logger.info("Restored snapshot: %s", label)
        return True

    def prune(
        self,
        retention_days: int,
        keep: int = settings.MAX_SNAPSHOTS,
        now: datetime | None = None,
    ) -> list[str]:
        """Delete snapshots older than *retention_days* or beyond *keep*.

        The newest snapshot is always kept.  Returns the removed labels.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days)
        snaps = self.list_snapshots()
        removed: list[str] = []

        for index, meta in enumerate(snaps):
            newest_first_position = len(snaps) - 1 - index
            if newest_first_position == 0:
                continue
            try:
                taken = datetime.fromisoformat(meta["timestamp"])
            except (KeyError, ValueError):
                taken = cutoff
            if taken < cutoff or newest_first_position >= keep:
                shutil.rmtree(self._snapshots_dir / meta["label"], ignore_errors=True)
                removed.append(meta["label"])

        if removed:
            logger.info("Pruned %d snapshot(s)", len(removed))
        return removed
