"""BinaryStrategy: services as native executables under systemd."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Sequence

from infracore.deployment.errors import ExecutionFailed
from infracore.deployment.host import CommandRunner, Deadline
from infracore.deployment.inventory import ServiceDescriptor
from infracore.deployment.models import DeploymentConfig, Phase
from infracore.deployment.rollback import RollbackStep
from infracore.deployment.strategies.base import ActivationStrategy, Recorder

logger = logging.getLogger(__name__)

UNIT_TEMPLATE = """\
[Unit]
Description=InfraCore {name} service
After=network.target{after}
Wants=network.target

[Service]
Type=simple
{user_lines}WorkingDirectory={workdir}
ExecStart={exec_start}
EnvironmentFile=-{environment_file}
Restart=always
RestartSec=5
MemoryMax={memory_max}
CPUQuota={cpu_quota}%
StandardOutput=journal
StandardError=journal
SyslogIdentifier={unit}
NoNewPrivileges=true
PrivateTmp=true
ReadWritePaths={log_dir} {data_dir}

[Install]
WantedBy=multi-user.target
"""


class BinaryStrategy(ActivationStrategy):
    """Build executables and run each one as a systemd unit."""

    def __init__(self, config: DeploymentConfig, runner: CommandRunner) -> None:
        super().__init__(config, runner)
        self._after: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "binary"

    def unit_path(self, service: ServiceDescriptor) -> Path:
        return self.config.paths.unit_dir / f"{service.unit_name}.service"

    def _workdir(self, service: ServiceDescriptor) -> Path:
        binary = service.binary
        if binary and binary.workdir:
            return Path(binary.workdir)
        return self.config.paths.current_dir

    def executable(self, service: ServiceDescriptor) -> Path:
        path = Path(service.binary.executable) if service.binary else Path(service.name)
        return path if path.is_absolute() else self._workdir(service) / path

    def render_unit(self, service: ServiceDescriptor) -> str:
        """Return the systemd unit text for *service*."""
        user = self.config.service_user
        user_lines = f"User={user}\nGroup={user}\n" if user else ""
        args = service.binary.args if service.binary else ()
        after = self._after.get(service.name, "")
        return UNIT_TEMPLATE.format(
            name=service.name,
            after=f" {after}" if after else "",
            user_lines=user_lines,
            workdir=self._workdir(service),
            exec_start=" ".join([str(self.executable(service)), *args]),
            environment_file=self.config.paths.environment_file,
            memory_max=self.config.resources.memory_limit.upper(),
            cpu_quota=int(round(self.config.resources.cpu_limit * 100)),
            unit=service.unit_name,
            log_dir=self.config.paths.log_dir,
            data_dir=self.config.paths.data_dir,
        )

    # -- Pipeline -------------------------------------------------------------

    def begin(
        self,
        services: Sequence[ServiceDescriptor],
        deadline: Deadline,
        record: Recorder,
    ) -> None:
        missing = [s.name for s in services if s.binary is None]
        if missing:
            raise ExecutionFailed(missing[0], "no binary activation configured")
        # Each unit orders itself after the unit of the next lower rank
        previous: ServiceDescriptor | None = None
        for svc in services:
            if previous is not None:
                self._after[svc.name] = f"{previous.unit_name}.service"
            previous = svc

    def prepare_service(self, service: ServiceDescriptor, deadline: Deadline) -> None:
        binary = service.binary
        if binary and binary.build_command:
            logger.info("Building %s", service.name)
            self._run(binary.build_command, deadline, cwd=str(self._workdir(service)))

        exe = self.executable(service)
        if not exe.is_file():
            raise ExecutionFailed(service.name, f"executable not found: {exe}")
        if not os.access(exe, os.X_OK):
            raise ExecutionFailed(service.name, f"not executable: {exe}")

    def activate(self, service: ServiceDescriptor, deadline: Deadline) -> RollbackStep:
        unit = service.unit_name
        unit_file = self.unit_path(service)
        previous_unit = unit_file.read_bytes() if unit_file.is_file() else None
        was_active = self.is_running(service)
        was_enabled = self._run(
            ["systemctl", "is-enabled", "--quiet", unit], check=False,
        ).ok

        def _undo() -> None:
            self.runner.run(["systemctl", "stop", unit], check=False)
            if not was_enabled:
                self.runner.run(["systemctl", "disable", unit], check=False)
            if previous_unit is None:
                unit_file.unlink(missing_ok=True)
            else:
                unit_file.write_bytes(previous_unit)
            self.runner.run(["systemctl", "daemon-reload"])
            if was_active:
                self.runner.run(["systemctl", "start", unit])

        logger.info("Installing unit %s", unit_file)
        try:
            unit_file.parent.mkdir(parents=True, exist_ok=True)
            unit_file.write_text(self.render_unit(service), encoding="utf-8")
            self._run(["systemctl", "daemon-reload"], deadline)
            self._run(["systemctl", "enable", unit], deadline)
            self._run(["systemctl", "restart", unit], deadline)
        except BaseException:
            self._cleanup(service, _undo)
            raise

        return RollbackStep(
            label=f"remove unit {unit}" if previous_unit is None else f"restore unit {unit}",
            undo=_undo,
            action=f"start unit {unit}",
            phase=Phase.EXECUTING.value,
        )

    # -- Control --------------------------------------------------------------

    def start(self, service: ServiceDescriptor) -> None:
        self._run(["systemctl", "start", service.unit_name])

    def stop(self, service: ServiceDescriptor) -> None:
        self._run(["systemctl", "stop", service.unit_name])

    def restart(self, service: ServiceDescriptor) -> None:
        self._run(["systemctl", "restart", service.unit_name])

    def is_running(self, service: ServiceDescriptor) -> bool:
        return self._run(
            ["systemctl", "is-active", "--quiet", service.unit_name], check=False,
        ).ok

    def logs(self, service: ServiceDescriptor, lines: int = 100) -> list[str]:
        result = self._run(
            ["journalctl", "-u", service.unit_name, "-n", str(lines), "--no-pager", "-o", "cat"],
            check=False,
        )
        return result.stdout.splitlines()

    def is_installed(self, service: ServiceDescriptor) -> bool:
        return self.unit_path(service).is_file()
