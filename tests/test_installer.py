"""Tests for the dependency installer."""

from __future__ import annotations

import pytest
from packaging.version import Version

from infracore.deployment.errors import DependencyInstallFailed
from infracore.deployment.installer import (
    DependencyInstaller,
    Requirement,
    default_requirements,
    parse_version,
)
from infracore.deployment.models import Strategy
from infracore.deployment.rollback import RollbackManager
from infracore.testing import FakeInspector, FakeRunner


class _InstallingRunner(FakeRunner):
    """Puts a tool on the fake PATH when its install command runs."""

    def __init__(self, inspector: FakeInspector, provides: dict[str, str]) -> None:
        super().__init__()
        self.inspector = inspector
        self.provides = provides

    def run(self, args, *, cwd=None, timeout=None, check=True):
        result = super().run(args, cwd=cwd, timeout=timeout, check=check)
        tool = self.provides.get(args[-1])
        if tool:
            self.inspector.tools.add(tool)
        return result


def _git():
    return Requirement(
        name="git",
        command="git",
        install_commands={"apt-get": (("apt-get", "install", "-y", "git"),)},
    )


# ── Versions ─────────────────────────────────────────────────────────────────

class TestParseVersion:

    def test_extracts_first_dotted_version(self):
        assert parse_version("go version go1.22.3 linux/amd64") == Version("1.22.3")
        assert parse_version("24.0.7") == Version("24.0.7")

    def test_no_version(self):
        assert parse_version("unknown") is None


# ── DependencyInstaller ──────────────────────────────────────────────────────

class TestDependencyInstaller:

    def test_satisfied_requirements_are_skipped(self):
        inspector = FakeInspector(tools=("git", "apt-get"))
        runner = FakeRunner()
        installer = DependencyInstaller(runner, inspector, [_git()])
        rollback = RollbackManager()

        result = installer.install(rollback)
        assert result.skipped == ["git"]
        assert result.installed == []
        assert runner.calls == []
        assert len(rollback) == 0

    def test_second_run_is_a_no_op(self):
        inspector = FakeInspector(tools=("apt-get",))
        runner = _InstallingRunner(inspector, {"git": "git"})
        installer = DependencyInstaller(runner, inspector, [_git()])

        first = installer.install(RollbackManager())
        assert first.installed == ["git"]
        calls_after_first = len(runner.calls)

        second = installer.install(RollbackManager())
        assert second.skipped == ["git"]
        assert len(runner.calls) == calls_after_first

    def test_install_records_step(self):
        inspector = FakeInspector(tools=("apt-get",))
        runner = _InstallingRunner(inspector, {"git": "git"})
        rollback = RollbackManager()
        DependencyInstaller(runner, inspector, [_git()]).install(rollback)
        assert runner.called("apt-get", "install") == [("apt-get", "install", "-y", "git")]
        assert len(rollback) == 1
        assert rollback.steps[0].is_noop

    def test_removal_step_when_remove_commands_given(self):
        req = _git().model_copy(update={"remove_commands": (("apt-get", "remove", "-y", "git"),)})
        inspector = FakeInspector(tools=("apt-get",))
        runner = _InstallingRunner(inspector, {"git": "git"})
        rollback = RollbackManager()
        DependencyInstaller(runner, inspector, [req]).install(rollback)

        assert rollback.replay() == []
        assert runner.called("apt-get", "remove") == [("apt-get", "remove", "-y", "git")]

    def test_outdated_version_triggers_install(self):
        req = Requirement(
            name="go",
            command="go",
            version_command=("go", "version"),
            min_version="1.21",
            install_commands={"apt-get": (("apt-get", "install", "-y", "golang-go"),)},
        )
        inspector = FakeInspector(tools=("go", "apt-get"))
        runner = FakeRunner()
        runner.when("go", "version", stdout="go version go1.18.1 linux/amd64")
        installer = DependencyInstaller(runner, inspector, [req])

        assert installer.is_satisfied(req) is False
        with pytest.raises(DependencyInstallFailed, match="still missing"):
            installer.install(RollbackManager())
        assert runner.called("apt-get", "install")

    def test_current_version_is_satisfied(self):
        req = default_requirements(Strategy.CONTAINER, checkout=False)[0]
        inspector = FakeInspector(tools=("docker",))
        runner = FakeRunner()
        runner.when("docker", "version", stdout="24.0.7")
        assert DependencyInstaller(runner, inspector, [req]).is_satisfied(req)

    def test_no_package_manager(self):
        installer = DependencyInstaller(FakeRunner(), FakeInspector(tools=()), [_git()])
        with pytest.raises(DependencyInstallFailed) as exc_info:
            installer.install(RollbackManager())
        assert exc_info.value.name == "git"
        assert "no install recipe" in exc_info.value.cause

    def test_failing_install_command(self):
        runner = FakeRunner()
        runner.when("apt-get", returncode=100, stderr="E: Unable to locate package")
        installer = DependencyInstaller(runner, FakeInspector(tools=("apt-get",)), [_git()])
        with pytest.raises(DependencyInstallFailed, match="Unable to locate package"):
            installer.install(RollbackManager())

    def test_first_failure_stops_installation(self):
        second = Requirement(
            name="curl",
            command="curl",
            install_commands={"apt-get": (("apt-get", "install", "-y", "curl"),)},
        )
        runner = FakeRunner()
        runner.when("apt-get", "install", "-y", "git", returncode=1)
        installer = DependencyInstaller(
            runner, FakeInspector(tools=("apt-get",)), [_git(), second],
        )
        with pytest.raises(DependencyInstallFailed):
            installer.install(RollbackManager())
        assert not runner.called("apt-get", "install", "-y", "curl")

    def test_binary_requirements(self):
        names = [r.name for r in default_requirements(Strategy.BINARY)]
        assert names == ["git", "go"]

    def test_container_requirements_with_and_without_checkout(self):
        assert [r.name for r in default_requirements(Strategy.CONTAINER)] == [
            "git", "docker", "docker-compose",
        ]
        assert [r.name for r in default_requirements(Strategy.CONTAINER, checkout=False)] == [
            "docker", "docker-compose",
        ]
