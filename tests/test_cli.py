"""Tests for the CLI.

These tests verify CLI wiring without requiring network access or
external tools: the dispatcher is built on a FakeRunner.
"""

import json

import pytest
import yaml
from typer.testing import CliRunner

from conftest import FakeRunner
from kernel_xtask import __version__, cli
from kernel_xtask.cli import app
from kernel_xtask.dispatcher import OVERLAY_COMMANDS, Dispatcher

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(settings, monkeypatch) -> None:
    """Point the CLI at the temporary repository."""
    monkeypatch.setenv("XTASK_REPO_ROOT", str(settings.repo_root))
    monkeypatch.setenv("XTASK_OFFLINE", "true")


@pytest.fixture
def fake_runner(settings) -> FakeRunner:
    return FakeRunner(settings.log_dir)


@pytest.fixture(autouse=True)
def fake_dispatcher(settings, fake_runner, monkeypatch) -> None:
    monkeypatch.setattr(
        cli, "_dispatcher", lambda s=None: Dispatcher(settings, runner=fake_runner)
    )


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should list the commands."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Kernel xtask" in result.stdout
        for name in ("rootfs", "image", "qemu", "linux-libos", *OVERLAY_COMMANDS):
            assert name in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self, settings) -> None:
        """config should show all sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Paths:" in result.stdout
        assert "Operational:" in result.stdout
        assert "Image:" in result.stdout
        assert "Timeouts (seconds):" in result.stdout

    def test_config_json(self, settings) -> None:
        """config --json should output the resolved layout."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["repo_root"] == str(settings.repo_root)
        assert data["offline"] is True


class TestCLIDump:
    """Test CLI dump command."""

    def test_dump_yaml(self) -> None:
        """dump should print the resolved target as YAML."""
        result = runner.invoke(app, ["dump", "--arch", "riscv64", "-f", "ffmpeg"])
        assert result.exit_code == 0
        data = yaml.safe_load(result.stdout)
        assert data["target"]["arch"] == "riscv64"
        assert data["overlays"] == ["ffmpeg"]

    def test_dump_json(self) -> None:
        """dump --json should print the same details as JSON."""
        result = runner.invoke(app, ["dump", "--arch", "x86_64", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["target"]["board"] == "generic"

    def test_dump_invalid_arch(self) -> None:
        """An invalid arch should exit 1 with a tagged error."""
        result = runner.invoke(app, ["dump", "--arch", "mips"])
        assert result.exit_code == 1
        assert "[target] invalid_architecture" in result.output


class TestCLICommands:
    """Test command wiring through the dispatcher."""

    def test_rootfs(self, settings, base_archives) -> None:
        """rootfs should report success."""
        result = runner.invoke(app, ["rootfs", "--arch", "x86_64"])
        assert result.exit_code == 0
        assert "Rootfs for x86_64 rebuilt" in result.stdout

    def test_rootfs_json(self, base_archives) -> None:
        """rootfs --json should emit the operation result."""
        result = runner.invoke(app, ["rootfs", "--arch", "x86_64", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["details"]["overlays"] == ["libc-libos"]

    def test_failure_json(self) -> None:
        """Failures with --json should emit stage and code."""
        result = runner.invoke(app, ["image", "--arch", "riscv64", "--json"])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["stage"] == "rootfs"
        assert data["code"] == "overlay_failed"

    def test_failure_message(self) -> None:
        """Failures should print [stage] code: message and exit 1."""
        result = runner.invoke(app, ["asm", "--arch", "x86_64"])
        assert result.exit_code == 1
        assert "[asm] artifact_not_found" in result.output

    def test_overlay_command(self, settings, base_archives) -> None:
        """Overlay commands should be registered per overlay."""
        result = runner.invoke(app, ["other-test", "--arch", "riscv64"])
        assert result.exit_code == 0
        assert "Overlay other-test applied to riscv64" in result.stdout

    def test_image_ext4(self, settings, fake_runner, base_archives) -> None:
        """image --fs ext4 should pack with mkfs.ext4."""
        result = runner.invoke(app, ["image", "--arch", "riscv64", "--fs", "ext4"])
        assert result.exit_code == 0
        assert fake_runner.programs()[0] == "mkfs.ext4"

    def test_qemu_exit_code(self, settings, base_archives, monkeypatch) -> None:
        """qemu should exit with the emulator's exit code."""
        failing = FakeRunner(
            settings.log_dir, {"qemu-system-x86_64": lambda a, c, e, s: 5}
        )
        monkeypatch.setattr(
            cli, "_dispatcher", lambda s=None: Dispatcher(settings, runner=failing)
        )
        result = runner.invoke(app, ["qemu", "--arch", "x86_64"])
        assert result.exit_code == 5

    def test_linux_libos_args_split(self, fake_runner, base_archives) -> None:
        """--args should be split shell-style into the user command."""
        result = runner.invoke(app, ["linux-libos", "--args", "/bin/busybox ls '-l a'"])
        assert result.exit_code == 0
        argv = fake_runner.calls[-1].argv
        assert argv[argv.index("--") + 1 :] == ["/bin/busybox", "ls", "-l a"]

    def test_gdb_invalid_port(self) -> None:
        """gdb with an invalid port should fail."""
        result = runner.invoke(app, ["gdb", "--arch", "x86_64", "--port", "0"])
        assert result.exit_code == 1
        assert "launch_config_error" in result.output
