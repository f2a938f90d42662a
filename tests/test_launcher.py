"""Tests for launch/launcher.py."""

import socket
from pathlib import Path

import pytest

from conftest import FakeRunner
from kernel_xtask.errors import ArtifactNotFound, LaunchConfigError, LaunchFailed
from kernel_xtask.launch import Launcher, LaunchSpec
from kernel_xtask.launch.launcher import validate_port
from kernel_xtask.prebuilt.catalog import rustsbi_firmware
from kernel_xtask.types import Arch, LaunchMode


@pytest.fixture
def kernel(tmp_path: Path) -> Path:
    path = tmp_path / "zcore.bin"
    path.write_bytes(b"kernel")
    return path


@pytest.fixture
def firmware(settings) -> Path:
    path = rustsbi_firmware(settings)
    path.parent.mkdir(parents=True)
    path.write_bytes(b"sbi")
    return path


class TestValidatePort:
    """Tests for validate_port."""

    @pytest.mark.parametrize("port", [1, 1234, 65535])
    def test_valid(self, port: int) -> None:
        """Ports in 1..65535 should pass."""
        assert validate_port(port) == port

    @pytest.mark.parametrize("port", [0, -1, 65536])
    def test_invalid(self, port: int) -> None:
        """Ports outside 1..65535 should raise LaunchConfigError."""
        with pytest.raises(LaunchConfigError):
            validate_port(port)


class TestValidate:
    """Tests for Launcher.validate."""

    def test_mode(self, kernel: Path) -> None:
        """libos_args should select libos mode."""
        assert LaunchSpec(arch=Arch.X86_64, artifact=kernel).mode is LaunchMode.EMULATED
        assert LaunchSpec(arch=Arch.X86_64, libos_args=["/bin/ls"]).mode is LaunchMode.LIBOS

    def test_smp_zero(self, settings, runner, kernel: Path) -> None:
        """A zero core count should be rejected."""
        with pytest.raises(LaunchConfigError, match="at least 1"):
            Launcher(settings, runner).validate(
                LaunchSpec(arch=Arch.X86_64, artifact=kernel, smp=0)
            )

    def test_libos_empty_args(self, settings, runner) -> None:
        """libos mode without a binary should be rejected."""
        with pytest.raises(LaunchConfigError):
            Launcher(settings, runner).validate(LaunchSpec(arch=Arch.X86_64, libos_args=[]))

    def test_libos_riscv64(self, settings, runner) -> None:
        """libos mode should be x86_64 only."""
        with pytest.raises(LaunchConfigError, match="x86_64"):
            Launcher(settings, runner).validate(
                LaunchSpec(arch=Arch.RISCV64, libos_args=["/bin/ls"])
            )

    def test_libos_with_debug_port(self, settings, runner) -> None:
        """A debug port makes no sense in libos mode."""
        with pytest.raises(LaunchConfigError, match="debug port"):
            Launcher(settings, runner).validate(
                LaunchSpec(arch=Arch.X86_64, libos_args=["/bin/ls"], gdb_port=1234)
            )

    def test_emulated_without_artifact(self, settings, runner) -> None:
        """Emulated mode needs a kernel."""
        with pytest.raises(LaunchConfigError):
            Launcher(settings, runner).validate(LaunchSpec(arch=Arch.RISCV64))


class TestComposeQemuCommand:
    """Tests for Launcher.compose_qemu_command."""

    def test_riscv64(self, settings, runner, kernel, firmware) -> None:
        """riscv64 should boot RustSBI on the virt machine with the image as initrd."""
        spec = LaunchSpec(
            arch=Arch.RISCV64, artifact=kernel, image=Path("/img/riscv64.img"), smp=4
        )
        cmd = Launcher(settings, runner).compose_qemu_command(spec)

        assert cmd[:3] == ["qemu-system-riscv64", "-smp", "4"]
        assert cmd[cmd.index("-machine") + 1] == "virt"
        assert cmd[cmd.index("-bios") + 1] == str(firmware)
        assert cmd[cmd.index("-kernel") + 1] == str(kernel)
        assert cmd[cmd.index("-initrd") + 1] == "/img/riscv64.img"
        assert "-S" not in cmd

    def test_riscv64_missing_firmware(self, settings, runner, kernel) -> None:
        """A missing RustSBI firmware should be a configuration error."""
        with pytest.raises(LaunchConfigError, match="xtask init"):
            Launcher(settings, runner).compose_qemu_command(
                LaunchSpec(arch=Arch.RISCV64, artifact=kernel)
            )

    def test_x86_64(self, settings, runner, kernel) -> None:
        """x86_64 should use q35 with the image attached as a raw drive."""
        spec = LaunchSpec(arch=Arch.X86_64, artifact=kernel, image=Path("/img/x86_64.img"))
        cmd = Launcher(settings, runner).compose_qemu_command(spec)

        assert cmd[0] == "qemu-system-x86_64"
        assert cmd[cmd.index("-machine") + 1] == "q35"
        assert "format=raw,file=/img/x86_64.img" in cmd
        assert "-initrd" not in cmd

    def test_without_artifact(self, settings, runner) -> None:
        """Composing an emulator command without a kernel should be a config error."""
        with pytest.raises(LaunchConfigError, match="kernel artifact"):
            Launcher(settings, runner).compose_qemu_command(
                LaunchSpec(arch=Arch.X86_64)
            )

    def test_libos_without_args(self, settings, runner) -> None:
        """Composing a libos command without a binary should be a config error."""
        with pytest.raises(LaunchConfigError, match="user binary"):
            Launcher(settings, runner).compose_libos_command(
                LaunchSpec(arch=Arch.X86_64, libos_args=[])
            )

    def test_debug_port(self, settings, runner, kernel) -> None:
        """A debug port should start the guest halted with a gdb stub."""
        spec = LaunchSpec(arch=Arch.X86_64, artifact=kernel, gdb_port=1234)
        cmd = Launcher(settings, runner).compose_qemu_command(spec)
        assert cmd[-3:] == ["-S", "-gdb", "tcp::1234"]


class TestLaunch:
    """Tests for Launcher.launch."""

    def test_emulated_returns_exit_code(self, settings, kernel) -> None:
        """launch should return the emulator's exit code."""
        runner = FakeRunner(settings.log_dir, {"qemu-system-x86_64": lambda a, c, e, s: 3})
        code = Launcher(settings, runner).launch(LaunchSpec(arch=Arch.X86_64, artifact=kernel))
        assert code == 3

    def test_missing_artifact(self, settings, runner, tmp_path: Path) -> None:
        """A missing kernel should raise before the emulator starts."""
        spec = LaunchSpec(arch=Arch.X86_64, artifact=tmp_path / "missing")
        with pytest.raises(ArtifactNotFound):
            Launcher(settings, runner).launch(spec)
        assert runner.calls == []

    def test_invalid_spec_runs_nothing(self, settings, runner, kernel) -> None:
        """Validation should happen before anything starts."""
        with pytest.raises(LaunchConfigError):
            Launcher(settings, runner).launch(
                LaunchSpec(arch=Arch.X86_64, artifact=kernel, gdb_port=70000)
            )
        assert runner.calls == []

    def test_libos(self, settings, runner) -> None:
        """libos mode should run the kernel with the user binary via cargo."""
        spec = LaunchSpec(arch=Arch.X86_64, libos_args=["/bin/busybox", "ls", "-l"])
        code = Launcher(settings, runner).launch(spec)

        assert code == 0
        argv = runner.calls[0].argv
        assert argv[:2] == ["cargo", "run"]
        assert argv[argv.index("--features") + 1] == "linux libos"
        assert argv[argv.index("--") + 1 :] == ["/bin/busybox", "ls", "-l"]
        assert runner.calls[0].cwd == settings.repo_root


class TestAttach:
    """Tests for Launcher.attach."""

    def test_gdb_command(self, settings, runner, kernel) -> None:
        """The debugger should load the ELF, set the arch and connect."""
        cmd = Launcher(settings, runner).compose_gdb_command(Arch.RISCV64, 1234, kernel)
        assert cmd == [
            "gdb-multiarch",
            "-ex",
            f"file {kernel}",
            "-ex",
            "set arch riscv:rv64",
            "-ex",
            "target remote localhost:1234",
        ]

    def test_invalid_port(self, settings, runner, kernel) -> None:
        """An invalid port should be rejected."""
        with pytest.raises(LaunchConfigError):
            Launcher(settings, runner).attach(Arch.X86_64, 0, kernel)

    def test_missing_elf(self, settings, runner, tmp_path: Path) -> None:
        """Attaching without a built kernel should fail."""
        with pytest.raises(ArtifactNotFound):
            Launcher(settings, runner).attach(Arch.X86_64, 1234, tmp_path / "zcore")

    def test_nothing_listening(self, settings, runner, kernel) -> None:
        """Attaching to a closed port should raise LaunchFailed."""
        with socket.socket() as sock:
            sock.bind(("localhost", 0))
            port = sock.getsockname()[1]
        with pytest.raises(LaunchFailed):
            Launcher(settings, runner).attach(Arch.X86_64, port, kernel)
        assert runner.calls == []

    def test_attaches_to_listener(self, settings, runner, kernel) -> None:
        """With a listener on the port the debugger should be started."""
        with socket.socket() as server:
            server.bind(("localhost", 0))
            server.listen(1)
            port = server.getsockname()[1]
            code = Launcher(settings, runner).attach(Arch.X86_64, port, kernel)

        assert code == 0
        assert runner.programs() == ["gdb-multiarch"]
        assert "set arch i386:x86-64" in runner.calls[0].argv
