"""Runner for external tools (packer, emulator, compilers, make).

This module handles:
- Executing external tools with subprocess
- Capturing stdout/stderr to per-invocation log files
- Enforcing timeouts
- Honoring cancellation between tool invocations

A tool already running is never interrupted; cancellation is checked
before the next tool starts.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

from kernel_xtask.errors import BuildCancelled, ToolExecutionError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared across a pipeline run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation before the next external tool."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, next_step: str) -> None:
        """Raise BuildCancelled if cancellation was requested."""
        if self._event.is_set():
            raise BuildCancelled(f"Cancelled before {next_step}")


@dataclass
class ToolResult:
    """Result of an external tool execution.

    Attributes:
        success: Whether the tool exited with status 0.
        exit_code: Process exit code.
        command: The command that was executed (shell-quoted).
        log_path: Path to the captured log, None for interactive runs.
        started_at: Start time.
        finished_at: Finish time.
        error_message: Error message if the tool failed.
    """

    success: bool
    exit_code: int
    command: str
    log_path: Path | None
    started_at: datetime
    finished_at: datetime
    error_message: str | None = None


class ToolRunner:
    """Runs external tools with logging, timeouts and cancellation."""

    def __init__(
        self,
        log_dir: Path,
        cancel: CancellationToken | None = None,
        default_timeout: int | None = None,
    ) -> None:
        self.log_dir = log_dir
        self.cancel = cancel or CancellationToken()
        self.default_timeout = default_timeout
        self.history: list[list[str]] = []

    def _log_path(self, label: str) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        return self.log_dir / f"{label}-{stamp}.log"

    def _spawn(
        self,
        cmd: list[str],
        cwd: Path | None,
        env: dict[str, str] | None,
        stdout: IO[str] | None,
        stderr: IO[str] | int | None,
        timeout: int | None,
    ) -> int:
        """Start the process and wait for it; returns the exit code."""
        result = subprocess.run(
            cmd,
            cwd=cwd,
            stdout=stdout,
            stderr=stderr,
            env=env,
            timeout=timeout,
            check=False,
        )
        return result.returncode

    def run(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        *,
        cwd: Path | None = None,
        env_override: Mapping[str, str] | None = None,
        label: str | None = None,
        stdout_path: Path | None = None,
        interactive: bool = False,
        timeout: int | None = None,
    ) -> ToolResult:
        """Execute an external tool.

        Args:
            cmd: Command and arguments.
            cwd: Working directory.
            env_override: Environment variables layered over os.environ.
            label: Log file label (defaults to the program name).
            stdout_path: Write stdout to this file instead of the log.
            interactive: Inherit the terminal; nothing is captured.
            timeout: Timeout in seconds (None = runner default; interactive
                runs have no default timeout).

        Returns:
            ToolResult with execution details.

        Raises:
            BuildCancelled: If cancellation was requested.
            ToolExecutionError: If the tool cannot be started or times out.
        """
        argv = [os.fspath(c) for c in cmd]
        cmd_str = shlex.join(argv)
        label = label or Path(argv[0]).name
        self.cancel.raise_if_cancelled(cmd_str)

        env: dict[str, str] | None = None
        if env_override:
            env = dict(os.environ)
            env.update(env_override)
        if timeout is None and not interactive:
            timeout = self.default_timeout

        logger.info("Executing: %s", cmd_str)
        if cwd is not None:
            logger.debug("Working directory: %s", cwd)
        self.history.append(argv)

        started_at = datetime.now(timezone.utc)
        log_path: Path | None = None
        try:
            if interactive:
                exit_code = self._spawn(argv, cwd, env, None, None, timeout)
            else:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                log_path = self._log_path(label)
                with log_path.open("w") as log_file:
                    log_file.write(f"# Command: {cmd_str}\n")
                    log_file.write(f"# Started: {started_at.isoformat()}\n")
                    log_file.write(f"# CWD: {cwd or Path.cwd()}\n")
                    log_file.write("# " + "=" * 70 + "\n\n")
                    log_file.flush()
                    if stdout_path is not None:
                        stdout_path.parent.mkdir(parents=True, exist_ok=True)
                        with stdout_path.open("w") as out_file:
                            exit_code = self._spawn(
                                argv, cwd, env, out_file, log_file, timeout
                            )
                    else:
                        exit_code = self._spawn(
                            argv, cwd, env, log_file, subprocess.STDOUT, timeout
                        )

        except subprocess.TimeoutExpired as e:
            message = f"{label} timed out after {timeout} seconds"
            logger.error("%s. See log: %s", message, log_path)
            if log_path is not None:
                with log_path.open("a") as log_file:
                    log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
            raise ToolExecutionError(
                message,
                exit_code=-1,
                code="tool_timeout",
                log_path=str(log_path) if log_path else None,
            ) from e

        except OSError as e:
            message = f"Failed to execute {argv[0]}: {e}"
            logger.error(message)
            raise ToolExecutionError(
                message,
                exit_code=None,
                code="tool_not_started",
            ) from e

        finished_at = datetime.now(timezone.utc)
        success = exit_code == 0
        error_message: str | None = None
        if not success:
            error_message = f"{label} failed with exit code {exit_code}"
            logger.error("%s. See log: %s", error_message, log_path)

        if log_path is not None:
            with log_path.open("a") as log_file:
                log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
                log_file.write(f"# Exit code: {exit_code}\n")
                duration = (finished_at - started_at).total_seconds()
                log_file.write(f"# Duration: {duration:.1f}s\n")

        return ToolResult(
            success=success,
            exit_code=exit_code,
            command=cmd_str,
            log_path=log_path,
            started_at=started_at,
            finished_at=finished_at,
            error_message=error_message,
        )

    def run_checked(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        **kwargs: object,
    ) -> ToolResult:
        """Execute a tool and raise ToolExecutionError on non-zero exit."""
        result = self.run(cmd, **kwargs)  # type: ignore[arg-type]
        if not result.success:
            raise ToolExecutionError(
                f"{result.error_message}: {result.command}",
                exit_code=result.exit_code,
                code="tool_failed",
                log_path=str(result.log_path) if result.log_path else None,
            )
        return result


__all__ = [
    "CancellationToken",
    "ToolResult",
    "ToolRunner",
]
