"""Error taxonomy for kernel_xtask.

Every error carries a stable ``code`` for programmatic handling and an
optional ``stage`` naming the pipeline stage that produced it. The
dispatcher fills ``stage`` for errors raised inside a stage.
"""

from __future__ import annotations

# Stable error codes
INVALID_ARCHITECTURE = "invalid_architecture"
INVALID_FEATURE_COMBINATION = "invalid_feature_combination"
TOOLCHAIN_MISSING = "toolchain_missing"
OVERLAY_FAILED = "overlay_failed"
PACKAGING_FAILED = "packaging_failed"
RESIZE_FAILED = "resize_failed"
ARTIFACT_NOT_FOUND = "artifact_not_found"
UNKNOWN_COMMAND = "unknown_command"
TOOL_EXECUTION_ERROR = "tool_execution_error"
FETCH_ERROR = "fetch_error"
LAUNCH_CONFIG_ERROR = "launch_config_error"
LAUNCH_FAILED = "launch_failed"
BUILD_CANCELLED = "build_cancelled"
STAGE_FAILED = "stage_failed"


class XtaskError(Exception):
    """Base error for all orchestration failures."""

    default_code = "xtask_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.stage = stage

    def describe(self) -> str:
        """Render as ``[stage] code: message``."""
        prefix = f"[{self.stage}] " if self.stage else ""
        return f"{prefix}{self.code}: {self.message}"


class InvalidArchitecture(XtaskError):
    """Architecture string is not one of the supported targets."""

    default_code = INVALID_ARCHITECTURE

    def __init__(self, arch: str) -> None:
        super().__init__(f"Unsupported architecture: {arch!r}")
        self.arch = arch


class InvalidFeatureCombination(XtaskError):
    """Board or feature flags are unknown or contradict each other."""

    default_code = INVALID_FEATURE_COMBINATION


class ToolchainMissing(XtaskError):
    """Cross compiler for an architecture is not discoverable."""

    default_code = TOOLCHAIN_MISSING

    def __init__(self, arch: str, compiler: str, search_path: str) -> None:
        super().__init__(
            f"Toolchain for {arch} not found: {compiler} is not on {search_path!r}"
        )
        self.arch = arch
        self.compiler = compiler


class OverlayFailed(XtaskError):
    """An overlay (or the base filesystem) could not be applied."""

    default_code = OVERLAY_FAILED

    def __init__(self, name: str, cause: str | BaseException) -> None:
        super().__init__(f"Overlay {name} failed: {cause}")
        self.name = name
        self.cause = cause


class PackagingFailed(XtaskError):
    """The filesystem packer failed or was given an unusable tree."""

    default_code = PACKAGING_FAILED


class ResizeFailed(XtaskError):
    """Growing the packed image failed."""

    default_code = RESIZE_FAILED


class ArtifactNotFound(XtaskError):
    """An expected compiled artifact does not exist yet."""

    default_code = ARTIFACT_NOT_FOUND

    def __init__(self, path: str) -> None:
        super().__init__(f"Artifact not found: {path} (build it first)")
        self.path = path


class UnknownCommand(XtaskError):
    """Command name is not registered with the dispatcher."""

    default_code = UNKNOWN_COMMAND

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown command: {name!r}")
        self.name = name


class ToolExecutionError(XtaskError):
    """An external tool could not be run or exited non-zero."""

    default_code = TOOL_EXECUTION_ERROR

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.exit_code = exit_code
        self.log_path = log_path


class FetchError(XtaskError):
    """Downloading or extracting a prebuilt archive failed."""

    default_code = FETCH_ERROR


class LaunchConfigError(XtaskError):
    """A launch was requested with an invalid configuration."""

    default_code = LAUNCH_CONFIG_ERROR


class LaunchFailed(XtaskError):
    """The emulator or debugger could not be started or reached."""

    default_code = LAUNCH_FAILED


class BuildCancelled(XtaskError):
    """Cancellation was requested before the next external tool ran."""

    default_code = BUILD_CANCELLED


class StageFailed(XtaskError):
    """Unexpected OS-level failure inside a dispatcher stage."""

    default_code = STAGE_FAILED

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}", stage=stage)
        self.cause = cause


__all__ = [
    "ArtifactNotFound",
    "BuildCancelled",
    "FetchError",
    "InvalidArchitecture",
    "InvalidFeatureCombination",
    "LaunchConfigError",
    "LaunchFailed",
    "OverlayFailed",
    "PackagingFailed",
    "ResizeFailed",
    "StageFailed",
    "ToolExecutionError",
    "ToolchainMissing",
    "UnknownCommand",
    "XtaskError",
]
