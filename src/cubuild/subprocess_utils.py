"""Subprocess utilities for platform-safe process execution.

Every external tool cubuild drives (the device compiler, the archiver and the
device query) runs through a ``ProcessRunner``. The default implementation
wraps subprocess and automatically applies platform-specific flags to prevent
console window flashing on Windows. Tests substitute a fake runner to assert on
the constructed commands without a CUDA toolkit installed.
"""

import logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

logger = logging.getLogger(__name__)


def get_subprocess_creation_flags() -> int:
    """Get platform-specific subprocess creation flags.

    Returns:
        - Windows: subprocess.CREATE_NO_WINDOW (prevents console window)
        - Other platforms: 0 (no special flags)
    """
    if sys.platform == "win32":
        return subprocess.CREATE_NO_WINDOW
    return 0


def safe_run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
    """Execute subprocess.run with platform-specific flags.

    Automatically applies:
    - CREATE_NO_WINDOW on Windows (prevents console window)
    - stdin=DEVNULL (prevents console input handle inheritance)

    Args:
        cmd: Command and arguments (same as subprocess.run)
        **kwargs: Additional arguments passed to subprocess.run

    Returns:
        CompletedProcess result from subprocess.run

    Note:
        - If 'creationflags' is explicitly provided in kwargs,
          it will be OR'd with platform defaults to preserve custom flags.
        - If 'stdin' is explicitly provided in kwargs, it will be used as-is.
          Otherwise, stdin is automatically redirected to subprocess.DEVNULL.
    """
    default_flags = get_subprocess_creation_flags()

    if "creationflags" in kwargs:
        kwargs["creationflags"] = kwargs["creationflags"] | default_flags
    elif default_flags:
        kwargs["creationflags"] = default_flags

    # Child compilers must not inherit the console input handle
    if "stdin" not in kwargs:
        kwargs["stdin"] = subprocess.DEVNULL

    return subprocess.run(cmd, **kwargs)


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of one external tool invocation."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """True when the tool exited with status 0."""
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, in the layout used for error reports."""
        parts = []
        if self.stdout.strip():
            parts.append(f"# stdout\n{self.stdout.rstrip()}")
        if self.stderr.strip():
            parts.append(f"# stderr\n{self.stderr.rstrip()}")
        return "\n\n".join(parts)


@runtime_checkable
class ProcessRunner(Protocol):
    """Capability to execute an external tool and capture its output."""

    def run(self, cmd: Sequence[str], cwd: Optional[Path] = None) -> ProcessResult:
        """Run a command to completion.

        Args:
            cmd: Program and arguments
            cwd: Working directory (None = inherit)

        Returns:
            ProcessResult with exit status and captured output

        Raises:
            OSError: If the program cannot be started
        """
        ...


class SubprocessRunner:
    """ProcessRunner backed by the real subprocess module."""

    def __init__(self, timeout: Optional[float] = None):
        """Initialize runner.

        Args:
            timeout: Per-invocation timeout in seconds (None = wait forever)
        """
        self.timeout = timeout

    def run(self, cmd: Sequence[str], cwd: Optional[Path] = None) -> ProcessResult:
        argv = [str(arg) for arg in cmd]
        logger.debug(f"Running: {' '.join(argv)}")
        try:
            completed = safe_run(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"{argv[0]} timed out after {self.timeout}s")
            return ProcessResult(returncode=-1, stderr=f"{argv[0]} timed out after {self.timeout}s")

        return ProcessResult(
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
