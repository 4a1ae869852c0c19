"""
Error types for cubuild.

Every failure the orchestrator can surface is one of the classes below. Each
error keeps the originating file path (where there is one), the full command
line of the external tool that failed, and the raw diagnostic text that tool
printed, so a host build can tell a toolchain problem from a kernel bug.

Errors are raised on the first failure and propagate unmodified to the caller.
"""

from pathlib import Path
from typing import Optional, Sequence


class CubuildError(Exception):
    """Base class for all cubuild errors."""

    kind = "error"

    def __init__(
        self,
        message: str,
        path: Optional[Path] = None,
        command: Optional[Sequence[str]] = None,
        diagnostic: str = "",
    ):
        """Initialize error.

        Args:
            message: Short description of the failure
            path: File or directory the failure is about, if any
            command: Full argument list of the external tool, if any
            diagnostic: Raw stdout/stderr text of the external tool
        """
        super().__init__(message)
        self.message = message
        self.path = path
        self.command = tuple(command) if command is not None else None
        self.diagnostic = diagnostic

    def format(self) -> str:
        """Format error as human-readable string.

        Returns:
            Multi-line report with path, command and tool output
        """
        lines = [f"[{self.kind}] {self.message}"]

        if self.path is not None:
            lines.append(f"  File: {self.path}")

        if self.command:
            lines.append(f"  Command: {' '.join(self.command)}")

        if self.diagnostic:
            lines.append("  Output:")
            lines.extend(f"    {line}" for line in self.diagnostic.rstrip().splitlines())

        return "\n".join(lines)


class SourceDiscoveryError(CubuildError):
    """Raised when a configured source root or file is missing or unreadable."""

    kind = "source-discovery"


class CapabilityResolutionError(CubuildError):
    """Raised when the target architecture set cannot be determined."""

    kind = "capability"


class CompileError(CubuildError):
    """Raised when the device compiler exits non-zero for a source file."""

    kind = "compile"


class ArchiveError(CubuildError):
    """Raised when the archiver fails to produce the static library."""

    kind = "archive"


class IoError(CubuildError):
    """Raised when an artifact, header copy, descriptor or build record cannot be read or written."""

    kind = "io"


class ConfigError(CubuildError):
    """Raised for contradictory or invalid options, before any compilation starts."""

    kind = "config"
