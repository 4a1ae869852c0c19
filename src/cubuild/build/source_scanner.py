"""Kernel Source Scanner.

This module discovers kernel sources and headers in a host project.

Discovery Rules:
    - Each configured source root is walked recursively
    - Files whose extension is a kernel extension (.cu) become KERNEL sources
    - Files whose extension is a header extension (.cuh) become HEADER sources
    - Everything else is ignored
    - Results are sorted lexicographically by path and deduplicated, so
      overlapping roots never produce the same file twice

Alternatively an explicit kernel file list or glob patterns can replace the
directory walk.
"""

import glob
import hashlib
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..errors import SourceDiscoveryError

logger = logging.getLogger(__name__)


class SourceKind(Enum):
    """Role of a discovered file."""

    KERNEL = "kernel"
    HEADER = "header"


@dataclass(frozen=True)
class SourceFile:
    """A discovered source file, immutable for one build pass."""

    path: Path
    content_hash: str
    kind: SourceKind
    mtime: float

    @property
    def stem(self) -> str:
        """File name without its final extension (e.g. "softmax" for softmax.cu)."""
        return self.path.stem


@dataclass
class SourceCollection:
    """All files found by one scan, each list sorted by path."""

    kernels: List[SourceFile] = field(default_factory=list)
    headers: List[SourceFile] = field(default_factory=list)

    def include_dirs(self) -> List[Path]:
        """Directories containing headers, sorted and deduplicated."""
        return sorted({header.path.parent for header in self.headers}, key=str)

    def __len__(self) -> int:
        return len(self.kernels) + len(self.headers)


def hash_file(file_path: Path) -> str:
    """Calculate SHA256 hash of file contents.

    Args:
        file_path: Path to file

    Returns:
        SHA256 hash as hex string

    Raises:
        OSError: If file cannot be read
    """
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


class SourceScanner:
    """Finds kernel sources and headers for a build."""

    def __init__(
        self,
        project_dir: Path,
        kernel_extensions: Sequence[str] = (".cu",),
        header_extensions: Sequence[str] = (".cuh",),
    ):
        """Initialize scanner.

        Args:
            project_dir: Host project root, used to resolve relative paths
            kernel_extensions: Extensions treated as kernel sources
            header_extensions: Extensions treated as headers
        """
        self.project_dir = Path(project_dir)
        self.kernel_extensions = tuple(ext.lower() for ext in kernel_extensions)
        self.header_extensions = tuple(ext.lower() for ext in header_extensions)

    def scan(self, source_dirs: Sequence[Path], missing_ok: bool = False) -> SourceCollection:
        """Walk source roots and collect kernels and headers.

        Args:
            source_dirs: Root directories (relative to project_dir or absolute)
            missing_ok: Skip roots that do not exist instead of failing

        Returns:
            SourceCollection sorted by path

        Raises:
            SourceDiscoveryError: If a root is missing, not a directory or unreadable
        """
        found: set[Path] = set()
        for source_dir in source_dirs:
            root = self._resolve(source_dir)
            if missing_ok and not root.exists():
                logger.debug(f"Skipping missing source root: {root}")
                continue
            self._check_root(root)
            found.update(self._walk(root))

        collection = self._collect(found)
        logger.info(
            f"Scanned {len(source_dirs)} source root(s): "
            f"{len(collection.kernels)} kernels, {len(collection.headers)} headers"
        )
        return collection

    def scan_files(self, kernel_files: Sequence[Path], header_files: Sequence[Path] = ()) -> SourceCollection:
        """Collect an explicit list of files.

        Args:
            kernel_files: Kernel sources
            header_files: Headers

        Returns:
            SourceCollection sorted by path

        Raises:
            SourceDiscoveryError: If any listed file does not exist
        """
        paths = [self._resolve(p) for p in list(kernel_files) + list(header_files)]
        missing = [p for p in paths if not p.is_file()]
        if missing:
            raise SourceDiscoveryError(
                f"Kernel paths do not exist: {', '.join(str(p) for p in missing)}",
                path=missing[0],
            )
        return self._collect(paths)

    def scan_glob(self, kernel_glob: Optional[str], include_glob: Optional[str]) -> SourceCollection:
        """Collect files matching glob patterns ("**" recurses).

        Args:
            kernel_glob: Pattern for kernel sources (e.g. "src/**/*.cu")
            include_glob: Pattern for headers (e.g. "src/**/*.cuh")

        Returns:
            SourceCollection sorted by path
        """
        paths: set[Path] = set()
        for pattern in (kernel_glob, include_glob):
            if not pattern:
                continue
            full = pattern if os.path.isabs(pattern) else os.path.join(str(self.project_dir), pattern)
            matches = [Path(m).resolve() for m in glob.glob(full, recursive=True)]
            logger.debug(f"Glob {pattern!r} matched {len(matches)} file(s)")
            paths.update(m for m in matches if m.is_file())
        return self._collect(paths)

    def _resolve(self, path: Path) -> Path:
        path = Path(path)
        if not path.is_absolute():
            path = self.project_dir / path
        return path.resolve()

    def _check_root(self, root: Path) -> None:
        if not root.exists():
            raise SourceDiscoveryError(f"Source directory does not exist: {root}", path=root)
        if not root.is_dir():
            raise SourceDiscoveryError(f"Source path is not a directory: {root}", path=root)
        if not os.access(root, os.R_OK | os.X_OK):
            raise SourceDiscoveryError(f"Source directory is not readable: {root}", path=root)

    def _walk(self, root: Path) -> Iterable[Path]:
        def on_error(exc: OSError) -> None:
            raise SourceDiscoveryError(
                f"Cannot read source directory: {exc.filename}",
                path=Path(exc.filename) if exc.filename else root,
                diagnostic=str(exc),
            )

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            dirnames.sort()
            for name in filenames:
                if self._classify(Path(name)) is not None:
                    yield Path(dirpath) / name

    def _classify(self, path: Path) -> Optional[SourceKind]:
        suffix = path.suffix.lower()
        if suffix in self.kernel_extensions:
            return SourceKind.KERNEL
        if suffix in self.header_extensions:
            return SourceKind.HEADER
        return None

    def _collect(self, paths: Iterable[Path]) -> SourceCollection:
        collection = SourceCollection()
        for path in sorted(set(paths), key=str):
            kind = self._classify(path)
            if kind is None:
                logger.debug(f"Ignoring file with unrecognized extension: {path}")
                continue
            try:
                source = SourceFile(
                    path=path,
                    content_hash=hash_file(path),
                    kind=kind,
                    mtime=path.stat().st_mtime,
                )
            except OSError as e:
                raise SourceDiscoveryError(f"Cannot read source file: {path}", path=path, diagnostic=str(e))

            if kind is SourceKind.KERNEL:
                collection.kernels.append(source)
            else:
                collection.headers.append(source)
        return collection
