"""Build Options - configuration surface of a kernel build.

This module defines:
- ArchEncoding: How several target architectures are passed to the compiler
- BuildOptions: Every recognized option, with environment-variable fallbacks

Design:
    BuildOptions is created once by the host build step (directly or through
    BuildOptions.from_env()), validated before any compilation starts, and
    then flows read-only through the whole pipeline. Nothing in cubuild reads
    the environment after this point except toolchain discovery.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import psutil

from .errors import ConfigError

# Environment variables recognized by BuildOptions.from_env()
ENV_OUT_DIR = "OUT_DIR"
ENV_COMPILER = "NVCC"
ENV_COMPUTE_CAP = "CUDA_COMPUTE_CAP"
ENV_CCBIN = "NVCC_CCBIN"
ENV_NUM_THREADS = "CUBUILD_NUM_THREADS"

_OPT_LEVELS = ("0", "1", "2", "3")
_DEFINE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(=.*)?$")


class ArchEncoding(Enum):
    """How multiple target architectures are encoded per compile.

    SINGLE_INVOCATION passes every architecture to one compiler run using
    repeated --generate-code flags. PER_ARCH runs the compiler once per
    architecture, for toolchains that reject several targets in one run.
    PTX output always runs once per architecture because nvcc rejects
    --ptx with several targets.
    """

    SINGLE_INVOCATION = "single"
    PER_ARCH = "per-arch"

    def __str__(self) -> str:
        return self.value


def split_arch_list(value: str) -> tuple[str, ...]:
    """Split a comma or whitespace separated architecture list.

    Args:
        value: Raw value such as "75,86" or "75 86"

    Returns:
        Tuple of non-empty entries, in order
    """
    return tuple(part for part in re.split(r"[,\s]+", value.strip()) if part)


@dataclass(frozen=True)
class BuildOptions:
    """Options recognized by a kernel build.

    Relative paths are resolved against project_dir.

    Attributes:
        out_dir: Artifact directory (PTX files, objects, build record)
        project_dir: Root of the host project
        source_dirs: Directories scanned recursively for kernels and headers
        kernel_files: Explicit kernel files (replaces directory scanning)
        kernel_glob: Glob pattern for kernels (replaces directory scanning)
        include_glob: Glob pattern for headers (replaces directory scanning)
        include_dirs: Extra include directories passed as -I
        defines: Preprocessor defines, "NAME" or "NAME=VALUE"
        compiler: Device compiler binary override
        architectures: Explicit target architecture override (e.g. ("75", "86"))
        extra_args: Additional compiler flags, appended verbatim
        archiver: Archiver binary override (default: compiler --lib)
        ccbin: Host compiler passed to nvcc via -ccbin
        cuda_root: CUDA toolkit root override
        optimization_level: Device optimization level, "0" to "3"
        default_stream: Value for --default-stream (None to omit)
        num_workers: Parallel compiler processes (None = physical cores)
        arch_encoding: Single invocation or one invocation per architecture
        kernel_extensions: Extensions treated as kernel sources
        header_extensions: Extensions treated as headers
        env_architectures: Architectures requested through CUDA_COMPUTE_CAP
        show_progress: Render a live compile table
        verbose: Print phase and per-file output
    """

    out_dir: Path
    project_dir: Path = Path(".")
    source_dirs: tuple[Path, ...] = (Path("src"),)
    kernel_files: tuple[Path, ...] = ()
    kernel_glob: Optional[str] = None
    include_glob: Optional[str] = None
    include_dirs: tuple[Path, ...] = ()
    defines: tuple[str, ...] = ()
    compiler: Optional[str] = None
    architectures: tuple[str, ...] = ()
    extra_args: tuple[str, ...] = ()
    archiver: Optional[str] = None
    ccbin: Optional[str] = None
    cuda_root: Optional[Path] = None
    optimization_level: str = "3"
    default_stream: Optional[str] = "per-thread"
    num_workers: Optional[int] = None
    arch_encoding: ArchEncoding = ArchEncoding.SINGLE_INVOCATION
    kernel_extensions: tuple[str, ...] = (".cu",)
    header_extensions: tuple[str, ...] = (".cuh",)
    env_architectures: tuple[str, ...] = field(default=(), compare=False)
    show_progress: bool = False
    verbose: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "BuildOptions":
        """Create BuildOptions from environment variables plus explicit overrides.

        Explicit keyword arguments always win over the environment. When both
        an explicit architecture list and CUDA_COMPUTE_CAP are given, the
        environment value is kept in env_architectures so validate() can
        reject the contradiction.

        Args:
            environ: Environment mapping (defaults to os.environ)
            **overrides: Any BuildOptions field

        Returns:
            BuildOptions instance (not yet validated)

        Raises:
            ConfigError: If OUT_DIR is missing or CUBUILD_NUM_THREADS is not an integer
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        if "out_dir" not in overrides:
            out_dir = env.get(ENV_OUT_DIR)
            if not out_dir:
                raise ConfigError(f"No output directory: pass out_dir or set {ENV_OUT_DIR}")
            values["out_dir"] = Path(out_dir)

        if env.get(ENV_COMPILER):
            values["compiler"] = env[ENV_COMPILER]

        if env.get(ENV_CCBIN):
            values["ccbin"] = env[ENV_CCBIN]

        env_caps = split_arch_list(env.get(ENV_COMPUTE_CAP, ""))
        if env_caps:
            values["architectures"] = env_caps
            values["env_architectures"] = env_caps

        threads = env.get(ENV_NUM_THREADS)
        if threads:
            try:
                values["num_workers"] = int(threads)
            except ValueError:
                raise ConfigError(f"{ENV_NUM_THREADS} must be an integer, got {threads!r}")

        values.update(overrides)
        for key in ("source_dirs", "kernel_files", "include_dirs"):
            if key in values:
                values[key] = tuple(Path(p) for p in values[key])
        for key in ("defines", "architectures", "extra_args"):
            if key in values:
                values[key] = tuple(str(v) for v in values[key])
        if "out_dir" in values:
            values["out_dir"] = Path(values["out_dir"])
        return cls(**values)

    def validate(self) -> None:
        """Reject contradictory or malformed options.

        Raises:
            ConfigError: On the first invalid option found
        """
        if self.out_dir is None or not str(self.out_dir).strip():
            raise ConfigError("out_dir must not be empty")

        if self.num_workers is not None and self.num_workers < 1:
            raise ConfigError(f"num_workers must be at least 1, got {self.num_workers}")

        if self.optimization_level not in _OPT_LEVELS:
            raise ConfigError(f"optimization_level must be one of {', '.join(_OPT_LEVELS)}, got {self.optimization_level!r}")

        if self.env_architectures and set(self.env_architectures) != set(self.architectures):
            raise ConfigError(
                f"Conflicting architecture overrides: {ENV_COMPUTE_CAP}={','.join(self.env_architectures)} "
                f"but architectures={','.join(self.architectures)}"
            )

        if self.kernel_files and self.kernel_glob:
            raise ConfigError("kernel_files and kernel_glob are mutually exclusive")

        for define in self.defines:
            if not _DEFINE_PATTERN.match(define):
                raise ConfigError(f"Malformed preprocessor define: {define!r}")

        overlap = set(self.kernel_extensions) & set(self.header_extensions)
        if overlap:
            raise ConfigError(f"Extensions cannot be both kernel and header: {', '.join(sorted(overlap))}")

    def resolve(self, path: Path) -> Path:
        """Resolve a configured path against project_dir."""
        path = Path(path)
        if not path.is_absolute():
            path = self.project_dir / path
        return path.resolve()

    @property
    def resolved_out_dir(self) -> Path:
        """Absolute artifact directory."""
        return self.resolve(self.out_dir)

    def resolved_num_workers(self) -> int:
        """Number of parallel compiler processes to run.

        Returns:
            num_workers if set, else the physical core count, else the logical core count
        """
        if self.num_workers is not None:
            return self.num_workers
        return psutil.cpu_count(logical=False) or os.cpu_count() or 1

    def define_flags(self) -> list[str]:
        """Return -D flags for the configured defines."""
        return [f"-D{define}" for define in self.defines]
