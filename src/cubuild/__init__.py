"""cubuild - build-time GPU kernel compilation for host project builds.

Discovers CUDA kernel sources, compiles only what changed with nvcc, and
returns either a set of PTX files plus a generation descriptor or a static
library the host build can link.

Example (PTX):
    >>> from cubuild import BuildOptions, build_ptx
    >>>
    >>> options = BuildOptions.from_env(source_dirs=["src/kernels"])
    >>> result = build_ptx(options)
    >>> softmax_ptx = result.ptx("SOFTMAX")

Example (static library):
    >>> from cubuild import BuildOptions, build_lib
    >>>
    >>> options = BuildOptions.from_env(architectures=["75", "86"])
    >>> result = build_lib(options, "libkernels.a")
    >>> print(result.archive_path)
"""

from cubuild.build.aggregator import LibraryOutput, OutputMode, PtxOutput
from cubuild.build.compiler import Artifact, ArtifactKind
from cubuild.build.orchestrator import BuildResult, KernelBuildOrchestrator, build, build_lib, build_ptx
from cubuild.build.progress import CompileCallback, CompilePhase, CompileProgressDisplay
from cubuild.config import ArchEncoding, BuildOptions
from cubuild.errors import (
    ArchiveError,
    CapabilityResolutionError,
    CompileError,
    ConfigError,
    CubuildError,
    IoError,
    SourceDiscoveryError,
)
from cubuild.subprocess_utils import ProcessResult, ProcessRunner, SubprocessRunner

__version__ = "0.1.0"

__all__ = [
    "ArchEncoding",
    "ArchiveError",
    "Artifact",
    "ArtifactKind",
    "BuildOptions",
    "BuildResult",
    "CapabilityResolutionError",
    "CompileCallback",
    "CompileError",
    "CompilePhase",
    "CompileProgressDisplay",
    "ConfigError",
    "CubuildError",
    "IoError",
    "KernelBuildOrchestrator",
    "LibraryOutput",
    "OutputMode",
    "ProcessResult",
    "ProcessRunner",
    "PtxOutput",
    "SourceDiscoveryError",
    "SubprocessRunner",
    "build",
    "build_lib",
    "build_ptx",
]
