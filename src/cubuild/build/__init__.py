"""Kernel build pipeline: discovery, change tracking, compilation and aggregation."""

from .aggregator import LibraryOutput, OutputAggregator, OutputMode, PtxOutput, module_name
from .build_record import RECORD_FILE_NAME, BuildRecord, RecordEntry
from .capabilities import DEFAULT_ARCHITECTURE, ArchitectureSet, CapabilityResolver
from .change_tracker import ChangeSet, ChangeTracker
from .compilation_queue import CompilationQueue
from .compiler import Artifact, ArtifactKind, CompilerCommand, CompilerInvoker, CompileUnit
from .orchestrator import BuildResult, KernelBuildOrchestrator, build, build_lib, build_ptx
from .progress import CompileCallback, CompilePhase, CompileProgressDisplay, NullCallback
from .source_scanner import SourceFile, SourceKind, SourceScanner

__all__ = [
    "Artifact",
    "ArtifactKind",
    "ArchitectureSet",
    "BuildRecord",
    "BuildResult",
    "CapabilityResolver",
    "ChangeSet",
    "ChangeTracker",
    "CompilationQueue",
    "CompileCallback",
    "CompilePhase",
    "CompileProgressDisplay",
    "CompilerCommand",
    "CompilerInvoker",
    "CompileUnit",
    "DEFAULT_ARCHITECTURE",
    "KernelBuildOrchestrator",
    "LibraryOutput",
    "NullCallback",
    "OutputAggregator",
    "OutputMode",
    "PtxOutput",
    "RECORD_FILE_NAME",
    "RecordEntry",
    "SourceFile",
    "SourceKind",
    "SourceScanner",
    "build",
    "build_lib",
    "build_ptx",
    "module_name",
]
