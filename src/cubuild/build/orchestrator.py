"""
Kernel build orchestration.

This module runs one complete kernel build pass for a host build step:

    1. Validate options and collect kernel sources and headers
    2. Resolve target architectures
    3. Load the build record and decide which kernels are stale
    4. Compile stale kernels in parallel (fail-fast)
    5. Aggregate artifacts into PTX files + descriptor, or a static archive
    6. Save the build record

The first failure aborts the pass and propagates unchanged to the caller.
The build record is saved only after a pass completes, so a failed pass
leaves the previous record in place.
"""

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Sequence

from .. import output
from ..config import BuildOptions
from ..errors import ConfigError, IoError
from ..subprocess_utils import ProcessRunner, SubprocessRunner
from ..toolchain import CudaToolchain
from .aggregator import LibraryOutput, OutputAggregator, OutputMode, PtxOutput, module_name
from .build_record import RECORD_FILE_NAME, BuildRecord
from .capabilities import CapabilityResolver
from .change_tracker import ChangeTracker
from .compilation_queue import CompilationQueue
from .compiler import Artifact, CompilerInvoker
from .progress import CompileCallback, CompilePhase, CompileProgressDisplay
from .source_scanner import SourceCollection, SourceFile, SourceScanner

logger = logging.getLogger(__name__)

TOTAL_PHASES = 6


@dataclass(frozen=True)
class BuildResult:
    """Result of a kernel build pass.

    Attributes:
        mode: Output mode the pass ran with
        architectures: Target architectures, e.g. ("75", "86")
        artifacts: One artifact per kernel, sorted by source path
        compiled: Kernels compiled in this pass
        reused: Kernels whose previous artifacts were reused
        changed: True if any output file was created, replaced or removed
        descriptor_path: Generation descriptor (PTX mode)
        modules: Module name -> PTX path (PTX mode)
        archive_path: Static library (library mode)
        diagnostics: Non-fatal messages (architecture fallback, skipped checks)
        cuda_include_dir: CUDA include directory for the host build, if found
        inputs: Every kernel and header of the pass, for host rebuild tracking
        build_time: Wall-clock duration in seconds
    """

    mode: OutputMode
    architectures: tuple[str, ...]
    artifacts: tuple[Artifact, ...]
    compiled: tuple[Path, ...] = ()
    reused: tuple[Path, ...] = ()
    changed: bool = False
    descriptor_path: Optional[Path] = None
    modules: Dict[str, Path] = field(default_factory=dict)
    archive_path: Optional[Path] = None
    diagnostics: tuple[str, ...] = ()
    cuda_include_dir: Optional[Path] = None
    inputs: tuple[Path, ...] = ()
    build_time: float = 0.0

    def ptx(self, name: str) -> str:
        """Return the PTX text of a module by its symbolic name.

        Raises:
            KeyError: If no module has that name
            IoError: If the PTX file cannot be read
        """
        for artifact in self.artifacts:
            if module_name(artifact.source.stem) == name:
                return artifact.read_text()
        raise KeyError(name)


class KernelBuildOrchestrator:
    """Runs kernel build passes for one set of options."""

    def __init__(
        self,
        options: BuildOptions,
        runner: Optional[ProcessRunner] = None,
        progress_callback: Optional[CompileCallback] = None,
        toolchain: Optional[CudaToolchain] = None,
    ):
        """Initialize orchestrator.

        Args:
            options: Build options (validated at the start of every pass)
            runner: Process runner for every external tool (default: real subprocesses)
            progress_callback: Per-kernel progress receiver (default: live table
                when options.show_progress is set, otherwise nothing)
            toolchain: CUDA toolchain locations (default: discovered from options)
        """
        self.options = options
        self.runner: ProcessRunner = runner or SubprocessRunner()
        self.progress_callback = progress_callback
        self.toolchain = toolchain

    def build(self, mode: OutputMode) -> BuildResult:
        """Execute a complete build pass.

        Args:
            mode: PtxOutput or LibraryOutput

        Returns:
            BuildResult describing the produced artifacts

        Raises:
            CubuildError: On the first failure of any phase
        """
        start_time = time.time()
        options = self.options
        output.set_verbose(options.verbose)

        log_phase(1, "Collecting kernel sources...")
        options.validate()
        self._check_mode(mode)
        sources = self._collect_sources()
        self._check_collisions(sources.kernels)
        log_detail(f"Found {len(sources.kernels)} kernel(s), {len(sources.headers)} header(s)")

        out_dir = options.resolved_out_dir
        self._prepare_out_dir(out_dir)
        self._copy_headers(sources.headers, out_dir)

        toolchain = self.toolchain or CudaToolchain(options)
        compiler = toolchain.get_compiler()
        logger.debug(f"Device compiler: {compiler}")

        log_phase(2, "Resolving target architectures...")
        resolver = CapabilityResolver(self.runner, compiler, toolchain.get_device_query())
        arch_set = resolver.resolve(options.architectures)
        architectures = arch_set.architectures
        log_detail(", ".join(f"sm_{arch}" for arch in architectures))
        for message in arch_set.diagnostics:
            log_warning(message)

        log_phase(3, "Checking for changes...")
        record_file = out_dir / RECORD_FILE_NAME
        record = BuildRecord.load(record_file)
        invoker = CompilerInvoker(self.runner, compiler, mode.kind, options, sources.include_dirs())
        tracker = ChangeTracker(record, invoker)
        changes = tracker.partition(sources.kernels, architectures)
        for source, reason in changes.reasons.items():
            log_detail(f"{source.name}: {reason}", verbose_only=True)

        callback, display = self._make_callback(architectures)
        for artifact in changes.up_to_date:
            self._notify_cached(callback, artifact.source)

        log_phase(4, f"Compiling {len(changes.stale)} kernel(s)...")
        queue = CompilationQueue(invoker, options.resolved_num_workers(), callback)
        try:
            fresh = queue.run(changes.stale)
        finally:
            if display is not None:
                display.stop()

        units = {unit.path: unit for unit in changes.stale}
        for artifact in fresh:
            record.update(artifact.source, ChangeTracker.entry_for(units[artifact.source], artifact))
            output.log_file(mode.kind.value, artifact.source.name, verbose_only=True)
        for artifact in changes.up_to_date:
            output.log_file(mode.kind.value, artifact.source.name, cached=True, verbose_only=True)

        log_phase(5, "Aggregating outputs...")
        aggregator = OutputAggregator(mode, options, self.runner, compiler, toolchain.get_archiver())
        aggregate = aggregator.aggregate(fresh + changes.up_to_date, architectures, len(fresh), record)
        if aggregate.archive is not None:
            record.archive = aggregate.archive
        for path in aggregate.removed:
            log_detail(f"Removed stale {path.name}", verbose_only=True)

        log_phase(6, "Saving build record...")
        record.prune(source.path for source in sources.kernels)
        record.save(record_file)

        build_time = time.time() - start_time
        output.log_build_complete(build_time, verbose_only=True)

        return BuildResult(
            mode=mode,
            architectures=architectures,
            artifacts=aggregate.artifacts,
            compiled=tuple(artifact.source for artifact in sorted(fresh, key=lambda a: str(a.source))),
            reused=tuple(artifact.source for artifact in changes.up_to_date),
            changed=aggregate.changed,
            descriptor_path=aggregate.descriptor_path,
            modules=aggregate.modules,
            archive_path=aggregate.archive_path,
            diagnostics=arch_set.diagnostics,
            cuda_include_dir=toolchain.include_dir,
            inputs=tuple(source.path for source in sources.kernels + sources.headers),
            build_time=build_time,
        )

    def _check_mode(self, mode: OutputMode) -> None:
        if isinstance(mode, PtxOutput):
            if not mode.descriptor_name or Path(mode.descriptor_name).name != mode.descriptor_name:
                raise ConfigError(f"Descriptor name must be a plain file name, got {mode.descriptor_name!r}")
            return
        if isinstance(mode, LibraryOutput):
            archive_dir = self.options.resolve(mode.output_path).parent
            try:
                archive_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"Cannot create library output directory: {e}", path=archive_dir, diagnostic=str(e))
            return
        raise ConfigError(f"Unknown output mode: {mode!r}")

    def _collect_sources(self) -> SourceCollection:
        """Select kernels and headers independently.

        Kernels come from kernel_files, else kernel_glob, else the source_dirs
        scan. Headers come from include_glob, else the source_dirs scan. When
        kernels are listed explicitly, missing source roots only mean "no
        headers".
        """
        options = self.options
        scanner = SourceScanner(options.project_dir, options.kernel_extensions, options.header_extensions)
        explicit_kernels = bool(options.kernel_files or options.kernel_glob)

        scanned = SourceCollection()
        if not explicit_kernels or not options.include_glob:
            scanned = scanner.scan(options.source_dirs, missing_ok=explicit_kernels)

        if options.kernel_files:
            kernels = scanner.scan_files(options.kernel_files).kernels
        elif options.kernel_glob:
            kernels = scanner.scan_glob(options.kernel_glob, None).kernels
        else:
            kernels = scanned.kernels

        if options.include_glob:
            headers = scanner.scan_glob(None, options.include_glob).headers
        else:
            headers = scanned.headers

        return SourceCollection(kernels=kernels, headers=headers)

    def _check_collisions(self, kernels: Sequence[SourceFile]) -> None:
        """Reject kernels that would write the same output file or module name."""
        seen: Dict[str, Path] = {}
        for source in kernels:
            name = module_name(source.stem)
            if name in seen:
                raise ConfigError(
                    f"Kernels {seen[name]} and {source.path} map to the same output name {source.stem!r}",
                    path=source.path,
                )
            seen[name] = source.path

    def _prepare_out_dir(self, out_dir: Path) -> None:
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IoError(f"Cannot create output directory: {e}", path=out_dir, diagnostic=str(e))

    def _copy_headers(self, headers: Sequence[SourceFile], out_dir: Path) -> None:
        """Copy headers next to the artifacts, skipping unchanged copies."""
        copied: Dict[str, Path] = {}
        for header in headers:
            name = header.path.name
            if name in copied:
                logger.warning(f"Header {header.path} not copied: {copied[name]} has the same name")
                continue
            copied[name] = header.path
            target = out_dir / name
            try:
                if target.is_file() and target.read_bytes() == header.path.read_bytes():
                    continue
                shutil.copy2(header.path, target)
            except OSError as e:
                raise IoError(f"Cannot copy header {name}: {e}", path=target, diagnostic=str(e))
            logger.debug(f"Copied header {header.path} -> {target}")

    def _make_callback(self, architectures: Sequence[str]) -> tuple[Optional[CompileCallback], Optional[CompileProgressDisplay]]:
        if self.progress_callback is not None:
            return self.progress_callback, None
        if not self.options.show_progress:
            return None, None
        title = f"Compiling kernels for {', '.join('sm_' + arch for arch in architectures)}"
        display = CompileProgressDisplay(None, title)
        display.start()
        return display, display

    @staticmethod
    def _notify_cached(callback: Optional[CompileCallback], source: Path) -> None:
        if callback is None:
            return
        try:
            callback.on_progress(source, CompilePhase.CACHED, "")
        except Exception as e:
            logger.error(f"Progress callback error: {e}", exc_info=True)


def log_phase(phase: int, message: str) -> None:
    output.log_phase(phase, TOTAL_PHASES, message, verbose_only=True)


def log_detail(message: str, verbose_only: bool = True) -> None:
    output.log_detail(message, verbose_only=verbose_only)


def log_warning(message: str) -> None:
    if output.is_verbose():
        output.log_warning(message)


def build(
    options: BuildOptions,
    mode: OutputMode,
    runner: Optional[ProcessRunner] = None,
    progress_callback: Optional[CompileCallback] = None,
) -> BuildResult:
    """Run one kernel build pass.

    Args:
        options: Build options
        mode: PtxOutput or LibraryOutput
        runner: Process runner for every external tool (default: real subprocesses)
        progress_callback: Per-kernel progress receiver

    Returns:
        BuildResult

    Raises:
        CubuildError: On the first failure
    """
    return KernelBuildOrchestrator(options, runner, progress_callback).build(mode)


def build_ptx(
    options: BuildOptions,
    descriptor_name: str = "kernels.json",
    runner: Optional[ProcessRunner] = None,
    progress_callback: Optional[CompileCallback] = None,
) -> BuildResult:
    """Compile every kernel to PTX and write the generation descriptor."""
    return build(options, PtxOutput(descriptor_name=descriptor_name), runner, progress_callback)


def build_lib(
    options: BuildOptions,
    output_path: Path,
    runner: Optional[ProcessRunner] = None,
    progress_callback: Optional[CompileCallback] = None,
) -> BuildResult:
    """Compile every kernel to an object file and archive them into a static library."""
    return build(options, LibraryOutput(output_path=Path(output_path)), runner, progress_callback)

