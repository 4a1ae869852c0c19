"""Device Compiler Invocation.

This module turns stale kernel sources into PTX text or object files by
running the device compiler once per source.

Command Layout:
    nvcc <mode> <architectures> --default-stream per-thread -O<level>
         -I<dir>... -D<define>... <extra args>
         [-allow-unsupported-compiler -ccbin <host compiler>]
         -o <output> <source>

    <mode>           --ptx (PTX artifacts) or -c (object files)
    <architectures>  one target:     --gpu-architecture=sm_86
                     several targets: --generate-code=arch=compute_75,code=sm_75
                                      --generate-code=arch=compute_86,code=sm_86
                     (ArchEncoding.PER_ARCH instead runs one command per target,
                      writing <stem>.sm_XX.ptx / <stem>.sm_XX.o)

nvcc refuses --ptx together with several targets, so PTX artifacts for more
than one architecture are always compiled one command per target, whatever
the configured encoding.

Every command is built fresh for its compile unit and never modified after
construction. A failed command raises CompileError with the source, the full
command and the compiler output; outputs left behind by the failed unit are
deleted so no partially valid artifact survives.
"""

import hashlib
import json
import logging
import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Sequence

from ..config import ArchEncoding, BuildOptions
from ..errors import CompileError, IoError
from ..subprocess_utils import ProcessRunner
from .source_scanner import SourceFile

logger = logging.getLogger(__name__)


class ArtifactKind(Enum):
    """Kind of file the compiler produces for a source."""

    PTX = "ptx"
    OBJECT = "obj"

    @property
    def suffix(self) -> str:
        return ".ptx" if self is ArtifactKind.PTX else ".o"

    @property
    def mode_flag(self) -> str:
        return "--ptx" if self is ArtifactKind.PTX else "-c"


@dataclass(frozen=True)
class Artifact:
    """Compiled output of one kernel source.

    Attributes:
        source: Kernel source path
        kind: PTX text or object file
        paths: Output files, one per compiler invocation
        architectures: Architectures the outputs were compiled for
        reused: True when taken from the previous pass without compiling
    """

    source: Path
    kind: ArtifactKind
    paths: tuple[Path, ...]
    architectures: tuple[str, ...]
    reused: bool = False

    @property
    def path(self) -> Path:
        """Primary output file (lowest architecture when compiled per architecture)."""
        return self.paths[0]

    def read_text(self) -> str:
        """Return the PTX text of the primary output.

        Raises:
            IoError: If the artifact is not PTX or cannot be read
        """
        if self.kind is not ArtifactKind.PTX:
            raise IoError(f"Artifact for {self.source.name} is not PTX", path=self.path)
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise IoError(f"Cannot read PTX artifact: {e}", path=self.path, diagnostic=str(e))


@dataclass(frozen=True)
class CompileUnit:
    """A kernel source bound to everything needed to compile it once."""

    source: SourceFile
    architectures: tuple[str, ...]
    outputs: tuple[Path, ...]
    flags_fingerprint: str

    @property
    def path(self) -> Path:
        return self.source.path


@dataclass(frozen=True)
class CompilerCommand:
    """Concrete argument list for one compiler invocation."""

    argv: tuple[str, ...]
    source: Path
    output: Path
    architectures: tuple[str, ...]

    def __str__(self) -> str:
        return " ".join(shlex.quote(arg) for arg in self.argv)


class CompilerInvoker:
    """Builds and runs device compiler commands for compile units."""

    def __init__(
        self,
        runner: ProcessRunner,
        compiler: str,
        kind: ArtifactKind,
        options: BuildOptions,
        include_dirs: Sequence[Path] = (),
    ):
        """Initialize compiler invoker.

        Args:
            runner: Process runner for the compiler
            compiler: Device compiler binary
            kind: Artifact kind to produce
            options: Build options (flags, defines, encoding, output directory)
            include_dirs: Include directories, in addition to options.include_dirs
        """
        self.runner = runner
        self.compiler = compiler
        self.kind = kind
        self.options = options
        self.out_dir = options.resolved_out_dir
        self.include_dirs = self._merge_include_dirs(include_dirs)
        self._base_flags = self._build_base_flags()
        self._fingerprint = self._compute_fingerprint()

    def _merge_include_dirs(self, discovered: Sequence[Path]) -> List[Path]:
        merged: List[Path] = []
        for path in [self.options.resolve(p) for p in self.options.include_dirs] + list(discovered):
            if path not in merged:
                merged.append(path)
        return merged

    def _build_base_flags(self) -> List[str]:
        flags: List[str] = []
        if self.options.default_stream:
            flags.extend(["--default-stream", self.options.default_stream])
        flags.append(f"-O{self.options.optimization_level}")
        flags.extend(f"-I{path}" for path in self.include_dirs)
        flags.extend(self.options.define_flags())
        flags.extend(self.options.extra_args)
        if self.options.ccbin:
            flags.extend(["-allow-unsupported-compiler", "-ccbin", self.options.ccbin])
        return flags

    def _compute_fingerprint(self) -> str:
        payload = json.dumps([self.compiler, self.kind.value, str(self.options.arch_encoding), self._base_flags])
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @property
    def flags_fingerprint(self) -> str:
        """Fingerprint of every flag except architectures, output and source."""
        return self._fingerprint

    @property
    def output_dir(self) -> Path:
        """Directory receiving this invoker's outputs."""
        if self.kind is ArtifactKind.PTX:
            return self.out_dir
        return self.out_dir / "obj"

    def _per_arch(self, architectures: Sequence[str]) -> bool:
        if len(architectures) < 2:
            return False
        return self.kind is ArtifactKind.PTX or self.options.arch_encoding is ArchEncoding.PER_ARCH

    def output_paths(self, source: SourceFile, architectures: Sequence[str]) -> tuple[Path, ...]:
        """Expected outputs for a source, one per compiler invocation.

        Args:
            source: Kernel source
            architectures: Target architectures

        Returns:
            Output paths, ordered like the invocations
        """
        if self._per_arch(architectures):
            return tuple(self.output_dir / f"{source.stem}.sm_{arch}{self.kind.suffix}" for arch in architectures)
        return (self.output_dir / f"{source.stem}{self.kind.suffix}",)

    def make_unit(self, source: SourceFile, architectures: Sequence[str]) -> CompileUnit:
        """Bind a source to the current flags and architectures."""
        archs = tuple(architectures)
        return CompileUnit(
            source=source,
            architectures=archs,
            outputs=self.output_paths(source, archs),
            flags_fingerprint=self._fingerprint,
        )

    def arch_flags(self, architectures: Sequence[str]) -> List[str]:
        """Architecture flags for one invocation.

        Args:
            architectures: Architectures handled by this invocation

        Returns:
            --gpu-architecture for a single target, one --generate-code per target otherwise
        """
        if len(architectures) == 1:
            return [f"--gpu-architecture=sm_{architectures[0]}"]
        return [f"--generate-code=arch=compute_{arch},code=sm_{arch}" for arch in architectures]

    def commands(self, unit: CompileUnit) -> List[CompilerCommand]:
        """Build the compiler commands for a compile unit.

        Args:
            unit: Compile unit

        Returns:
            One command per output of the unit
        """
        if self._per_arch(unit.architectures):
            groups = [(arch,) for arch in unit.architectures]
        else:
            groups = [unit.architectures]

        commands = []
        for archs, output in zip(groups, unit.outputs):
            argv = [self.compiler, self.kind.mode_flag]
            argv.extend(self.arch_flags(archs))
            argv.extend(self._base_flags)
            argv.extend(["-o", str(output), str(unit.path)])
            commands.append(CompilerCommand(argv=tuple(argv), source=unit.path, output=output, architectures=archs))
        return commands

    def compile(self, unit: CompileUnit) -> Artifact:
        """Compile one unit.

        Args:
            unit: Compile unit

        Returns:
            Fresh Artifact for the unit

        Raises:
            CompileError: If the compiler cannot be started, exits non-zero or produces no output
            IoError: If the output directory cannot be created
        """
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IoError(f"Cannot create output directory: {e}", path=self.output_dir, diagnostic=str(e))

        for command in self.commands(unit):
            logger.debug(f"Compiling {unit.path.name}: {command}")
            try:
                result = self.runner.run(command.argv)
            except OSError as e:
                self._discard_outputs(unit)
                raise CompileError(
                    f"Failed to start {self.compiler} while compiling {unit.path.name}. "
                    "Ensure that CUDA is installed and nvcc is in your PATH.",
                    path=unit.path,
                    command=command.argv,
                    diagnostic=str(e),
                )

            if not result.ok:
                self._discard_outputs(unit)
                logger.error(f"{self.compiler} failed with exit code {result.returncode}: {unit.path.name}")
                raise CompileError(
                    f"{Path(self.compiler).name} error while compiling {unit.path.name}",
                    path=unit.path,
                    command=command.argv,
                    diagnostic=result.output or f"{self.compiler} exited with status {result.returncode}",
                )

            if result.stderr.strip():
                logger.warning(f"{unit.path.name}: {result.stderr.strip()}")

            if not command.output.is_file():
                self._discard_outputs(unit)
                raise CompileError(
                    f"{Path(self.compiler).name} reported success but wrote no output for {unit.path.name}",
                    path=unit.path,
                    command=command.argv,
                    diagnostic=result.output or f"missing {command.output}",
                )

        return Artifact(
            source=unit.path,
            kind=self.kind,
            paths=unit.outputs,
            architectures=unit.architectures,
        )

    def _discard_outputs(self, unit: CompileUnit) -> None:
        for output in unit.outputs:
            try:
                output.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove partial output {output}: {e}")
