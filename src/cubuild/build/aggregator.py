"""Output aggregation.

Turns the per-kernel artifacts of a pass into the shape the host build asked
for. The shape is a tagged variant chosen by the caller and dispatched once
here:

    PtxOutput       PTX files stay in the output directory, one per kernel
                    (<stem>.ptx). A generation descriptor mapping symbolic
                    module names to PTX paths is written next to them for the
                    code-emission step of the host build. PTX files left over
                    from deleted kernels are removed.

    LibraryOutput   All object files (fresh and reused) are archived into a
                    single static library at the configured path.

Artifacts are always aggregated in lexicographic source order, whatever order
the compiler processes finished in, so archives and descriptors are
reproducible.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Dict, List, Optional, Sequence, Union

from ..config import BuildOptions
from ..errors import ArchiveError, IoError
from ..subprocess_utils import ProcessRunner
from .build_record import ArchiveEntry, BuildRecord
from .compiler import Artifact, ArtifactKind

logger = logging.getLogger(__name__)

DESCRIPTOR_VERSION = 1


@dataclass(frozen=True)
class PtxOutput:
    """Emit PTX text files plus a generation descriptor.

    Attributes:
        descriptor_name: File name of the descriptor inside the output directory
    """

    descriptor_name: str = "kernels.json"
    kind: ClassVar[ArtifactKind] = ArtifactKind.PTX
    label: ClassVar[str] = "ptx"


@dataclass(frozen=True)
class LibraryOutput:
    """Compile object files and archive them into one static library.

    Attributes:
        output_path: Archive to produce (e.g. "libkernels.a")
    """

    output_path: Path
    kind: ClassVar[ArtifactKind] = ArtifactKind.OBJECT
    label: ClassVar[str] = "lib"


OutputMode = Union[PtxOutput, LibraryOutput]


def module_name(stem: str) -> str:
    """Symbolic module name for a kernel stem ("layer_norm.fwd" -> "LAYER_NORM_FWD")."""
    return re.sub(r"[^0-9A-Za-z_]", "_", stem).upper()


@dataclass(frozen=True)
class AggregateResult:
    """What the aggregation step produced.

    Attributes:
        artifacts: All artifacts of the pass, sorted by source path
        changed: True if any output file was created, replaced or removed
        descriptor_path: Generation descriptor (PTX mode)
        modules: Module name -> primary PTX path (PTX mode)
        removed: Stale PTX files deleted (PTX mode)
        archive_path: Static library (library mode)
        archive: Archive record entry (library mode)
    """

    artifacts: tuple[Artifact, ...]
    changed: bool
    descriptor_path: Optional[Path] = None
    modules: Dict[str, Path] = field(default_factory=dict)
    removed: tuple[Path, ...] = ()
    archive_path: Optional[Path] = None
    archive: Optional[ArchiveEntry] = None


class OutputAggregator:
    """Assembles artifacts into a PTX file set or a static archive."""

    def __init__(
        self,
        mode: OutputMode,
        options: BuildOptions,
        runner: ProcessRunner,
        compiler: str,
        archiver: Optional[str] = None,
    ):
        """Initialize aggregator.

        Args:
            mode: PtxOutput or LibraryOutput
            options: Build options
            runner: Process runner for the archiver
            compiler: Device compiler (archives through --lib when no archiver is set)
            archiver: Archiver override (invoked as `<archiver> rcs <archive> <objects>`)
        """
        self.mode = mode
        self.options = options
        self.runner = runner
        self.compiler = compiler
        self.archiver = archiver
        self.out_dir = options.resolved_out_dir

    def aggregate(
        self,
        artifacts: Sequence[Artifact],
        architectures: Sequence[str],
        compiled_count: int,
        record: BuildRecord,
    ) -> AggregateResult:
        """Aggregate the artifacts of a pass.

        Args:
            artifacts: Fresh and reused artifacts, in any order
            architectures: Target architectures of the pass
            compiled_count: Number of units compiled in this pass
            record: Build record of the previous pass (archive membership)

        Returns:
            AggregateResult

        Raises:
            IoError: If an artifact is missing or the descriptor cannot be written
            ArchiveError: If the archiver fails
        """
        ordered = tuple(sorted(artifacts, key=lambda a: str(a.source)))
        for artifact in ordered:
            for path in artifact.paths:
                if not path.is_file():
                    raise IoError(f"Artifact missing for {artifact.source.name}", path=path)

        if isinstance(self.mode, LibraryOutput):
            return self._aggregate_library(self.mode, ordered, compiled_count, record)
        return self._aggregate_ptx(self.mode, ordered, architectures, compiled_count)

    def _aggregate_ptx(
        self,
        mode: PtxOutput,
        artifacts: tuple[Artifact, ...],
        architectures: Sequence[str],
        compiled_count: int,
    ) -> AggregateResult:
        expected = {path for artifact in artifacts for path in artifact.paths}
        removed = self._remove_stale_ptx(expected)

        modules: Dict[str, Path] = {}
        variants: Dict[str, Dict[str, str]] = {}
        for artifact in artifacts:
            name = module_name(artifact.source.stem)
            modules[name] = artifact.path
            if len(artifact.paths) > 1:
                variants[name] = {arch: str(path) for arch, path in zip(artifact.architectures, artifact.paths)}

        descriptor = {
            "version": DESCRIPTOR_VERSION,
            "architectures": list(architectures),
            "modules": {name: str(path) for name, path in modules.items()},
        }
        if variants:
            descriptor["variants"] = variants

        descriptor_path = self.out_dir / mode.descriptor_name
        descriptor_written = self._write_if_changed(descriptor_path, json.dumps(descriptor, indent=2) + "\n")

        changed = compiled_count > 0 or bool(removed) or descriptor_written
        logger.info(f"Aggregated {len(artifacts)} PTX module(s) into {descriptor_path} (changed={changed})")
        return AggregateResult(
            artifacts=artifacts,
            changed=changed,
            descriptor_path=descriptor_path,
            modules=modules,
            removed=tuple(removed),
        )

    def _remove_stale_ptx(self, expected: set[Path]) -> List[Path]:
        removed = []
        if not self.out_dir.is_dir():
            return removed
        for ptx in sorted(self.out_dir.glob("*.ptx"), key=str):
            if ptx not in expected:
                try:
                    ptx.unlink()
                except OSError as e:
                    raise IoError(f"Cannot remove stale PTX file: {e}", path=ptx, diagnostic=str(e))
                logger.debug(f"Removed stale PTX file: {ptx}")
                removed.append(ptx)
        return removed

    def _write_if_changed(self, path: Path, content: str) -> bool:
        try:
            if path.is_file() and path.read_text(encoding="utf-8") == content:
                logger.debug(f"Descriptor unchanged: {path}")
                return False
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise IoError(f"Cannot write generation descriptor: {e}", path=path, diagnostic=str(e))
        return True

    def archive_command(self, archive_path: Path, objects: Sequence[Path]) -> List[str]:
        """Build the archiver command line.

        Args:
            archive_path: Archive to produce
            objects: Member object files, in archive order

        Returns:
            Argument list
        """
        if self.archiver:
            return [self.archiver, "rcs", str(archive_path)] + [str(obj) for obj in objects]
        return [self.compiler, "--lib", "-o", str(archive_path)] + [str(obj) for obj in objects]

    def _aggregate_library(
        self,
        mode: LibraryOutput,
        artifacts: tuple[Artifact, ...],
        compiled_count: int,
        record: BuildRecord,
    ) -> AggregateResult:
        archive_path = self.options.resolve(mode.output_path)
        objects = [path for artifact in artifacts for path in artifact.paths]
        members = tuple(str(obj) for obj in objects)
        entry = ArchiveEntry(path=str(archive_path), members=members)

        if not objects:
            raise ArchiveError("No kernel objects to archive", path=archive_path)

        previous = record.archive
        if (
            compiled_count == 0
            and archive_path.is_file()
            and previous is not None
            and previous.path == entry.path
            and previous.members == members
        ):
            logger.info(f"Archive up to date: {archive_path}")
            return AggregateResult(artifacts=artifacts, changed=False, archive_path=archive_path, archive=entry)

        try:
            archive_path.parent.mkdir(parents=True, exist_ok=True)
            if self.archiver:
                # `ar rcs` appends to an existing archive
                archive_path.unlink(missing_ok=True)
        except OSError as e:
            raise IoError(f"Cannot prepare archive location: {e}", path=archive_path, diagnostic=str(e))

        cmd = self.archive_command(archive_path, objects)
        logger.debug(f"Archiving {len(objects)} object(s): {' '.join(cmd)}")
        try:
            result = self.runner.run(cmd)
        except OSError as e:
            raise ArchiveError(f"Failed to start archiver {cmd[0]}", path=archive_path, command=cmd, diagnostic=str(e))

        if not result.ok:
            logger.error(f"Archiver failed with exit code {result.returncode}")
            raise ArchiveError(
                f"{Path(cmd[0]).name} error while creating {archive_path.name}",
                path=archive_path,
                command=cmd,
                diagnostic=result.output or f"{cmd[0]} exited with status {result.returncode}",
            )

        if not archive_path.is_file():
            raise ArchiveError(f"Archive was not created: {archive_path}", path=archive_path, command=cmd, diagnostic=result.output)

        logger.info(f"Created {archive_path} from {len(objects)} object(s)")
        return AggregateResult(artifacts=artifacts, changed=True, archive_path=archive_path, archive=entry)
