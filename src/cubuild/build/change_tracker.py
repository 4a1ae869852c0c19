"""Change detection for incremental kernel builds.

A kernel is up to date when the build record holds an entry for it whose
content hash, architecture set, output mode and flags fingerprint all match
the current pass, and every artifact the entry references still exists at
the expected location. Anything else makes it stale.

Only the kernel file itself is hashed. Edits to headers it includes do not
mark it stale.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .build_record import BuildRecord, RecordEntry
from .compiler import Artifact, CompilerInvoker, CompileUnit
from .source_scanner import SourceFile

logger = logging.getLogger(__name__)


@dataclass
class ChangeSet:
    """Partition of the kernels of one pass.

    Attributes:
        stale: Units that must be compiled, sorted by source path
        up_to_date: Artifacts reused from the previous pass, sorted by source path
        reasons: Why each stale source needs compiling
    """

    stale: List[CompileUnit] = field(default_factory=list)
    up_to_date: List[Artifact] = field(default_factory=list)
    reasons: Dict[Path, str] = field(default_factory=dict)


class ChangeTracker:
    """Decides which kernels need recompilation."""

    def __init__(self, record: BuildRecord, invoker: CompilerInvoker):
        """Initialize change tracker.

        Args:
            record: Build record loaded from the previous pass
            invoker: Compiler invoker for this pass (outputs, mode, fingerprint)
        """
        self.record = record
        self.invoker = invoker

    def stale_reason(self, unit: CompileUnit, entry: Optional[RecordEntry]) -> Optional[str]:
        """Explain why a unit must be compiled.

        Args:
            unit: Compile unit for the current pass
            entry: Record entry from the previous pass, if any

        Returns:
            Reason string, or None if the previous artifact can be reused
        """
        if entry is None:
            return "not built before"
        if entry.content_hash != unit.source.content_hash:
            return "source changed"
        if set(entry.architectures) != set(unit.architectures):
            return "architectures changed"
        if entry.mode != self.invoker.kind.value:
            return "output mode changed"
        if entry.flags != unit.flags_fingerprint:
            return "compiler flags changed"
        if entry.artifacts != tuple(str(p) for p in unit.outputs):
            return "output location changed"
        if not entry.artifacts_exist():
            return "artifact missing"
        return None

    def partition(self, kernels: Sequence[SourceFile], architectures: Sequence[str]) -> ChangeSet:
        """Split kernels into stale units and reusable artifacts.

        Args:
            kernels: Kernel sources, sorted by path
            architectures: Target architectures of this pass

        Returns:
            ChangeSet
        """
        changes = ChangeSet()
        for source in kernels:
            unit = self.invoker.make_unit(source, architectures)
            reason = self.stale_reason(unit, self.record.get(source.path))
            if reason is None:
                logger.debug(f"Up to date: {source.path}")
                changes.up_to_date.append(
                    Artifact(
                        source=source.path,
                        kind=self.invoker.kind,
                        paths=unit.outputs,
                        architectures=unit.architectures,
                        reused=True,
                    )
                )
            else:
                logger.debug(f"Stale ({reason}): {source.path}")
                changes.stale.append(unit)
                changes.reasons[source.path] = reason

        logger.info(f"{len(changes.stale)} kernel(s) to compile, {len(changes.up_to_date)} up to date")
        return changes

    @staticmethod
    def entry_for(unit: CompileUnit, artifact: Artifact) -> RecordEntry:
        """Record entry describing a freshly compiled unit."""
        return RecordEntry(
            content_hash=unit.source.content_hash,
            architectures=unit.architectures,
            artifacts=tuple(str(p) for p in artifact.paths),
            mode=artifact.kind.value,
            flags=unit.flags_fingerprint,
        )
