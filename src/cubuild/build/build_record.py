"""Persisted incremental-build record.

The build record remembers, per kernel source, what the previous pass
compiled: the content hash, the architecture set, the output mode, the flags
fingerprint and the artifact files produced. It lives inside the output
directory, so every output directory has exactly one record and builds into
different directories never share state.

Lifecycle:
    record = BuildRecord.load(out_dir / RECORD_FILE_NAME)   # build start
    record.update(source, entry)                            # per successful compile
    record.save(out_dir / RECORD_FILE_NAME)                 # build end

File format (JSON):
    {
      "version": 1,
      "entries": {
        "/abs/path/kernel.cu": {
          "hash": "<sha256>",
          "architectures": ["75", "86"],
          "artifacts": ["/abs/out/kernel.ptx"],
          "mode": "ptx",
          "flags": "<sha256>"
        }
      },
      "archive": {"path": "/abs/libkernels.a", "members": ["/abs/out/obj/kernel.o"]}
    }

Unknown fields at any level are kept and written back unchanged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from ..errors import IoError

logger = logging.getLogger(__name__)

RECORD_FILE_NAME = ".cubuild-record.json"
RECORD_VERSION = 1

_ENTRY_FIELDS = ("hash", "architectures", "artifacts", "mode", "flags")
_ARCHIVE_FIELDS = ("path", "members")


def canonical_key(path: Path) -> str:
    """Canonical record key for a source path."""
    return str(Path(path).resolve())


@dataclass(frozen=True)
class RecordEntry:
    """What the previous pass produced for one source file.

    Attributes:
        content_hash: SHA256 of the source when it was compiled
        architectures: Architecture set it was compiled for
        artifacts: Output files produced (absolute paths)
        mode: Artifact kind ("ptx" or "obj")
        flags: Fingerprint of the architecture-independent compile flags
        extra: Fields written by other versions, preserved verbatim
    """

    content_hash: str
    architectures: tuple[str, ...]
    artifacts: tuple[str, ...]
    mode: str
    flags: str
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        data = dict(self.extra)
        data.update(
            {
                "hash": self.content_hash,
                "architectures": list(self.architectures),
                "artifacts": list(self.artifacts),
                "mode": self.mode,
                "flags": self.flags,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordEntry":
        """Deserialize from dictionary.

        Raises:
            KeyError, TypeError: If a required field is missing or malformed
        """
        return cls(
            content_hash=str(data["hash"]),
            architectures=tuple(str(a) for a in data["architectures"]),
            artifacts=tuple(str(a) for a in data["artifacts"]),
            mode=str(data.get("mode", "")),
            flags=str(data.get("flags", "")),
            extra={k: v for k, v in data.items() if k not in _ENTRY_FIELDS},
        )

    def artifacts_exist(self) -> bool:
        """True when every recorded artifact is still on disk."""
        return bool(self.artifacts) and all(Path(a).is_file() for a in self.artifacts)


@dataclass(frozen=True)
class ArchiveEntry:
    """The static archive produced by the previous library-mode pass."""

    path: str
    members: tuple[str, ...]
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        data = dict(self.extra)
        data.update({"path": self.path, "members": list(self.members)})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveEntry":
        """Deserialize from dictionary."""
        return cls(
            path=str(data["path"]),
            members=tuple(str(m) for m in data["members"]),
            extra={k: v for k, v in data.items() if k not in _ARCHIVE_FIELDS},
        )


class BuildRecord:
    """Incremental-build metadata for one output directory.

    A plain value: loaded explicitly, passed through the build and saved
    explicitly. Only the thread that runs the build touches it.
    """

    def __init__(
        self,
        entries: Optional[dict[str, RecordEntry]] = None,
        archive: Optional[ArchiveEntry] = None,
        extra: Optional[dict[str, Any]] = None,
    ):
        self.entries: dict[str, RecordEntry] = dict(entries or {})
        self.archive = archive
        self.extra: dict[str, Any] = dict(extra or {})

    @classmethod
    def load(cls, record_file: Path) -> "BuildRecord":
        """Load a record from disk.

        A missing file yields an empty record. A corrupt file, or a corrupt
        entry inside it, is dropped with a warning so the affected sources are
        simply recompiled.

        Args:
            record_file: Path to the record JSON file

        Returns:
            BuildRecord (possibly empty)
        """
        if not record_file.exists():
            logger.debug(f"No build record at {record_file}")
            return cls()

        try:
            with open(record_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning(f"Ignoring unreadable build record {record_file}: {e}")
            return cls()

        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed build record {record_file}")
            return cls()

        version = data.get("version")
        if version != RECORD_VERSION:
            logger.debug(f"Build record {record_file} has version {version}, reading known fields only")

        entries: dict[str, RecordEntry] = {}
        raw_entries = data.get("entries", {})
        if isinstance(raw_entries, dict):
            for key, raw in raw_entries.items():
                try:
                    entries[key] = RecordEntry.from_dict(raw)
                except (KeyError, TypeError, AttributeError) as e:
                    logger.warning(f"Dropping malformed build record entry for {key}: {e}")

        archive = None
        if isinstance(data.get("archive"), dict):
            try:
                archive = ArchiveEntry.from_dict(data["archive"])
            except (KeyError, TypeError) as e:
                logger.warning(f"Dropping malformed archive entry in build record: {e}")

        extra = {k: v for k, v in data.items() if k not in ("version", "entries", "archive")}
        logger.info(f"Loaded build record with {len(entries)} entries from {record_file}")
        return cls(entries=entries, archive=archive, extra=extra)

    def save(self, record_file: Path) -> None:
        """Save the record to disk atomically (temp file + rename).

        Args:
            record_file: Path to the record JSON file

        Raises:
            IoError: If the file cannot be written
        """
        data = dict(self.extra)
        data["version"] = RECORD_VERSION
        data["entries"] = {key: self.entries[key].to_dict() for key in sorted(self.entries)}
        if self.archive is not None:
            data["archive"] = self.archive.to_dict()

        temp_file = record_file.with_suffix(".tmp")
        try:
            record_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            temp_file.replace(record_file)
        except OSError as e:
            raise IoError(f"Failed to write build record: {e}", path=record_file, diagnostic=str(e))

        logger.debug(f"Saved build record with {len(self.entries)} entries to {record_file}")

    def get(self, source: Path) -> Optional[RecordEntry]:
        """Get the entry for a source file, or None."""
        return self.entries.get(canonical_key(source))

    def update(self, source: Path, entry: RecordEntry) -> None:
        """Record a successful compile of a source file."""
        self.entries[canonical_key(source)] = entry

    def prune(self, keep: Iterable[Path]) -> list[str]:
        """Drop entries for sources that no longer exist in the build.

        Args:
            keep: Source paths that are part of the current build

        Returns:
            Keys that were removed
        """
        wanted = {canonical_key(p) for p in keep}
        removed = [key for key in self.entries if key not in wanted]
        for key in removed:
            del self.entries[key]
        if removed:
            logger.debug(f"Pruned {len(removed)} stale build record entries")
        return removed

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, source: object) -> bool:
        if not isinstance(source, (str, Path)):
            return False
        return canonical_key(Path(source)) in self.entries
