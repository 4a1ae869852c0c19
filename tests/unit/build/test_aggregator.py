"""Tests for PTX and static library aggregation."""

import json
from pathlib import Path

import pytest

from cubuild.build.aggregator import LibraryOutput, OutputAggregator, PtxOutput, module_name
from cubuild.build.build_record import ArchiveEntry, BuildRecord
from cubuild.build.compiler import Artifact, ArtifactKind
from cubuild.errors import ArchiveError, IoError
from cubuild.subprocess_utils import ProcessResult


def _artifact(out_dir: Path, stem: str, kind=ArtifactKind.PTX, archs=("86",), per_arch=False) -> Artifact:
    """Create artifact files on disk for a kernel stem."""
    directory = out_dir if kind is ArtifactKind.PTX else out_dir / "obj"
    directory.mkdir(parents=True, exist_ok=True)
    if per_arch:
        paths = tuple(directory / f"{stem}.sm_{arch}{kind.suffix}" for arch in archs)
    else:
        paths = (directory / f"{stem}{kind.suffix}",)
    for path in paths:
        path.write_text(f".entry {stem}_kernel\n")
    return Artifact(source=Path("/project/src") / f"{stem}.cu", kind=kind, paths=paths, architectures=tuple(archs))


class TestModuleName:
    @pytest.mark.parametrize(
        "stem, expected",
        [
            ("softmax", "SOFTMAX"),
            ("layer_norm", "LAYER_NORM"),
            ("flash-attn", "FLASH_ATTN"),
            ("gemm.f16", "GEMM_F16"),
        ],
    )
    def test_module_name(self, stem, expected):
        assert module_name(stem) == expected


class TestPtxAggregation:
    """Test PtxOutput handling."""

    @pytest.fixture
    def aggregator(self, fake_toolchain, make_options):
        return OutputAggregator(PtxOutput(), make_options(), fake_toolchain, "nvcc")

    def test_writes_descriptor(self, aggregator, make_options):
        out_dir = make_options().resolved_out_dir
        artifacts = [_artifact(out_dir, "softmax"), _artifact(out_dir, "layer_norm")]

        result = aggregator.aggregate(artifacts, ["86"], 2, BuildRecord())

        descriptor = json.loads((out_dir / "kernels.json").read_text())
        assert descriptor == {
            "version": 1,
            "architectures": ["86"],
            "modules": {
                "LAYER_NORM": str(out_dir / "layer_norm.ptx"),
                "SOFTMAX": str(out_dir / "softmax.ptx"),
            },
        }
        assert result.descriptor_path == out_dir / "kernels.json"
        assert list(result.modules) == ["LAYER_NORM", "SOFTMAX"]
        assert result.changed

    def test_artifacts_sorted_by_source(self, aggregator, make_options):
        out_dir = make_options().resolved_out_dir
        artifacts = [_artifact(out_dir, "zeta"), _artifact(out_dir, "alpha"), _artifact(out_dir, "mid")]

        result = aggregator.aggregate(artifacts, ["86"], 3, BuildRecord())

        assert [a.source.stem for a in result.artifacts] == ["alpha", "mid", "zeta"]

    def test_descriptor_not_rewritten_when_unchanged(self, aggregator, make_options):
        out_dir = make_options().resolved_out_dir
        artifacts = [_artifact(out_dir, "softmax")]
        aggregator.aggregate(artifacts, ["86"], 1, BuildRecord())
        descriptor = out_dir / "kernels.json"
        mtime = descriptor.stat().st_mtime_ns

        result = aggregator.aggregate(artifacts, ["86"], 0, BuildRecord())

        assert not result.changed
        assert descriptor.stat().st_mtime_ns == mtime

    def test_stale_ptx_removed(self, aggregator, make_options):
        """Test that PTX from a deleted kernel does not linger."""
        out_dir = make_options().resolved_out_dir
        keep = _artifact(out_dir, "softmax")
        _artifact(out_dir, "deleted")

        result = aggregator.aggregate([keep], ["86"], 0, BuildRecord())

        assert not (out_dir / "deleted.ptx").exists()
        assert (out_dir / "softmax.ptx").exists()
        assert result.removed == (out_dir / "deleted.ptx",)
        assert result.changed

    def test_per_arch_variants(self, aggregator, make_options):
        out_dir = make_options().resolved_out_dir
        artifact = _artifact(out_dir, "softmax", archs=("75", "86"), per_arch=True)

        aggregator.aggregate([artifact], ["75", "86"], 1, BuildRecord())

        descriptor = json.loads((out_dir / "kernels.json").read_text())
        assert descriptor["modules"] == {"SOFTMAX": str(out_dir / "softmax.sm_75.ptx")}
        assert descriptor["variants"] == {
            "SOFTMAX": {
                "75": str(out_dir / "softmax.sm_75.ptx"),
                "86": str(out_dir / "softmax.sm_86.ptx"),
            }
        }

    def test_custom_descriptor_name(self, fake_toolchain, make_options):
        out_dir = make_options().resolved_out_dir
        aggregator = OutputAggregator(PtxOutput(descriptor_name="modules.json"), make_options(), fake_toolchain, "nvcc")

        result = aggregator.aggregate([_artifact(out_dir, "softmax")], ["86"], 1, BuildRecord())

        assert result.descriptor_path == out_dir / "modules.json"
        assert result.descriptor_path.exists()

    def test_missing_artifact_raises(self, aggregator, make_options):
        out_dir = make_options().resolved_out_dir
        artifact = _artifact(out_dir, "softmax")
        artifact.path.unlink()

        with pytest.raises(IoError, match="Artifact missing") as exc_info:
            aggregator.aggregate([artifact], ["86"], 0, BuildRecord())

        assert exc_info.value.path == artifact.path

    def test_no_archiver_invoked(self, aggregator, fake_toolchain, make_options):
        aggregator.aggregate([_artifact(make_options().resolved_out_dir, "softmax")], ["86"], 1, BuildRecord())
        assert fake_toolchain.archive_commands() == []


class TestLibraryAggregation:
    """Test LibraryOutput handling."""

    @pytest.fixture
    def objects(self, make_options):
        out_dir = make_options().resolved_out_dir
        return [
            _artifact(out_dir, "softmax", kind=ArtifactKind.OBJECT),
            _artifact(out_dir, "layer_norm", kind=ArtifactKind.OBJECT),
        ]

    def test_default_archiver_uses_nvcc_lib(self, fake_toolchain, make_options, objects, tmp_path):
        archive = tmp_path / "lib" / "libkernels.a"
        aggregator = OutputAggregator(LibraryOutput(archive), make_options(), fake_toolchain, "nvcc")

        result = aggregator.aggregate(objects, ["86"], 2, BuildRecord())

        (command,) = fake_toolchain.archive_commands()
        obj_dir = make_options().resolved_out_dir / "obj"
        assert command == ("nvcc", "--lib", "-o", str(archive), str(obj_dir / "layer_norm.o"), str(obj_dir / "softmax.o"))
        assert result.archive_path == archive
        assert result.changed
        assert json.loads(archive.read_text())["members"] == ["layer_norm.o", "softmax.o"]

    def test_archiver_override(self, fake_toolchain, make_options, objects, tmp_path):
        archive = tmp_path / "libkernels.a"
        archive.write_text("old archive")
        aggregator = OutputAggregator(LibraryOutput(archive), make_options(), fake_toolchain, "nvcc", archiver="ar")

        aggregator.aggregate(objects, ["86"], 2, BuildRecord())

        (command,) = fake_toolchain.archive_commands()
        assert command[:3] == ("ar", "rcs", str(archive))
        assert len(command) == 5

    def test_relative_archive_path_resolved_against_project(self, fake_toolchain, make_options, objects, project):
        aggregator = OutputAggregator(LibraryOutput(Path("build/libk.a")), make_options(), fake_toolchain, "nvcc")

        result = aggregator.aggregate(objects, ["86"], 2, BuildRecord())

        assert result.archive_path == (project / "build" / "libk.a").resolve()
        assert result.archive_path.exists()

    def test_archive_skipped_when_unchanged(self, fake_toolchain, make_options, objects, tmp_path):
        """Test that an up-to-date archive is not rebuilt."""
        archive = tmp_path / "libkernels.a"
        aggregator = OutputAggregator(LibraryOutput(archive), make_options(), fake_toolchain, "nvcc")
        first = aggregator.aggregate(objects, ["86"], 2, BuildRecord())
        record = BuildRecord(archive=first.archive)
        fake_toolchain.reset()

        second = aggregator.aggregate(objects, ["86"], 0, record)

        assert fake_toolchain.archive_commands() == []
        assert not second.changed

    def test_archive_rebuilt_when_members_change(self, fake_toolchain, make_options, objects, tmp_path):
        archive = tmp_path / "libkernels.a"
        aggregator = OutputAggregator(LibraryOutput(archive), make_options(), fake_toolchain, "nvcc")
        first = aggregator.aggregate(objects, ["86"], 2, BuildRecord())
        record = BuildRecord(archive=first.archive)
        fake_toolchain.reset()

        aggregator.aggregate(objects[:1], ["86"], 0, record)

        assert len(fake_toolchain.archive_commands()) == 1

    def test_archive_rebuilt_when_deleted(self, fake_toolchain, make_options, objects, tmp_path):
        archive = tmp_path / "libkernels.a"
        aggregator = OutputAggregator(LibraryOutput(archive), make_options(), fake_toolchain, "nvcc")
        record = BuildRecord(archive=ArchiveEntry(path=str(archive), members=()))

        result = aggregator.aggregate(objects, ["86"], 0, record)

        assert result.changed
        assert archive.exists()

    def test_archiver_failure_raises(self, make_options, objects, tmp_path):
        class FailingArchiver:
            def run(self, cmd, cwd=None):
                return ProcessResult(1, stderr="ar: libkernels.a: No space left on device")

        archive = tmp_path / "libkernels.a"
        aggregator = OutputAggregator(LibraryOutput(archive), make_options(), FailingArchiver(), "nvcc", archiver="ar")

        with pytest.raises(ArchiveError) as exc_info:
            aggregator.aggregate(objects, ["86"], 2, BuildRecord())

        error = exc_info.value
        assert error.command[:2] == ("ar", "rcs")
        assert "No space left" in error.diagnostic
        assert error.path == archive

    def test_archiver_spawn_failure_raises(self, toolchain_factory, make_options, objects, tmp_path):
        toolchain = toolchain_factory(missing=["ar"])
        aggregator = OutputAggregator(LibraryOutput(tmp_path / "lib.a"), make_options(), toolchain, "nvcc", archiver="ar")

        with pytest.raises(ArchiveError, match="Failed to start archiver"):
            aggregator.aggregate(objects, ["86"], 2, BuildRecord())

    def test_no_objects_raises(self, fake_toolchain, make_options, tmp_path):
        aggregator = OutputAggregator(LibraryOutput(tmp_path / "lib.a"), make_options(), fake_toolchain, "nvcc")

        with pytest.raises(ArchiveError, match="No kernel objects"):
            aggregator.aggregate([], ["86"], 0, BuildRecord())
