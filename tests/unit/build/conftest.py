"""Shared fixtures for build pipeline tests.

FakeToolchain stands in for nvcc, nvidia-smi and ar behind the ProcessRunner
interface. It records every command it receives and writes deterministic
output files, so tests can assert both on the constructed command lines and
on the artifacts the pipeline leaves behind.
"""

import json
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from cubuild.config import BuildOptions
from cubuild.subprocess_utils import ProcessResult

SYNTAX_ERROR_MARKER = "SYNTAX_ERROR"

DEFAULT_SUPPORTED = ("50", "52", "53", "60", "61", "62", "70", "72", "75", "80", "86", "87", "89", "90", "90a")


class FakeToolchain:
    """Fake nvcc/nvidia-smi/ar implementing the ProcessRunner protocol.

    Args:
        gpus: Compute capabilities reported by nvidia-smi (None = not installed)
        supported: Codes reported by `nvcc --list-gpu-code` (None = query fails)
        delays: Seconds to sleep per kernel file name, to shape completion order
        missing: Program names that raise FileNotFoundError when run
    """

    def __init__(
        self,
        gpus: Optional[Sequence[str]] = ("8.6",),
        supported: Optional[Sequence[str]] = DEFAULT_SUPPORTED,
        delays: Optional[Dict[str, float]] = None,
        missing: Sequence[str] = (),
    ):
        self.gpus = gpus
        self.supported = supported
        self.delays = dict(delays or {})
        self.missing = set(missing)
        self.commands: List[tuple[str, ...]] = []
        self.lock = threading.Lock()

    def run(self, cmd, cwd=None) -> ProcessResult:
        argv = tuple(str(arg) for arg in cmd)
        with self.lock:
            self.commands.append(argv)

        program = Path(argv[0]).name
        if program in self.missing:
            raise FileNotFoundError(2, "No such file or directory", argv[0])

        if program == "nvidia-smi":
            if self.gpus is None:
                raise FileNotFoundError(2, "No such file or directory", argv[0])
            return ProcessResult(0, stdout="compute_cap\n" + "".join(f"{gpu}\n" for gpu in self.gpus))

        if "--list-gpu-code" in argv:
            if self.supported is None:
                return ProcessResult(1, stderr="nvcc fatal   : Unknown option '--list-gpu-code'")
            return ProcessResult(0, stdout="".join(f"sm_{code}\n" for code in self.supported))

        if "--lib" in argv:
            archive = argv[argv.index("-o") + 1]
            return self._archive(archive, argv[argv.index("-o") + 2 :])

        if len(argv) > 2 and argv[1] == "rcs":
            return self._archive(argv[2], argv[3:])

        return self._compile(argv)

    def _compile(self, argv: tuple[str, ...]) -> ProcessResult:
        source = Path(argv[-1])
        output = Path(argv[argv.index("-o") + 1])
        time.sleep(self.delays.get(source.name, 0.0))

        text = source.read_text(encoding="utf-8")
        if SYNTAX_ERROR_MARKER in text:
            # nvcc can leave a truncated output behind on failure
            output.write_text("// partial\n", encoding="utf-8")
            return ProcessResult(
                2,
                stderr=(
                    f"{source}(3): error: expected a \";\"\n\n"
                    f"1 error detected in the compilation of \"{source}\".\n"
                ),
            )

        arch_flags = [arg for arg in argv if arg.startswith(("--gpu-architecture", "--generate-code"))]
        mode = "ptx" if "--ptx" in argv else "obj"
        if mode == "ptx" and len(arch_flags) > 1:
            return ProcessResult(
                1,
                stderr="nvcc fatal   : Option '--ptx (-ptx)' is not allowed when compiling for multiple GPU architectures\n",
            )
        output.write_text(
            f"// fake {mode} for {source.name}\n// {' '.join(arch_flags)}\n.entry {source.stem}_kernel\n",
            encoding="utf-8",
        )
        return ProcessResult(0)

    def _archive(self, archive: str, members: Sequence[str]) -> ProcessResult:
        Path(archive).write_text(json.dumps({"members": [Path(m).name for m in members]}), encoding="utf-8")
        return ProcessResult(0)

    def compile_commands(self) -> List[tuple[str, ...]]:
        """Commands that compiled a kernel (PTX or object)."""
        return [cmd for cmd in self.commands if "--ptx" in cmd or "-c" in cmd]

    def archive_commands(self) -> List[tuple[str, ...]]:
        """Commands that created an archive."""
        return [cmd for cmd in self.commands if "--lib" in cmd or (len(cmd) > 1 and cmd[1] == "rcs")]

    def reset(self) -> None:
        with self.lock:
            self.commands.clear()


def write_kernel(directory: Path, name: str, body: Optional[str] = None) -> Path:
    """Write a small kernel source and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    stem = path.stem.replace(".", "_").replace("-", "_")
    path.write_text(
        body
        if body is not None
        else f'extern "C" __global__ void {stem}_kernel(float *x) {{\n    x[threadIdx.x] *= 2.0f;\n}}\n',
        encoding="utf-8",
    )
    return path


@pytest.fixture
def fake_toolchain():
    """Fake toolchain with one sm_86 GPU installed."""
    return FakeToolchain()


@pytest.fixture
def project(tmp_path):
    """Host project with two kernels and one header under src/."""
    project_dir = tmp_path / "project"
    src = project_dir / "src"
    write_kernel(src, "softmax.cu")
    write_kernel(src / "nn", "layer_norm.cu")
    header = src / "include" / "common.cuh"
    header.parent.mkdir(parents=True)
    header.write_text("#pragma once\n#define BLOCK 256\n", encoding="utf-8")
    return project_dir


@pytest.fixture
def make_options(tmp_path, project):
    """Factory for BuildOptions pointing at the test project."""

    def _make(**overrides) -> BuildOptions:
        values = {
            "out_dir": tmp_path / "out",
            "project_dir": project,
            "compiler": "nvcc",
            "num_workers": 2,
        }
        values.update(overrides)
        return BuildOptions(**values)

    return _make


@pytest.fixture
def toolchain_factory():
    """FakeToolchain class, for tests that need non-default GPUs or delays."""
    return FakeToolchain


@pytest.fixture
def kernel_writer():
    """Helper writing a kernel source: kernel_writer(directory, name, body=None)."""
    return write_kernel
