"""CUDA Toolchain Discovery.

This module locates the CUDA toolkit and the binaries cubuild drives.

Search Order:
    CUDA root:
        1. BuildOptions.cuda_root
        2. CUDA_PATH, CUDA_ROOT, CUDA_TOOLKIT_ROOT_DIR, CUDNN_LIB
        3. Well-known install locations (/usr/local/cuda, /opt/cuda, ...)
       A candidate is accepted when it contains include/cuda.h.

    Compiler:
        1. BuildOptions.compiler (or NVCC via BuildOptions.from_env)
        2. <cuda root>/bin/nvcc
        3. nvcc on PATH
        4. bare "nvcc" (spawn failure is reported by the compiler step)
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .config import BuildOptions

logger = logging.getLogger(__name__)

CUDA_ROOT_ENV_VARS = (
    "CUDA_PATH",
    "CUDA_ROOT",
    "CUDA_TOOLKIT_ROOT_DIR",
    "CUDNN_LIB",
)

CUDA_ROOT_CANDIDATES = (
    "/usr",
    "/usr/local/cuda",
    "/opt/cuda",
    "/usr/lib/cuda",
    "C:/Program Files/NVIDIA GPU Computing Toolkit",
    "C:/CUDA",
)

DEVICE_QUERY_BINARY = "nvidia-smi"


def find_cuda_root(
    override: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    candidates: Sequence[str] = CUDA_ROOT_CANDIDATES,
) -> Optional[Path]:
    """Find the CUDA toolkit root directory.

    Args:
        override: Explicit root, returned as-is when it exists
        environ: Environment mapping (defaults to os.environ)
        candidates: Well-known install locations to check

    Returns:
        Toolkit root containing include/cuda.h, or None if not found
    """
    if override is not None:
        if Path(override).exists():
            return Path(override)
        logger.warning(f"Configured CUDA root does not exist: {override}")

    env = os.environ if environ is None else environ
    search = [Path(env[var]) for var in CUDA_ROOT_ENV_VARS if env.get(var)]
    search.extend(Path(c) for c in candidates)

    for root in search:
        if (root / "include" / "cuda.h").is_file():
            logger.debug(f"Found CUDA root: {root}")
            return root

    logger.debug(f"No CUDA root found in {[str(p) for p in search]}")
    return None


class CudaToolchain:
    """Resolved locations of the CUDA binaries used by a build."""

    def __init__(self, options: BuildOptions, environ: Optional[Mapping[str, str]] = None):
        """Initialize toolchain from build options.

        Args:
            options: Build options (compiler, archiver and cuda_root overrides)
            environ: Environment mapping (defaults to os.environ)
        """
        self.options = options
        self.cuda_root = find_cuda_root(options.cuda_root, environ)

    @property
    def include_dir(self) -> Optional[Path]:
        """CUDA include directory, exported to the host build for its own compiles."""
        if self.cuda_root is None:
            return None
        return self.cuda_root / "include"

    def get_compiler(self) -> str:
        """Get the device compiler to invoke.

        Returns:
            Path or name of the nvcc binary
        """
        if self.options.compiler:
            return self.options.compiler

        if self.cuda_root is not None:
            for name in ("nvcc", "nvcc.exe"):
                candidate = self.cuda_root / "bin" / name
                if candidate.is_file():
                    return str(candidate)

        on_path = shutil.which("nvcc")
        if on_path:
            return on_path

        logger.debug("nvcc not found in CUDA root or PATH, relying on bare 'nvcc'")
        return "nvcc"

    def get_archiver(self) -> Optional[str]:
        """Get the archiver override, or None to archive through the compiler's --lib mode."""
        return self.options.archiver

    def get_device_query(self) -> str:
        """Get the binary used to enumerate installed GPUs."""
        on_path = shutil.which(DEVICE_QUERY_BINARY)
        return on_path or DEVICE_QUERY_BINARY
