"""Target Architecture Resolution.

This module decides which GPU architectures every kernel is compiled for.

Resolution Order:
    1. Explicit override list (BuildOptions.architectures or CUDA_COMPUTE_CAP),
       validated and used verbatim
    2. Compute capabilities of locally installed GPUs, from
       `nvidia-smi --query-gpu=compute_cap --format=csv`
    3. DEFAULT_ARCHITECTURE, with a non-fatal diagnostic

The result is then checked against the codes the compiler reports through
`nvcc --list-gpu-code`, so an unsupported target fails before any kernel is
compiled rather than halfway through the build.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..errors import CapabilityResolutionError
from ..subprocess_utils import ProcessRunner

logger = logging.getLogger(__name__)

# Oldest architecture still accepted by current toolkits
DEFAULT_ARCHITECTURE = "52"

ARCH_PATTERN = re.compile(r"^[1-9][0-9]{1,2}a?$")
_GPU_CODE_PATTERN = re.compile(r"^sm_([0-9]+a?)$")


def arch_sort_key(arch: str) -> tuple[int, str]:
    """Sort key ordering "75" < "86" < "90" < "90a"."""
    digits = arch.rstrip("a")
    return int(digits), arch


@dataclass(frozen=True)
class ArchitectureSet:
    """Resolved target architectures plus how they were obtained.

    Attributes:
        architectures: Architecture codes, e.g. ("75", "86")
        source: "override", "detected" or "default"
        diagnostics: Non-fatal messages produced during resolution
    """

    architectures: tuple[str, ...]
    source: str
    diagnostics: tuple[str, ...] = field(default=())

    def __iter__(self):
        return iter(self.architectures)

    def __len__(self) -> int:
        return len(self.architectures)


class CapabilityResolver:
    """Resolves the target architecture set for a build."""

    def __init__(self, runner: ProcessRunner, compiler: str, device_query: str = "nvidia-smi"):
        """Initialize resolver.

        Args:
            runner: Process runner used for the device query and the compiler
            compiler: Device compiler binary (queried for supported codes)
            device_query: Binary used to enumerate installed GPUs
        """
        self.runner = runner
        self.compiler = compiler
        self.device_query = device_query

    def resolve(self, override: Sequence[str] = ()) -> ArchitectureSet:
        """Resolve target architectures.

        Args:
            override: Explicit architecture list (empty = query the system)

        Returns:
            ArchitectureSet with at least one architecture

        Raises:
            CapabilityResolutionError: If an override entry is malformed or an
                architecture is not supported by the compiler
        """
        diagnostics: List[str] = []

        if override:
            archs = self._validate_override(override)
            source = "override"
        else:
            detected = self.detect_devices(diagnostics)
            if detected:
                archs = detected
                source = "detected"
            else:
                message = f"No GPU compute capability detected, falling back to sm_{DEFAULT_ARCHITECTURE}"
                logger.warning(message)
                diagnostics.append(message)
                archs = (DEFAULT_ARCHITECTURE,)
                source = "default"

        self._check_supported(archs, diagnostics)
        logger.info(f"Target architectures ({source}): {', '.join('sm_' + a for a in archs)}")
        return ArchitectureSet(architectures=archs, source=source, diagnostics=tuple(diagnostics))

    def _validate_override(self, override: Sequence[str]) -> tuple[str, ...]:
        archs: List[str] = []
        for entry in override:
            entry = str(entry).strip()
            if not ARCH_PATTERN.match(entry):
                raise CapabilityResolutionError(
                    f"Invalid architecture {entry!r}: expected a numeric compute capability such as 75 or 86"
                )
            if entry not in archs:
                archs.append(entry)
        return tuple(archs)

    def detect_devices(self, diagnostics: Optional[List[str]] = None) -> tuple[str, ...]:
        """Query installed GPUs for their compute capabilities.

        Args:
            diagnostics: List receiving a message when the query is unavailable

        Returns:
            Deduplicated architectures sorted ascending, empty if none could be detected
        """
        cmd = [self.device_query, "--query-gpu=compute_cap", "--format=csv"]
        try:
            result = self.runner.run(cmd)
        except OSError as e:
            message = f"{self.device_query} unavailable: {e}"
            logger.debug(message)
            if diagnostics is not None:
                diagnostics.append(message)
            return ()

        if not result.ok:
            message = f"{self.device_query} exited with status {result.returncode}"
            logger.debug(f"{message}: {result.output}")
            if diagnostics is not None:
                diagnostics.append(message)
            return ()

        return parse_compute_caps(result.stdout)

    def supported_codes(self) -> Optional[tuple[str, ...]]:
        """Ask the compiler which sm_XX codes it can target.

        Returns:
            Supported architectures sorted ascending, or None if unknown
        """
        try:
            result = self.runner.run([self.compiler, "--list-gpu-code"])
        except OSError as e:
            logger.debug(f"Cannot list GPU codes from {self.compiler}: {e}")
            return None
        if not result.ok:
            logger.debug(f"{self.compiler} --list-gpu-code failed: {result.output}")
            return None

        codes = set()
        for line in result.stdout.splitlines():
            match = _GPU_CODE_PATTERN.match(line.strip())
            if match:
                codes.add(match.group(1))
        if not codes:
            return None
        return tuple(sorted(codes, key=arch_sort_key))

    def _check_supported(self, archs: Sequence[str], diagnostics: List[str]) -> None:
        supported = self.supported_codes()
        if supported is None:
            message = f"Could not list GPU codes supported by {self.compiler}; skipping architecture check"
            logger.debug(message)
            diagnostics.append(message)
            return

        unsupported = [arch for arch in archs if arch not in supported]
        if unsupported:
            raise CapabilityResolutionError(
                f"{self.compiler} cannot target {', '.join('sm_' + a for a in unsupported)}. "
                f"Available targets are {', '.join(supported)}",
            )


def parse_compute_caps(output: str) -> tuple[str, ...]:
    """Parse `nvidia-smi --query-gpu=compute_cap` output.

    Accepts output with or without the csv header line. "8.6" becomes "86".

    Args:
        output: Raw stdout of the device query

    Returns:
        Deduplicated architectures sorted ascending
    """
    caps = set()
    for line in output.splitlines():
        value = line.strip()
        if not value or value == "compute_cap":
            continue
        code = value.replace(".", "")
        if ARCH_PATTERN.match(code):
            caps.add(code)
        else:
            logger.debug(f"Ignoring unparsable compute capability: {value!r}")
    return tuple(sorted(caps, key=arch_sort_key))
