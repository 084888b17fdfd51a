"""
Host compiler and CUDA toolkit probes run before a native extension build.
"""

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional

from arch_spec import ArchConfigError

logger = logging.getLogger(__name__)

# Host compilers accepted by nvcc 12.x, newest first.
DEFAULT_GCC_VERSIONS = ("12", "11", "10")


class NoSuitableToolchain(ArchConfigError):
    """None of the candidate tools could be found or executed."""

    def __init__(self, candidates: Iterable[str]):
        self.candidates = list(candidates)
        super().__init__(f"No suitable toolchain found (tried: {', '.join(self.candidates)})")


class CudaVersionMismatch(ArchConfigError):
    """The CUDA toolkit release does not match the one the build expects."""

    def __init__(self, found: str, expected: str):
        self.found = found
        self.expected = expected
        super().__init__(f"CUDA toolkit {found} detected; this build expects {expected}")


class Toolchain(NamedTuple):
    cc: str
    cxx: str
    version: Optional[str] = None


def _tool_runs(path: str) -> bool:
    """Check that ``path --version`` exits cleanly."""
    try:
        result = subprocess.run([path, "--version"], capture_output=True, text=True, check=False)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Could not execute {path}: {e}")
        return False
    if result.returncode != 0:
        logger.debug(f"{path} --version exited with {result.returncode}")
        return False
    return True


def probe_compilers(candidates: Iterable[str] = DEFAULT_GCC_VERSIONS,
                    allow_default: bool = False) -> Toolchain:
    """Return the first gcc/g++ pair that is installed and runs.

    ``candidates`` are version suffixes tried in order (gcc-12, gcc-11, ...).
    With ``allow_default`` the unversioned gcc/g++ are tried last.
    """
    pairs = [(f"gcc-{v}", f"g++-{v}", v) for v in candidates]
    if allow_default:
        pairs.append(("gcc", "g++", None))

    tried: List[str] = []
    for cc_name, cxx_name, version in pairs:
        tried.append(cc_name)
        cc = shutil.which(cc_name)
        cxx = shutil.which(cxx_name)
        if not cc or not cxx:
            logger.debug(f"Compiler not found: {cc_name}/{cxx_name}")
            continue
        if not _tool_runs(cc):
            continue
        logger.info(f"Using host compiler {cc} / {cxx}")
        return Toolchain(cc, cxx, version)

    raise NoSuitableToolchain(tried)


def find_nvcc(cuda_home: Optional[Path] = None) -> Path:
    """Locate nvcc under ``cuda_home`` first, then on PATH."""
    tried: List[str] = []
    if cuda_home is not None:
        nvcc = Path(cuda_home) / "bin" / "nvcc"
        tried.append(str(nvcc))
        if nvcc.is_file() and os.access(nvcc, os.X_OK):
            return nvcc

    tried.append("nvcc")
    found = shutil.which("nvcc")
    if found:
        return Path(found)

    raise NoSuitableToolchain(tried)


def nvcc_release(nvcc: Path) -> Optional[str]:
    """Read the CUDA release (e.g. "12.8") from ``nvcc --version``."""
    try:
        result = subprocess.run([str(nvcc), "--version"], capture_output=True, text=True, check=True)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Could not run {nvcc}: {e}")
        return None

    version_match = re.search(r'release (\d+\.\d+)', result.stdout)
    if version_match:
        return version_match.group(1)
    logger.warning(f"Unrecognized nvcc output: {result.stdout.strip()}")
    return None


def check_cuda_release(found: Optional[str], expected: str) -> None:
    """Fail unless ``found`` is ``expected`` or a sub-release of it."""
    if found is None or not (found == expected or found.startswith(expected + ".")):
        raise CudaVersionMismatch(found or "unknown", expected)
    logger.info(f"CUDA toolkit {found} detected")
