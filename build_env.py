#!/usr/bin/env python3
"""
CUDA Extension Build Environment

Derives the environment that the SageAttention and xFormers source builds
need (architecture lists, CUDA paths, compiler selection, parallelism) as an
explicit configuration object instead of exporting process-wide globals.

The result is either printed for a Dockerfile layer to eval:

    eval "$(cuda-arch-config xformers --arch '8.9;9.0;9.0a')"

or handed straight to the build command:

    cuda-arch-config sageattention --jobs 4 -- python setup.py install
"""

import argparse
import json
import logging
import os
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from arch_spec import (
    POLICY_OVERRIDE,
    QUALIFIER_POLICIES,
    ArchConfigError,
    ArchLists,
    normalize,
    parse,
)
from toolchain import (
    Toolchain,
    check_cuda_release,
    find_nvcc,
    nvcc_release,
    probe_compilers,
)

# Version information
__version__ = "0.3.0"

DEFAULT_CUDA_HOME = Path("/usr/local/cuda")

# Per-target defaults, taken from the image build layers.
BUILD_TARGETS = {
    "sageattention": {
        "default_arch": "8.9;12.0",
        "cuda_paths": False,
        "cmake_archs": False,
        "parallel_ext": True,
        "nvcc_flags": None,
        "extra": {"FORCE_CUDA": "1"},
    },
    "xformers": {
        "default_arch": "8.9;9.0;9.0a",
        "cuda_paths": True,
        "cmake_archs": True,
        "parallel_ext": False,
        "nvcc_flags": "-Xptxas -O2",
        "extra": {"FORCE_CUDA": "1", "XFORMERS_BUILD_FLASH_ATTENTION": "ON"},
    },
}

logger = logging.getLogger(__name__)


class UnknownBuildTarget(ArchConfigError):
    """The requested target has no entry in BUILD_TARGETS."""

    def __init__(self, target: str):
        self.target = target
        super().__init__(f"Unknown build target {target!r} (known: {', '.join(sorted(BUILD_TARGETS))})")


class BuildFailed(ArchConfigError):
    """The external build command exited with a non-zero status."""

    def __init__(self, command: List[str], returncode: int):
        self.command = command
        self.returncode = returncode
        super().__init__(f"Build command failed with exit code {returncode}: {' '.join(command)}")


class BuildConfig:
    """Everything a native extension build reads from its environment."""

    def __init__(self, target: str, archs: ArchLists, policy: str = POLICY_OVERRIDE,
                 cuda_home: Path = DEFAULT_CUDA_HOME, max_jobs: Optional[int] = None,
                 nvcc_flags: Optional[str] = None, toolchain: Optional[Toolchain] = None):
        if target not in BUILD_TARGETS:
            raise UnknownBuildTarget(target)
        if policy not in QUALIFIER_POLICIES:
            raise ValueError(f"Unknown qualifier policy: {policy}")
        if max_jobs is not None and max_jobs < 1:
            raise ValueError(f"max_jobs must be positive, got {max_jobs}")
        self.target = target
        self.settings = BUILD_TARGETS[target]
        self.archs = archs
        self.policy = policy
        self.cuda_home = Path(cuda_home)
        self.max_jobs = max_jobs
        self.nvcc_flags = nvcc_flags if nvcc_flags is not None else self.settings["nvcc_flags"]
        self.toolchain = toolchain

    @classmethod
    def resolve(cls, target: str, arch: Optional[str] = None, policy: str = POLICY_OVERRIDE,
                cuda_home: Optional[Path] = None, max_jobs: Optional[int] = None,
                nvcc_flags: Optional[str] = None, toolchain: Optional[Toolchain] = None,
                base_env: Optional[Mapping[str, str]] = None) -> "BuildConfig":
        """Build a config from explicit values, the caller's environment and target defaults.

        Explicit arguments win over ``base_env`` (TORCH_CUDA_ARCH_LIST, CUDA_HOME, MAX_JOBS),
        which wins over the target's defaults.
        """
        if target not in BUILD_TARGETS:
            raise UnknownBuildTarget(target)
        env = os.environ if base_env is None else base_env

        spec = arch or env.get("TORCH_CUDA_ARCH_LIST")
        if not arch and spec:
            logger.info(f"Using TORCH_CUDA_ARCH_LIST from environment: {spec}")
        archs = normalize(spec, default=BUILD_TARGETS[target]["default_arch"], policy=policy)

        if cuda_home is None:
            cuda_home = Path(env.get("CUDA_HOME") or DEFAULT_CUDA_HOME)

        if max_jobs is None and env.get("MAX_JOBS"):
            try:
                max_jobs = int(env["MAX_JOBS"])
            except ValueError:
                raise ValueError(f"MAX_JOBS must be an integer, got {env['MAX_JOBS']!r}")
            logger.info(f"Using MAX_JOBS from environment: {max_jobs}")

        return cls(target, archs, policy=policy, cuda_home=cuda_home, max_jobs=max_jobs,
                   nvcc_flags=nvcc_flags, toolchain=toolchain)

    def exports(self, base_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Return only the variables this config sets, in export order.

        Search paths are prepended to the values found in ``base_env``.
        """
        env = os.environ if base_env is None else base_env
        settings = self.settings
        result: Dict[str, str] = {}

        if settings["cuda_paths"]:
            cuda_bin = self.cuda_home / "bin"
            lib64 = self.cuda_home / "lib64"
            # stubs let libcuda link on GPU-less builders
            stubs = lib64 / "stubs"
            result["CUDA_HOME"] = str(self.cuda_home)
            result["CUDACXX"] = str(cuda_bin / "nvcc")
            result["PATH"] = _prepend_path(env.get("PATH"), [cuda_bin])
            result["LD_LIBRARY_PATH"] = _prepend_path(env.get("LD_LIBRARY_PATH"), [lib64, stubs])
            result["LIBRARY_PATH"] = _prepend_path(env.get("LIBRARY_PATH"), [stubs])

        result["TORCH_CUDA_ARCH_LIST"] = self.archs.dotted

        if settings["cmake_archs"]:
            if self.archs.numeric:
                result["CMAKE_CUDA_ARCHITECTURES"] = self.archs.numeric
            else:
                logger.warning(f"No plain numeric architectures in {self.archs.dotted!r}; "
                               f"CMAKE_CUDA_ARCHITECTURES left unset")
            if self.archs.accelerated:
                result["CUTLASS_NVCC_ARCHS"] = self.archs.accelerated

        result.update(settings["extra"])

        if self.nvcc_flags:
            result["NVCC_FLAGS"] = self.nvcc_flags
            result["TORCH_CUDA_FLAGS"] = self.nvcc_flags

        if self.max_jobs is not None:
            result["MAX_JOBS"] = str(self.max_jobs)
            result["CMAKE_BUILD_PARALLEL_LEVEL"] = str(self.max_jobs)
            if settings["parallel_ext"]:
                result["EXT_PARALLEL"] = str(self.max_jobs)
                result["NVCC_APPEND_FLAGS"] = f"--threads {self.max_jobs}"

        if self.toolchain is not None:
            result["CC"] = self.toolchain.cc
            result["CXX"] = self.toolchain.cxx

        return result

    def to_env(self, base_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Return a new mapping of ``base_env`` (default: os.environ) overlaid with the exports."""
        env = dict(os.environ if base_env is None else base_env)
        env.update(self.exports(env))
        return env


def _prepend_path(current: Optional[str], entries: List[Path]) -> str:
    parts = [str(entry) for entry in entries]
    if current:
        parts.extend(part for part in current.split(os.pathsep) if part and part not in parts)
    return os.pathsep.join(parts)


def run_build(config: BuildConfig, command: List[str], cwd: Optional[Path] = None,
              base_env: Optional[Mapping[str, str]] = None) -> None:
    """Run one build command with the configured environment."""
    if not command:
        raise ValueError("No build command given")
    logger.info(f"Running command: {' '.join(command)}")
    logger.debug(f"Build environment: {config.exports(base_env)}")
    try:
        result = subprocess.run(
            command,
            cwd=str(cwd) if cwd else None,
            env=config.to_env(base_env),
            check=False,
            text=True,
        )
    except FileNotFoundError:
        raise BuildFailed(command, 127)
    except OSError as e:
        logger.error(f"Could not execute {command[0]}: {e}")
        raise BuildFailed(command, 126)
    if result.returncode != 0:
        raise BuildFailed(command, result.returncode)


def format_exports(exports: Mapping[str, str], fmt: str = "shell") -> str:
    """Render exports as ``export K='V'`` lines or a JSON object."""
    if fmt == "json":
        return json.dumps(exports, indent=2)
    return "\n".join(f"export {key}={shlex.quote(value)}" for key, value in exports.items())


def setup_logging(verbose: bool, log_file: Optional[Path] = None):
    """Setup logging configuration. stdout is reserved for the exports."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cuda-arch-config",
        description="Derive the build environment for CUDA extension source builds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s xformers                             # Print exports for the default SMs (8.9;9.0;9.0a)
  %(prog)s sageattention --arch "8.9,12.0"      # Custom SM list, commas or semicolons
  %(prog)s xformers --policy strip --format json
  %(prog)s xformers --probe-compiler --require-cuda 12.8
  %(prog)s sageattention --jobs 2 -- python setup.py install
        """
    )

    parser.add_argument(
        "target",
        choices=sorted(BUILD_TARGETS),
        help="Extension being built"
    )

    parser.add_argument(
        "--arch",
        help="GPU compute capabilities, e.g. '8.9;9.0;9.0a' (default: $TORCH_CUDA_ARCH_LIST or the target default)"
    )

    parser.add_argument(
        "--policy",
        choices=QUALIFIER_POLICIES,
        default=POLICY_OVERRIDE,
        help="How 'a' architectures enter the numeric list (default: override)"
    )

    parser.add_argument(
        "--cuda-home",
        type=Path,
        help="CUDA toolkit root (default: $CUDA_HOME or /usr/local/cuda)"
    )

    parser.add_argument(
        "--jobs", "-j",
        type=int,
        help="Parallel compile jobs (MAX_JOBS)"
    )

    parser.add_argument(
        "--nvcc-flags",
        help="Override NVCC_FLAGS for the target"
    )

    parser.add_argument(
        "--probe-compiler",
        action="store_true",
        help="Select CC/CXX from gcc-12, gcc-11, gcc-10"
    )

    parser.add_argument(
        "--require-cuda",
        metavar="X.Y",
        help="Fail unless nvcc reports this CUDA release"
    )

    parser.add_argument(
        "--format",
        choices=["shell", "json"],
        default="shell",
        help="Output format for the exports (default: shell)"
    )

    parser.add_argument(
        "--show",
        action="store_true",
        help="Log the parsed architecture entries"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    parser.add_argument(
        "--log-file",
        type=Path,
        help="Also write the log to this file"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)
    command: List[str] = []
    if "--" in argv:
        split = argv.index("--")
        command = argv[split + 1:]
        argv = argv[:split]

    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        toolchain = probe_compilers() if args.probe_compiler else None
        config = BuildConfig.resolve(
            args.target,
            arch=args.arch,
            policy=args.policy,
            cuda_home=args.cuda_home,
            max_jobs=args.jobs,
            nvcc_flags=args.nvcc_flags,
            toolchain=toolchain,
        )

        if args.require_cuda:
            nvcc = find_nvcc(config.cuda_home)
            check_cuda_release(nvcc_release(nvcc), args.require_cuda)

        if args.show:
            for entry in parse(config.archs.dotted).entries:
                logger.info(f"  {entry.dotted} -> sm_{entry.number}")
            logger.info(f"Dotted list:      {config.archs.dotted}")
            logger.info(f"Numeric list:     {config.archs.numeric or '(empty)'}")
            logger.info(f"Accelerated list: {config.archs.accelerated or '(empty)'}")

        if command:
            logger.info(f"Building {args.target} for SMs [{config.archs.dotted}]")
            run_build(config, command)
            logger.info(f"{args.target} build completed")
        else:
            print(format_exports(config.exports(), args.format))
    except (ArchConfigError, ValueError) as e:
        logger.error(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
