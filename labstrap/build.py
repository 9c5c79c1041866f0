import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from labstrap.errors import BuildError, CommandError
from labstrap.executor import Executor
from labstrap.gpu import GpuInfo

logger = logging.getLogger(__name__)

SERVER_BINARIES = ("llama-server", "llama-cli", "main")


@dataclass
class BuildResult:
    mode: str  # "cuda" or "cpu"
    bin_dir: str
    fell_back: bool = False

    def binary(self, name: str = "llama-server") -> str:
        return os.path.join(self.bin_dir, name)


def cmake_configure_args(src_dir: str, build_dir: str, cuda: bool, ninja: bool) -> List[str]:
    args = ["cmake", "-S", src_dir, "-B", build_dir, "-DCMAKE_BUILD_TYPE=Release",
            f"-DGGML_CUDA={'ON' if cuda else 'OFF'}"]
    if ninja:
        args += ["-G", "Ninja"]
    return args


def _configure_and_build(executor: Executor, src_dir: str, build_dir: str, cuda: bool, ninja: bool) -> None:
    executor.run(cmake_configure_args(src_dir, build_dir, cuda, ninja))
    executor.run(["cmake", "--build", build_dir, "--config", "Release", "-j", str(executor.cpu_count())])


def build_llama(executor: Executor, src_dir: str, gpu: GpuInfo, build_dir: Optional[str] = None) -> BuildResult:
    """Build llama.cpp with CUDA when available, retrying CPU-only if the CUDA build fails"""
    build_dir = build_dir or os.path.join(src_dir, "build")
    ninja = executor.which("ninja")
    bin_dir = os.path.join(build_dir, "bin")

    if gpu.gpu_type == "nvidia" and gpu.cuda_available:
        logger.info("Building llama.cpp with CUDA support...")
        try:
            _configure_and_build(executor, src_dir, build_dir, cuda=True, ninja=ninja)
            return BuildResult("cuda", bin_dir)
        except CommandError as e:
            logger.warning(f"CUDA build failed ({e}). Retrying CPU-only build...")
            if e.output:
                logger.debug(e.tail())
            # a cached CUDA toolchain would poison the CPU configure
            executor.remove(os.path.join(build_dir, "CMakeCache.txt"))
            executor.remove(os.path.join(build_dir, "CMakeFiles"))
        fell_back = True
    else:
        if gpu.gpu_type == "intel":
            logger.info("Building llama.cpp for CPU (Intel GPU has no CUDA backend)...")
        elif gpu.gpu_type == "amd":
            logger.info("Building llama.cpp for CPU (no ROCm build)...")
        elif gpu.gpu_type == "nvidia":
            logger.info("NVIDIA GPU found but CUDA toolkit unavailable. Building CPU-only version...")
        else:
            logger.info("No GPU detected. Building CPU-only version...")
        fell_back = False

    try:
        _configure_and_build(executor, src_dir, build_dir, cuda=False, ninja=ninja)
    except CommandError as e:
        raise BuildError(f"llama.cpp CPU build failed: {e}\n{e.tail()}") from e
    return BuildResult("cpu", bin_dir, fell_back=fell_back)


def verify_build(executor: Executor, build: BuildResult) -> Optional[str]:
    """Run the first binary the build produced; returns its path, or None with a warning"""
    for name in SERVER_BINARIES:
        path = build.binary(name)
        if not executor.exists(path):
            continue
        result = executor.run([path, "--help"], check=False, quiet=True)
        if result.ok:
            logger.info(f"{name} executable works.")
            return path
        logger.warning(f"{path} failed to run (exit {result.returncode}).")
        return None
    logger.warning(f"No llama.cpp executable found in {build.bin_dir}.")
    return None
