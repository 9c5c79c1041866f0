"""GPU detection for WSL2 and bare-metal Ubuntu.

Only probes tools that ship with the vendor drivers (nvidia-smi, sycl-ls,
rocminfo) and never fails: with nothing found, CPU-only mode is used.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from labstrap.config import GPU_TYPES
from labstrap.errors import ConfigError
from labstrap.executor import Executor

logger = logging.getLogger(__name__)

NVCC_RELEASE = re.compile(r"release (\d+\.\d+)")


@dataclass
class GpuInfo:
    wsl: bool = False
    dxg: bool = False
    nvidia: bool = False
    nvidia_names: List[str] = field(default_factory=list)
    nvcc_version: Optional[str] = None
    intel: bool = False
    amd: bool = False
    forced_type: Optional[str] = None
    forced_cuda: Optional[bool] = None

    @property
    def gpu_type(self) -> str:
        if self.forced_type:
            return self.forced_type
        if self.nvidia:
            return "nvidia"
        if self.intel:
            return "intel"
        if self.amd:
            return "amd"
        return "cpu"

    @property
    def cuda_available(self) -> bool:
        if self.forced_cuda is not None:
            return self.forced_cuda and self.gpu_type == "nvidia"
        return self.nvidia and self.nvcc_version is not None

    def summary(self) -> List[str]:
        lines = [
            f"WSL:        {self.wsl}" + (" (/dev/dxg present)" if self.dxg else ""),
            f"NVIDIA GPU: {self.nvidia}" + (f" ({', '.join(self.nvidia_names)})" if self.nvidia_names else ""),
            f"Intel GPU:  {self.intel}",
            f"AMD GPU:    {self.amd}",
            f"CUDA:       {self.cuda_available}" + (f" (nvcc {self.nvcc_version})" if self.nvcc_version else ""),
            f"GPU type:   {self.gpu_type}",
        ]
        if self.forced_type:
            lines.append("(GPU type forced by GPU_TYPE)")
        return lines


def nvcc_version(executor: Executor) -> Optional[str]:
    if not executor.which("nvcc"):
        return None
    result = executor.run(["nvcc", "--version"], check=False, quiet=True)
    match = NVCC_RELEASE.search(result.output)
    if result.ok and match:
        return match.group(1)
    return "unknown" if result.ok else None


def _probe_nvidia(executor: Executor, info: GpuInfo) -> None:
    if not executor.which("nvidia-smi"):
        logger.info("NVIDIA utilities not found.")
        return
    # a plain nvidia-smi run decides; the name query only feeds the summary
    if not executor.run(["nvidia-smi"], check=False, quiet=True).ok:
        logger.error("nvidia-smi exists but cannot communicate with the driver.")
        return
    info.nvidia = True
    result = executor.run(["nvidia-smi", "--query-gpu=name", "--format=csv,noheader"], check=False, quiet=True)
    if result.ok:
        info.nvidia_names = [line.strip() for line in result.output.splitlines() if line.strip()]
    logger.info(f"NVIDIA GPU detected via nvidia-smi: {', '.join(info.nvidia_names) or 'unnamed'}")


def _tool_mentions(executor: Executor, cmd: List[str], needle: str) -> bool:
    if not executor.which(cmd[0]):
        return False
    result = executor.run(cmd, check=False, quiet=True)
    return result.ok and needle in result.output.lower()


def detect_gpu(executor: Executor, gpu_type: Optional[str] = None,
               cuda_available: Optional[bool] = None) -> GpuInfo:
    """Probe the target, unless `gpu_type` (GPU_TYPE) already says what it has"""
    info = GpuInfo()

    if gpu_type:
        if gpu_type not in GPU_TYPES:
            raise ConfigError(f"GPU_TYPE must be one of {', '.join(GPU_TYPES)}, got {gpu_type!r}")
        info.forced_type = gpu_type
        info.forced_cuda = bool(cuda_available)
        logger.info(f"GPU_TYPE={gpu_type} set, skipping detection")
        return info

    info.wsl = "microsoft" in executor.read_text("/proc/version").lower()
    if info.wsl:
        logger.info("Running inside WSL environment.")
    info.dxg = executor.exists("/dev/dxg")
    if info.dxg:
        logger.info("WSL GPU compute device detected: /dev/dxg")
    elif info.wsl:
        logger.warning("/dev/dxg not found; GPU compute is not available in this WSL instance.")

    _probe_nvidia(executor, info)
    info.intel = _tool_mentions(executor, ["sycl-ls"], "intel")
    if info.intel:
        logger.info("Intel GPU detected via oneAPI Level Zero.")
    info.amd = _tool_mentions(executor, ["rocminfo"], "amdgpu")
    if info.amd:
        logger.info("AMD GPU detected via ROCm.")
    info.nvcc_version = nvcc_version(executor)

    if info.gpu_type == "cpu":
        logger.warning("No GPU detected. CPU-only mode will be used.")
    return info
