import logging
import os
from typing import List, Optional

from labstrap import apt
from labstrap.config import CudaSpec
from labstrap.executor import Executor
from labstrap.gpu import GpuInfo

logger = logging.getLogger(__name__)

WSL_CONF = "/etc/wsl.conf"
FASTFETCH_PPA = "ppa:zhangsongcui3371/fastfetch"
FASTFETCH_DEB = "https://github.com/fastfetch-cli/fastfetch/releases/latest/download/fastfetch-linux-amd64.deb"
NVIDIA_SUMMARY = "nvidia-smi --query-gpu=name,memory.total,memory.used,utilization.gpu --format=csv,noheader"


def render_wsl_conf(default_user: str = "root", systemd: bool = True) -> str:
    lines = ["[user]", f"default={default_user}", "", "[boot]", 'command="cd ~"']
    if systemd:
        lines.append("systemd=true")
    return "\n".join(lines) + "\n"


def write_wsl_conf(executor: Executor, default_user: str = "root", systemd: bool = True) -> bool:
    """Returns True when /etc/wsl.conf changed; WSL needs `wsl --shutdown` to pick it up"""
    content = render_wsl_conf(default_user, systemd)
    if executor.read_text(WSL_CONF) == content:
        logger.info(f"{WSL_CONF} already up to date")
        return False
    executor.write_file(WSL_CONF, content, sudo=True, mode="644")
    logger.info("Reminder: run 'wsl --shutdown' in PowerShell to apply /etc/wsl.conf changes.")
    return True


def install_fastfetch(executor: Executor, source: str = "ppa") -> None:
    if executor.which("fastfetch"):
        logger.info("fastfetch already installed")
        return
    if source == "deb":
        deb = "/tmp/fastfetch-linux-amd64.deb"
        executor.download(FASTFETCH_DEB, deb)
        apt.install_deb(executor, deb)
    else:
        apt.add_repository(executor, FASTFETCH_PPA)
        apt.update(executor)
        apt.install(executor, ["fastfetch"])


def bashrc_paths(executor: Executor) -> List[str]:
    """root's .bashrc plus the invoking user's when running under sudo"""
    paths = ["/root/.bashrc"]
    sudo_user = executor.getenv("SUDO_USER")
    if sudo_user and sudo_user != "root":
        user_rc = f"/home/{sudo_user}/.bashrc"
        if executor.exists(user_rc):
            paths.append(user_rc)
    elif not executor.is_root():
        home = executor.getenv("HOME")
        if home:
            paths = [os.path.join(home, ".bashrc")]
    return paths


def add_login_hooks(executor: Executor, fastfetch: bool = True, gpu_summary: bool = False,
                    cd_home: bool = False, paths: Optional[List[str]] = None) -> int:
    """Append the login-time lines once per bashrc; returns how many lines were added"""
    lines = []
    if cd_home:
        lines.append(("cd ~", "cd ~"))
    if fastfetch:
        lines.append(("fastfetch", "fastfetch"))
    if gpu_summary:
        lines.append((NVIDIA_SUMMARY, "nvidia-smi --query-gpu"))
    added = 0
    for path in paths or bashrc_paths(executor):
        for line, marker in lines:
            if executor.append_line_once(path, line, marker=marker, sudo=True):
                added += 1
    return added


def install_cuda_runtime(executor: Executor, cuda: CudaSpec) -> None:
    """NVIDIA apt keyring plus the runtime packages; the Windows host driver stays in charge"""
    apt.install(executor, ["wget", "gnupg"])
    deb = os.path.join("/tmp", cuda.keyring)
    executor.download(f"{cuda.repo_url.rstrip('/')}/{cuda.keyring}", deb)
    executor.run(["dpkg", "-i", deb], sudo=True)
    apt.update(executor)
    apt.install(executor, cuda.packages)


def ensure_cuda_toolkit(executor: Executor, gpu: GpuInfo) -> bool:
    """Install nvcc when an NVIDIA GPU is present without it; returns True if installed now"""
    if gpu.gpu_type != "nvidia" or gpu.nvcc_version is not None or gpu.forced_type:
        return False
    logger.info("CUDA toolkit not found. Installing...")
    apt.install(executor, ["nvidia-cuda-toolkit"])
    return True


def verify_gpu(executor: Executor) -> bool:
    if not executor.which("nvidia-smi"):
        logger.warning("nvidia-smi not found. Check NVIDIA installation.")
        return False
    return executor.run(["nvidia-smi"], check=False).ok
