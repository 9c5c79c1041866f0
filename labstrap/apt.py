import logging
from typing import Iterable, List

from labstrap.errors import CommandError
from labstrap.executor import Executor

logger = logging.getLogger(__name__)

BASE_PACKAGES = ["wget", "curl", "gnupg", "lsb-release", "software-properties-common"]
BUILD_PACKAGES = [
    "git", "cmake", "ninja-build", "build-essential", "pkg-config",
    "python3", "python3-pip", "python3-venv", "curl", "wget", "unzip",
]
LLAMA_EXTRA_PACKAGES = ["libomp-dev", "libcurl4-openssl-dev"]
OPENWEBUI_RUNTIME_PACKAGES = ["ffmpeg", "libglib2.0-0", "libsm6", "libxext6", "libxrender-dev"]
HF_PACKAGES = ["wget", "btop", "python3", "python3-venv", "python3-pip", "git", "curl"]

_NONINTERACTIVE = ["env", "DEBIAN_FRONTEND=noninteractive"]


def _apt(executor: Executor, *args: str, check: bool = True):
    return executor.run(_NONINTERACTIVE + ["apt-get", *args], sudo=True, check=check)


def update(executor: Executor) -> None:
    _apt(executor, "update", "-y")


def upgrade(executor: Executor) -> None:
    _apt(executor, "upgrade", "-y")


def install(executor: Executor, packages: Iterable[str]) -> None:
    pkgs: List[str] = []
    for p in packages:
        if p not in pkgs:
            pkgs.append(p)
    if not pkgs:
        return
    _apt(executor, "install", "-y", *pkgs)


def install_deb(executor: Executor, path: str) -> None:
    """Install a local .deb, pulling its dependencies through apt"""
    _apt(executor, "install", "-y", path if path.startswith(("/", "./")) else f"./{path}")


def add_repository(executor: Executor, repo: str) -> None:
    if not executor.which("add-apt-repository"):
        install(executor, ["software-properties-common"])
    executor.run(_NONINTERACTIVE + ["add-apt-repository", "-y", repo], sudo=True)


def cleanup(executor: Executor) -> None:
    _apt(executor, "autoremove", "-y")
    _apt(executor, "clean")


def ensure_sudo(executor: Executor) -> None:
    """WSL images often ship without sudo; root can install it, anyone else cannot"""
    if executor.which("sudo"):
        return
    if not executor.is_root():
        raise CommandError("sudo", 127, "sudo is not installed and this user is not root")
    logger.info("sudo not found. Installing minimal sudo...")
    update(executor)
    install(executor, ["sudo"])
