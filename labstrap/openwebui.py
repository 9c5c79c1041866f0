import logging
import os

from labstrap.config import BootstrapConfig
from labstrap.executor import Executor
from labstrap.git import sync_repo

logger = logging.getLogger(__name__)

INSTALL_SCRIPT = "https://raw.githubusercontent.com/open-webui/open-webui/main/install.sh"


def _venv(executor: Executor, root: str) -> str:
    venv = os.path.join(root, "venv")
    if not executor.exists(os.path.join(venv, "bin", "python")):
        executor.run(["python3", "-m", "venv", venv])
    pip = os.path.join(venv, "bin", "pip")
    executor.run([pip, "install", "--upgrade", "pip"])
    return pip


def install_openwebui(executor: Executor, config: BootstrapConfig) -> str:
    """Install OpenWebUI from the configured source; returns the install root"""
    root = config.paths.openwebui_dir
    source = config.openwebui_source

    if source == "installer":
        logger.info("Installing OpenWebUI via the official script...")
        executor.run(f"curl -fsSL {INSTALL_SCRIPT} | bash", sudo=True)
        return root

    executor.makedirs(root)
    if source == "git":
        sync_repo(executor, config.openwebui_repo, root)
        pip = _venv(executor, root)
        executor.run([pip, "install", "-r", os.path.join(root, "backend", "requirements.txt")])
    else:
        pip = _venv(executor, root)
        executor.run([pip, "install", "--upgrade", "open-webui"])
    executor.makedirs(os.path.join(root, "data"))
    return root
