import logging
import os
from typing import Dict, Optional
from urllib.parse import quote

from labstrap.config import ModelSpec
from labstrap.executor import Executor

logger = logging.getLogger(__name__)

HF_ENDPOINT = os.getenv("HF_ENDPOINT", "https://huggingface.co")


def hf_url(spec: ModelSpec, endpoint: str = HF_ENDPOINT) -> str:
    if spec.url:
        return spec.url
    return f"{endpoint.rstrip('/')}/{spec.repo}/resolve/{quote(spec.revision, safe='')}/{quote(spec.filename)}"


def auth_headers(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def ensure_model(executor: Executor, spec: ModelSpec, model_dir: str, token: Optional[str] = None) -> str:
    """Download the GGUF file into `model_dir` unless it is already there"""
    dest = os.path.join(model_dir, spec.filename)
    if executor.exists(dest):
        logger.info(f"Model already exists: {dest}")
        return dest
    executor.makedirs(model_dir)
    url = hf_url(spec)
    logger.info(f"Downloading model {spec.repo}/{spec.filename}")
    executor.download(url, dest, headers=auth_headers(token))
    logger.info(f"Model downloaded to {dest}")
    return dest


def install_hf_cli(executor: Executor, venv: str) -> str:
    """Create `venv` with huggingface_hub installed; returns the path of its `hf` CLI"""
    executor.makedirs(os.path.dirname(venv.rstrip("/")) or "/", sudo=True)
    if not executor.exists(os.path.join(venv, "bin", "python")):
        executor.run(["python3", "-m", "venv", venv], sudo=True)
    pip = os.path.join(venv, "bin", "pip")
    executor.run([pip, "install", "--upgrade", "pip", "huggingface_hub"], sudo=True)
    return os.path.join(venv, "bin", "hf")
