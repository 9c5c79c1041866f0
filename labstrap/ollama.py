import logging
import time

from labstrap.errors import ServiceError
from labstrap.executor import Executor

logger = logging.getLogger(__name__)

INSTALL_SCRIPT = "https://ollama.com/install.sh"


def install_ollama(executor: Executor) -> None:
    if executor.which("ollama"):
        logger.info("Ollama already installed, skipping installer")
        return
    executor.run(f"curl -fsSL {INSTALL_SCRIPT} | sh", sudo=True)


def ensure_serving(executor: Executor, port: int = 11434, log_path: str = "/tmp/ollama-serve.log",
                   max_retries: int = 20, retry_delay: float = 1.0) -> None:
    """Start `ollama serve` unless the API already answers, then wait until it does"""
    url = f"http://127.0.0.1:{port}/api/tags"
    if executor.http_ok(url):
        logger.info("Ollama API already answering")
        return

    logger.info("Starting Ollama server in the background...")
    executor.spawn(["ollama", "serve"], log_path)
    for attempt in range(1, max_retries + 1):
        if executor.http_ok(url):
            logger.info(f"Ollama ready (attempt {attempt}/{max_retries})")
            return
        logger.info(f"Ollama not ready yet (attempt {attempt}/{max_retries})")
        if attempt < max_retries:
            time.sleep(retry_delay)
    raise ServiceError(f"Ollama did not answer on {url} after {max_retries} attempts; see {log_path}")


def pull_model(executor: Executor, model: str) -> bool:
    """A failed pull is logged, not raised: the model can be pulled later"""
    result = executor.run(["ollama", "pull", model], check=False)
    if not result.ok:
        logger.warning(f"Model pull failed for {model}, continuing. Retry with: ollama pull {model}")
        return False
    logger.info(f"Pulled {model}")
    return True
