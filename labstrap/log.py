import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("labstrap")


def setup_logging(log_file: Optional[str | Path] = None, level: int = logging.INFO) -> Optional[Path]:
    """Log to the console and tee everything into `log_file` when it can be opened.

    Returns the file actually being written, or None for console-only logging.
    """
    logger.setLevel(logging.DEBUG)
    # avoid duplicate lines when called twice in one process
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file is None:
        return None

    path = Path(log_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    except OSError as e:
        logger.warning(f"Cannot write log file {path} ({e}); logging to console only")
        return None

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.info(f"Logging to {path}")
    return path
