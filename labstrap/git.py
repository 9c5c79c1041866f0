import logging
import os

from labstrap.config import RepoSpec
from labstrap.executor import Executor

logger = logging.getLogger(__name__)


def sync_repo(executor: Executor, repo: RepoSpec, dest: str, fresh: bool = False) -> str:
    """Clone `repo` into `dest`, or hard-reset an existing checkout to the remote branch.

    With `fresh`, any existing checkout is deleted first. Returns the HEAD commit.
    """
    if fresh and executor.exists(dest):
        logger.info(f"Removing existing {dest}...")
        executor.remove(dest)

    if not executor.is_dir(os.path.join(dest, ".git")):
        logger.info(f"Cloning {repo.url} ({repo.branch}) into {dest}")
        executor.run(["git", "clone", "--branch", repo.branch, repo.url, dest])
    else:
        logger.info(f"{dest} exists, updating to origin/{repo.branch}")
        executor.run(["git", "-C", dest, "fetch", "origin", repo.branch])
        executor.run(["git", "-C", dest, "reset", "--hard", f"origin/{repo.branch}"])

    head = executor.run(["git", "-C", dest, "rev-parse", "HEAD"], quiet=True).output.strip()
    logger.info(f"{os.path.basename(dest.rstrip('/'))} at {head[:12] or 'unknown'}")
    return head
