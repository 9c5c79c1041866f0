"""Shared fixtures: a scripted executor so no test touches the real system."""

import shlex
from typing import Dict, List, Optional, Tuple, Union

import pytest

from labstrap.config import BootstrapConfig
from labstrap.executor import CommandResult, Executor
from labstrap.plan import Context

Response = Union[Tuple[int, str], List[Tuple[int, str]]]


class FakeExecutor(Executor):
    """Records every command; answers from `responses` keyed by substring.

    A list value is consumed in order, its last entry repeating.
    """

    def __init__(self, responses: Optional[Dict[str, Response]] = None, files: Optional[Dict[str, str]] = None,
                 tools=(), dirs=(), root: bool = True, env: Optional[Dict[str, str]] = None, http=True):
        super().__init__()
        self.responses = dict(responses or {})
        self.files = dict(files or {})
        self.tools = set(tools)
        self.dirs = set(dirs)
        self.env = dict(env or {})
        self.http = http
        self._root = root
        self.calls: List[str] = []
        self.writes: Dict[str, str] = {}
        self.downloads: List[Tuple[str, str, dict]] = []
        self.spawned: List[List[str]] = []

    def _execute(self, argv, cwd, env, input):
        text = shlex.join(argv)
        self.calls.append(text)
        for needle, response in self.responses.items():
            if needle in text:
                if isinstance(response, list):
                    rc, out = response.pop(0) if len(response) > 1 else response[0]
                else:
                    rc, out = response
                return CommandResult(text, rc, out)
        return CommandResult(text, 0, "")

    def which(self, name):
        return name in self.tools

    def exists(self, path):
        return path in self.files or path in self.dirs

    def is_dir(self, path):
        return path in self.dirs

    def read_text(self, path):
        return self.files.get(path, "")

    def getenv(self, name):
        return self.env.get(name)

    def cpu_count(self):
        return 8

    def http_ok(self, url, timeout=5.0):
        if isinstance(self.http, list):
            return self.http.pop(0) if len(self.http) > 1 else self.http[0]
        return self.http

    def write_file(self, path, content, sudo=False, mode=None):
        self.calls.append(f"write {path}")
        self.files[path] = content
        self.writes[path] = content

    def download(self, url, dest, headers=None):
        self.calls.append(f"download {url}")
        self.downloads.append((url, dest, dict(headers or {})))
        self.files[dest] = ""

    def remove(self, path, sudo=False):
        super().remove(path, sudo=sudo)
        gone = lambda p: p == path or p.startswith(path.rstrip("/") + "/")  # noqa: E731
        self.dirs = {d for d in self.dirs if not gone(d)}
        self.files = {f: c for f, c in self.files.items() if not gone(f)}

    def spawn(self, cmd, log_path):
        self.calls.append(f"spawn {shlex.join(cmd)}")
        self.spawned.append(list(cmd))

    def ran(self, needle: str) -> bool:
        return any(needle in call for call in self.calls)

    def index(self, needle: str) -> int:
        for i, call in enumerate(self.calls):
            if needle in call:
                return i
        raise AssertionError(f"{needle!r} was never run; calls: {self.calls}")


@pytest.fixture
def fake():
    """Factory for FakeExecutor instances"""
    return FakeExecutor


@pytest.fixture
def config():
    return BootstrapConfig(auto=True)


@pytest.fixture
def make_ctx(config):
    def _make(executor, **overrides):
        overrides.setdefault("interactive", False)
        return Context(config=overrides.pop("config", config), executor=executor, **overrides)
    return _make
