import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import requests

from labstrap.errors import CommandError, DownloadError, WriteError

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]

CHUNK_SIZE = 1 << 20


@dataclass
class CommandResult:
    cmd: str
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def display(cmd: Command) -> str:
    return cmd if isinstance(cmd, str) else shlex.join(cmd)


class Executor:
    """Where a plan's commands run.

    Subclasses implement `_execute`; every probe and file helper below is
    expressed as plain shell commands so a remote host only needs bash and
    coreutils. Local execution overrides the ones Python does better.
    """

    def __init__(self):
        self._root: Optional[bool] = None

    def _execute(self, argv: List[str], cwd: Optional[str], env: Optional[Mapping[str, str]],
                 input: Optional[str]) -> CommandResult:
        raise NotImplementedError

    def _wrap(self, cmd: Command, sudo: bool) -> List[str]:
        argv = ["bash", "-c", cmd] if isinstance(cmd, str) else list(cmd)
        if sudo and not self.is_root():
            argv = ["sudo"] + argv
        return argv

    def run(self, cmd: Command, *, sudo: bool = False, check: bool = True, cwd: Optional[str] = None,
            env: Optional[Mapping[str, str]] = None, input: Optional[str] = None, quiet: bool = False,
            shown: Optional[str] = None) -> CommandResult:
        """Run `cmd` (argv list, or a string for bash -c) and return its combined output.

        `shown` replaces the command in logs and errors, for commands carrying secrets.
        """
        argv = self._wrap(cmd, sudo)
        text = shown or display(cmd)
        if sudo and argv[0] == "sudo":
            text = f"sudo {text}"
        logger.log(logging.DEBUG if quiet else logging.INFO, f"$ {text}")
        result = self._execute(argv, cwd, env, input)
        result.cmd = text
        if check and not result.ok:
            raise CommandError(text, result.returncode, result.output)
        return result

    # probes
    def which(self, name: str) -> bool:
        return self.run(f"command -v {shlex.quote(name)}", check=False, quiet=True).ok

    def exists(self, path: str) -> bool:
        return self.run(["test", "-e", path], check=False, quiet=True).ok

    def is_dir(self, path: str) -> bool:
        return self.run(["test", "-d", path], check=False, quiet=True).ok

    def read_text(self, path: str) -> str:
        result = self.run(["cat", path], check=False, quiet=True)
        return result.output if result.ok else ""

    def getenv(self, name: str) -> Optional[str]:
        result = self.run(["printenv", name], check=False, quiet=True)
        if not result.ok:
            return None
        return result.output.strip() or None

    def is_root(self) -> bool:
        if self._root is None:
            self._root = self.run(["id", "-u"], quiet=True).output.strip() == "0"
        return self._root

    def cpu_count(self) -> int:
        result = self.run(["nproc"], check=False, quiet=True)
        try:
            return max(1, int(result.output.strip()))
        except ValueError:
            return 1

    def http_ok(self, url: str, timeout: float = 5.0) -> bool:
        cmd = ["curl", "-fsS", "-o", "/dev/null", "--max-time", str(int(timeout)), url]
        return self.run(cmd, check=False, quiet=True).ok

    # filesystem
    def makedirs(self, path: str, sudo: bool = False) -> None:
        self.run(["mkdir", "-p", path], sudo=sudo)

    def remove(self, path: str, sudo: bool = False) -> None:
        self.run(["rm", "-rf", path], sudo=sudo)

    def write_file(self, path: str, content: str, sudo: bool = False, mode: Optional[str] = None) -> None:
        tmp = f"{path}.labstrap-tmp"
        self.run(["bash", "-c", f"cat > {shlex.quote(tmp)}"], sudo=sudo, input=content,
                 shown=f"write {path}")
        if mode:
            self.run(["chmod", mode, tmp], sudo=sudo, quiet=True)
        elif self.exists(path):
            # keep owner and mode of the file being replaced (a user's .bashrc edited as root)
            self.run(["chown", f"--reference={path}", tmp], sudo=sudo, check=False, quiet=True)
            self.run(["chmod", f"--reference={path}", tmp], sudo=sudo, check=False, quiet=True)
        self.run(["mv", "-f", tmp, path], sudo=sudo, quiet=True)

    def append_line_once(self, path: str, line: str, marker: Optional[str] = None, sudo: bool = False) -> bool:
        """Append `line` unless `marker` (default: the line) is already in the file.

        Returns True when the file changed.
        """
        content = self.read_text(path)
        if (marker or line) in content:
            logger.debug(f"{path} already contains {marker or line!r}")
            return False
        if content and not content.endswith("\n"):
            content += "\n"
        self.write_file(path, content + line + "\n", sudo=sudo)
        logger.info(f"Added {line!r} to {path}")
        return True

    def download(self, url: str, dest: str, headers: Optional[Dict[str, str]] = None) -> None:
        part = f"{dest}.part"
        cmd = ["curl", "-fL", "--retry", "3", "-C", "-", "-o", part]
        for key, value in (headers or {}).items():
            cmd += ["-H", f"{key}: {value}"]
        cmd.append(url)
        result = self.run(cmd, check=False, shown=f"curl -fL -C - -o {part} {url}")
        if not result.ok:
            raise DownloadError(f"download of {url} failed (curl exit {result.returncode})")
        self.run(["mv", "-f", part, dest], quiet=True)

    def spawn(self, cmd: Sequence[str], log_path: str) -> None:
        """Start `cmd` in the background, detached from this session"""
        self.run(f"nohup {shlex.join(cmd)} > {shlex.quote(log_path)} 2>&1 < /dev/null &")

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class LocalExecutor(Executor):
    """Runs commands on this machine, streaming their output into the log"""

    def _execute(self, argv, cwd, env, input):
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                env=full_env,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except (FileNotFoundError, PermissionError) as e:
            return CommandResult(display(argv), 127, str(e))

        if input is not None:
            output, _ = proc.communicate(input)
            for line in output.splitlines():
                logger.debug(line)
            return CommandResult(display(argv), proc.returncode, output)

        lines = []
        assert proc.stdout is not None
        for line in proc.stdout:
            line = line.rstrip("\n")
            lines.append(line)
            logger.debug(line)
        return CommandResult(display(argv), proc.wait(), "\n".join(lines))

    def which(self, name):
        return shutil.which(name) is not None

    def exists(self, path):
        return os.path.exists(path)

    def is_dir(self, path):
        return os.path.isdir(path)

    def read_text(self, path):
        try:
            return Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def getenv(self, name):
        return os.environ.get(name) or None

    def is_root(self):
        return os.geteuid() == 0

    def cpu_count(self):
        return os.cpu_count() or 1

    def http_ok(self, url, timeout=5.0):
        try:
            return requests.get(url, timeout=timeout).ok
        except requests.RequestException as e:
            logger.debug(f"{url} not ready: {e}")
            return False

    def write_file(self, path, content, sudo=False, mode=None):
        if sudo and not self.is_root():
            return super().write_file(path, content, sudo=sudo, mode=mode)
        logger.info(f"$ write {path}")
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        except OSError as e:
            raise WriteError(f"cannot write {path}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            if mode:
                os.chmod(tmp, int(mode, 8))
            elif target.exists():
                st = target.stat()
                os.chmod(tmp, st.st_mode & 0o7777)
                if self.is_root():
                    os.chown(tmp, st.st_uid, st.st_gid)
            else:
                os.chmod(tmp, 0o644)
            os.replace(tmp, target)
        except OSError as e:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise WriteError(f"cannot write {path}: {e}") from e

    def download(self, url, dest, headers=None):
        """Stream `url` into `dest`, resuming a previous partial download"""
        part = Path(f"{dest}.part")
        try:
            self._download(url, part, headers)
            os.replace(part, dest)
        except requests.RequestException as e:
            raise DownloadError(f"download of {url} failed: {e}") from e
        except OSError as e:
            raise DownloadError(f"download of {url} to {dest} failed: {e}") from e
        logger.info(f"Saved {dest}")

    def _download(self, url: str, part: Path, headers: Optional[Dict[str, str]]) -> None:
        part.parent.mkdir(parents=True, exist_ok=True)
        have = part.stat().st_size if part.exists() else 0
        req_headers = dict(headers or {})
        if have:
            req_headers["Range"] = f"bytes={have}-"
            logger.info(f"Resuming {url} at {have} bytes")
        else:
            logger.info(f"Downloading {url}")
        with requests.get(url, headers=req_headers, stream=True, timeout=(10, 60)) as r:
            if r.status_code == 416:
                # server says the range is past the end: the part file is complete
                return
            r.raise_for_status()
            append = have and r.status_code == 206
            total = int(r.headers.get("Content-Length") or 0) + (have if append else 0)
            written = have if append else 0
            next_report = written + (256 << 20)
            with open(part, "ab" if append else "wb") as f:
                for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    written += len(chunk)
                    if written >= next_report:
                        if total:
                            logger.info(f"  {written >> 20} / {total >> 20} MiB")
                        else:
                            logger.info(f"  {written >> 20} MiB")
                        next_report += 256 << 20

    def spawn(self, cmd, log_path):
        logger.info(f"$ {shlex.join(cmd)} &  (log: {log_path})")
        try:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "ab") as log:
                subprocess.Popen(list(cmd), stdout=log, stderr=subprocess.STDOUT,
                                 stdin=subprocess.DEVNULL, start_new_session=True)
        except OSError as e:
            raise CommandError(shlex.join(cmd), 127, str(e)) from e


class DryRunExecutor(Executor):
    """Prints what a plan would do without touching the system.

    Probes answer from `assume` (tool names, paths and URLs mapped to
    booleans), everything else is reported as absent. A URL not in `assume`
    answers once a background process has been spawned.
    """

    def __init__(self, assume: Optional[Mapping[str, bool]] = None, root: bool = True):
        super().__init__()
        self.assume = dict(assume or {})
        self._root = root
        self.commands: List[str] = []
        self._spawned = False

    def _execute(self, argv, cwd, env, input):
        return CommandResult(display(argv), 0, "")

    def run(self, cmd, **kwargs):
        result = super().run(cmd, **kwargs)
        self.commands.append(result.cmd)
        return result

    def which(self, name):
        return self.assume.get(name, False)

    def exists(self, path):
        return self.assume.get(path, False)

    def is_dir(self, path):
        return self.assume.get(path, False)

    def read_text(self, path):
        return ""

    def getenv(self, name):
        return None

    def cpu_count(self):
        return os.cpu_count() or 1

    def http_ok(self, url, timeout=5.0):
        return self.assume.get(url, self._spawned)

    def write_file(self, path, content, sudo=False, mode=None):
        self.commands.append(f"write {path}")
        logger.info(f"$ write {path}")
        for line in content.splitlines():
            logger.debug(f"  | {line}")

    def download(self, url, dest, headers=None):
        self.commands.append(f"download {url} -> {dest}")
        logger.info(f"$ download {url} -> {dest}")

    def spawn(self, cmd, log_path):
        self.commands.append(f"{shlex.join(cmd)} &")
        self._spawned = True
        logger.info(f"$ {shlex.join(cmd)} &")
