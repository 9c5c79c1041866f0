import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from labstrap.build import BuildResult
from labstrap.config import BootstrapConfig
from labstrap.executor import Executor

logger = logging.getLogger(__name__)

UNIT_DIR = "/etc/systemd/system"


@dataclass
class ServiceUnit:
    name: str
    description: str
    exec_start: str
    working_directory: Optional[str] = None
    user: Optional[str] = None
    after: List[str] = field(default_factory=lambda: ["network.target"])
    wants: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    type: str = "simple"
    restart: str = "on-failure"
    restart_sec: int = 5
    wanted_by: str = "multi-user.target"

    @property
    def filename(self) -> str:
        return f"{self.name}.service"

    @property
    def path(self) -> str:
        return os.path.join(UNIT_DIR, self.filename)

    def render(self) -> str:
        lines = ["[Unit]", f"Description={self.description}"]
        if self.after:
            lines.append(f"After={' '.join(self.after)}")
        if self.wants:
            lines.append(f"Wants={' '.join(self.wants)}")
        lines += ["", "[Service]", f"Type={self.type}"]
        if self.user:
            lines.append(f"User={self.user}")
        if self.working_directory:
            lines.append(f"WorkingDirectory={self.working_directory}")
        for key in sorted(self.environment):
            lines.append(f'Environment="{key}={self.environment[key]}"')
        lines += [
            f"ExecStart={self.exec_start}",
            f"Restart={self.restart}",
            f"RestartSec={self.restart_sec}",
            "",
            "[Install]",
            f"WantedBy={self.wanted_by}",
        ]
        return "\n".join(lines) + "\n"


def llama_server_unit(config: BootstrapConfig, model_path: str, build: BuildResult) -> ServiceUnit:
    server = config.server
    args = [build.binary("llama-server"), "-m", model_path,
            "--host", server.host, "--port", str(server.llama_port)]
    if build.mode == "cuda":
        args += ["--n-gpu-layers", str(server.n_gpu_layers)]
    return ServiceUnit(
        name="llamacpp",
        description="llama.cpp Server",
        exec_start=shlex.join(args),
        working_directory=build.bin_dir,
        user=server.service_user,
    )


def openwebui_unit(config: BootstrapConfig, backend: str = "llamacpp") -> ServiceUnit:
    """OpenWebUI pointed at llama-server's OpenAI API, or at Ollama"""
    server = config.server
    root = config.paths.openwebui_dir
    venv_bin = os.path.join(root, "venv", "bin")
    env = {"DATA_DIR": os.path.join(root, "data"), "PORT": str(server.openwebui_port)}
    if backend == "llamacpp":
        env["OPENAI_API_BASE_URL"] = f"http://127.0.0.1:{server.llama_port}/v1"
        env["OPENAI_API_KEY"] = "none"
        env["ENABLE_OLLAMA_API"] = "false"
        after = ["network.target", "llamacpp.service"]
    else:
        env["OLLAMA_BASE_URL"] = f"http://127.0.0.1:{server.ollama_port}"
        after = ["network.target", "ollama.service"]

    if config.openwebui_source == "git":
        workdir = os.path.join(root, "backend")
        env["PATH"] = f"{venv_bin}:/usr/local/bin:/usr/bin:/bin"
        exec_start = f"/bin/bash {os.path.join(workdir, 'start.sh')}"
    else:
        workdir = root
        exec_start = shlex.join([os.path.join(venv_bin, "open-webui"), "serve",
                                 "--host", server.host, "--port", str(server.openwebui_port)])
    return ServiceUnit(
        name="openwebui",
        description="OpenWebUI",
        exec_start=exec_start,
        working_directory=workdir,
        user=server.service_user,
        after=after,
        wants=after[1:],
        environment=env,
    )


def systemd_running(executor: Executor) -> bool:
    """False under WSL unless /etc/wsl.conf enables systemd"""
    return executor.is_dir("/run/systemd/system")


def install_unit(executor: Executor, unit: ServiceUnit) -> str:
    executor.write_file(unit.path, unit.render(), sudo=True, mode="644")
    logger.info(f"Wrote {unit.path}")
    return unit.path


def enable(executor: Executor, names: Iterable[str], start: bool = False) -> bool:
    """Enable (and optionally start) units; returns False when systemd is not running"""
    names = list(names)
    if not systemd_running(executor):
        logger.warning("systemd is not running (WSL without systemd=true?). Units written but not enabled; "
                       "run 'wsl --shutdown' from Windows after enabling systemd in /etc/wsl.conf.")
        return False
    executor.run(["systemctl", "daemon-reload"], sudo=True)
    for name in names:
        cmd = ["systemctl", "enable"] + (["--now"] if start else []) + [name]
        result = executor.run(cmd, sudo=True, check=False)
        if not result.ok:
            logger.warning(f"Could not enable {name}: {result.output.strip()}")
    return True


def ensure_service_user(executor: Executor, user: str) -> None:
    if executor.run(["id", "-u", user], check=False, quiet=True).ok:
        return
    logger.info(f"Creating service user {user}")
    executor.run(["useradd", "-m", "-s", "/bin/bash", user], sudo=True)
