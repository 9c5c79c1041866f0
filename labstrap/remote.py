import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import asyncssh

from labstrap.config import SerialDataclass, verbose
from labstrap.errors import CommandError
from labstrap.executor import CommandResult, Executor, display

logger = logging.getLogger(__name__)

DEFAULT_KEY_PATH = Path.home() / ".ssh" / "id_ed25519"


@dataclass(frozen=True)
class SSHConfig(SerialDataclass):
    hostname: str
    username: str
    private_key: str  # PEM-format string
    port: int = 22
    private_key_passphrase: Optional[str] = None
    keepalive_interval: int = 30
    keepalive_count_max: int = 3

    @classmethod
    def from_key_file(
        cls,
        hostname: str,
        username: str,
        key_path: Path = DEFAULT_KEY_PATH,
        **kwargs
    ) -> "SSHConfig":
        """Create SSHConfig from a key file path"""
        if not key_path.exists():
            raise FileNotFoundError(f"SSH key not found at {key_path}")

        return cls(
            hostname=hostname,
            username=username,
            private_key=key_path.read_text(),
            **kwargs
        )

    def __repr__(self) -> str:
        return f"SSHConfig({self.username}@{self.hostname}:{self.port})"


class ManagedSSHAgent:
    """In-memory SSH agent that never touches the filesystem"""

    def __init__(self):
        self._keys: Dict[str, asyncssh.SSHKey] = {}

    def add_key(self, key_data: str, passphrase: Optional[str] = None) -> str:
        key = asyncssh.import_private_key(key_data, passphrase)
        fingerprint = key.get_fingerprint()
        self._keys[fingerprint] = key
        return fingerprint

    def get_keys(self):
        return list(self._keys.values())


def _connect_options(config: SSHConfig, agent: ManagedSSHAgent) -> dict:
    return {
        'host': config.hostname,
        'port': config.port,
        'username': config.username,
        'client_keys': agent.get_keys(),
        'known_hosts': None,
        'keepalive_interval': config.keepalive_interval,
        'keepalive_count_max': config.keepalive_count_max,
    }


async def ssh_run(ssh_config: SSHConfig, command: str) -> Optional[str]:
    """One-shot command on a fresh connection; None when it fails for any reason"""
    agent = ManagedSSHAgent()
    agent.add_key(ssh_config.private_key, ssh_config.private_key_passphrase)
    try:
        async with asyncssh.connect(**_connect_options(ssh_config, agent)) as conn:
            result = await conn.run(command)
            if verbose(3):
                logger.debug(str(result))
            return result.stdout if result.exit_status == 0 else None  # type: ignore
    except (OSError, asyncssh.Error) as e:
        logger.warning(f"SSH command '{command}' failed: {e}")
        return None


async def ssh_ok(
    ssh_config: SSHConfig,
    max_wait: int = 300,
    check_interval: int = 5
) -> bool:
    """Poll the host until it answers a trivial command or `max_wait` runs out"""
    start_time = time.time()
    attempt = 0

    while (time.time() - start_time) < max_wait:
        attempt += 1
        logger.info((
            f"SSH connection attempt {attempt} "
            f"to {ssh_config.hostname}:{ssh_config.port}..."
        ))

        result = await ssh_run(ssh_config, "echo 'SSH OK'")
        if result is not None and "SSH OK" in result:
            logger.info("SSH connection established!")
            return True

        if (time.time() - start_time) < max_wait:
            await asyncio.sleep(check_interval)

    logger.error(f"SSH connection timeout after {max_wait} seconds")
    return False


class RemoteExecutor(Executor):
    """Runs a plan on another host over one long-lived SSH connection"""

    def __init__(self, config: SSHConfig):
        super().__init__()
        self.config = config
        self._agent = ManagedSSHAgent()
        self._loop = asyncio.new_event_loop()
        self._connection: Optional[asyncssh.SSHClientConnection] = None

    def connect(self) -> None:
        if self._connection is not None:
            return
        self._agent.add_key(self.config.private_key, self.config.private_key_passphrase)
        try:
            self._connection = self._loop.run_until_complete(
                asyncssh.connect(**_connect_options(self.config, self._agent)))
        except (OSError, asyncssh.Error) as e:
            raise CommandError(f"ssh {self.config.username}@{self.config.hostname}", 255, str(e)) from e
        logger.info(f"Connected to {self.config.username}@{self.config.hostname}")

    def _execute(self, argv, cwd, env, input):
        self.connect()
        assert self._connection, "No ssh connection established"
        command = shlex.join(argv)
        if env:
            command = "env " + " ".join(shlex.quote(f"{k}={v}") for k, v in env.items()) + " " + command
        if cwd:
            command = f"cd {shlex.quote(cwd)} && {command}"
        try:
            result = self._loop.run_until_complete(
                self._connection.run(command, input=input, stderr=asyncssh.STDOUT, check=False))
        except (OSError, asyncssh.Error) as e:
            return CommandResult(display(argv), 255, str(e))
        output = result.stdout or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", "replace")
        for line in output.splitlines():
            logger.debug(line)
        returncode = result.exit_status if result.exit_status is not None else 255
        return CommandResult(display(argv), returncode, output.rstrip("\n"))

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._loop.run_until_complete(self._connection.wait_closed())
            self._connection = None
            logger.info("SSH connection closed")
        if not self._loop.is_closed():
            self._loop.close()
