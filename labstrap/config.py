import json
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

import dacite

from labstrap.errors import ConfigError

T = TypeVar("T", bound="SerialDataclass")

GPU_TYPES = ("nvidia", "intel", "amd", "cpu")
OPENWEBUI_SOURCES = ("pip", "git", "installer")
FASTFETCH_SOURCES = ("ppa", "deb")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class SerialDataclass:
    """Base class for dataclasses with JSON serialization support"""

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)  # type: ignore

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create instance from dictionary using dacite, rejecting unknown keys"""
        try:
            return dacite.from_dict(data_class=cls, data=data, config=dacite.Config(strict=True))
        except dacite.DaciteError as e:
            raise ConfigError(f"invalid {cls.__name__}: {e}") from e


@dataclass(frozen=True)
class RepoSpec(SerialDataclass):
    url: str
    branch: str = "master"


@dataclass(frozen=True)
class ModelSpec(SerialDataclass):
    repo: str = "QuantFactory/Meta-Llama-3-8B-Instruct-GGUF"
    filename: str = "Meta-Llama-3-8B-Instruct.Q4_0.gguf"
    revision: str = "main"
    url: Optional[str] = None  # overrides the Hugging Face resolve URL


@dataclass(frozen=True)
class CudaSpec(SerialDataclass):
    repo_url: str = "https://developer.download.nvidia.com/compute/cuda/repos/ubuntu2204/x86_64"
    keyring: str = "cuda-keyring_1.1-1_all.deb"
    packages: List[str] = field(
        default_factory=lambda: ["nvidia-utils-535", "nvidia-container-toolkit", "cuda-runtime-12-2"]
    )


@dataclass(frozen=True)
class PathsConfig(SerialDataclass):
    llama_dir: str = "/opt/llama.cpp"
    openwebui_dir: str = "/opt/openwebui"
    model_dir: str = "/srv/llama/models"
    hf_venv: str = "/opt/venvs/hf"
    log_dir: str = "/var/log/laptoplab"


@dataclass(frozen=True)
class ServerSpec(SerialDataclass):
    host: str = "0.0.0.0"
    llama_port: int = 9999
    openwebui_port: int = 8080
    ollama_port: int = 11434
    n_gpu_layers: int = 999
    service_user: str = "aiuser"


@dataclass(frozen=True)
class BootstrapConfig(SerialDataclass):
    paths: PathsConfig = field(default_factory=PathsConfig)
    server: ServerSpec = field(default_factory=ServerSpec)
    model: ModelSpec = field(default_factory=ModelSpec)
    cuda: CudaSpec = field(default_factory=CudaSpec)
    llama_repo: RepoSpec = field(
        default_factory=lambda: RepoSpec("https://github.com/ggerganov/llama.cpp.git", "master")
    )
    openwebui_repo: RepoSpec = field(
        default_factory=lambda: RepoSpec("https://github.com/open-webui/open-webui.git", "main")
    )
    ollama_model: str = "gemma3:270m"
    openwebui_source: str = "pip"
    fastfetch_source: str = "ppa"
    wsl_systemd: bool = True
    auto: bool = False
    dry_run: bool = False
    gpu_type: Optional[str] = None
    cuda_available: Optional[bool] = None
    hf_token: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if self.gpu_type is not None and self.gpu_type not in GPU_TYPES:
            raise ConfigError(f"gpu_type must be one of {', '.join(GPU_TYPES)}, got {self.gpu_type!r}")
        if self.openwebui_source not in OPENWEBUI_SOURCES:
            raise ConfigError(f"openwebui_source must be one of {', '.join(OPENWEBUI_SOURCES)}")
        if self.fastfetch_source not in FASTFETCH_SOURCES:
            raise ConfigError(f"fastfetch_source must be one of {', '.join(FASTFETCH_SOURCES)}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # never write a token back to disk
        data["hf_token"] = None
        return data

    def model_path(self) -> str:
        return os.path.join(self.paths.model_dir, self.model.filename)


def verbose(level=1):
    # verbose(1): short, concise info
    # verbose(2): diagnostics, command output
    # verbose(3): full logs
    try:
        return int(os.getenv("VERBOSE", 0)) >= level
    except ValueError:
        return False


def parse_bool(name: str, value: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean (1/0, true/false, yes/no), got {value!r}")


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def apply_env(config: BootstrapConfig, env: Mapping[str, str]) -> BootstrapConfig:
    """Overlay AUTO, HF_TOKEN/HUGGINGFACE_HUB_TOKEN, GPU_TYPE and CUDA_AVAILABLE"""
    changes: Dict[str, Any] = {}
    if "AUTO" in env:
        changes["auto"] = parse_bool("AUTO", env["AUTO"])
    token = env.get("HF_TOKEN") or env.get("HUGGINGFACE_HUB_TOKEN")
    if token:
        changes["hf_token"] = token
    if env.get("GPU_TYPE"):
        changes["gpu_type"] = env["GPU_TYPE"].strip().lower()
    if env.get("CUDA_AVAILABLE"):
        changes["cuda_available"] = parse_bool("CUDA_AVAILABLE", env["CUDA_AVAILABLE"])
    return replace(config, **changes) if changes else config


def load_config(path: Optional[str | Path] = None, env: Optional[Mapping[str, str]] = None) -> BootstrapConfig:
    """Defaults, then the JSON file at `path`, then the environment"""
    data = BootstrapConfig().to_dict()
    if path is not None:
        try:
            file_data = json.loads(Path(path).read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"config {path} is not valid JSON: {e}") from e
        if not isinstance(file_data, dict):
            raise ConfigError(f"config {path} must contain a JSON object")
        data = _merge(data, file_data)
    config = BootstrapConfig.from_dict(data)
    return apply_env(config, os.environ if env is None else env)
