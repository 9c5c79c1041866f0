"""Named provisioning recipes.

Each recipe reproduces one of the homelab bootstrap scripts as a Plan of
small steps; the steps themselves live in the topic modules.
"""
import logging
import os
from typing import Callable, Dict, List, Tuple

from labstrap import apt, models, ollama, openwebui, systemd, wsl
from labstrap.build import build_llama, verify_build
from labstrap.git import sync_repo
from labstrap.gpu import detect_gpu, nvcc_version
from labstrap.plan import Context, Plan

logger = logging.getLogger(__name__)


def current_user(ctx: Context) -> str:
    return ctx.executor.run(["id", "-un"], quiet=True).output.strip() or "root"


def prepare_dirs(ctx: Context, dirs: List[str]) -> None:
    """Create `dirs` as root and hand them to the invoking user, like `sudo mkdir && sudo chown`"""
    ex = ctx.executor
    owner = current_user(ctx)
    for d in dirs:
        ex.makedirs(d, sudo=True)
        if owner != "root":
            ex.run(["chown", "-R", f"{owner}:{owner}", d], sudo=True)


def detect(ctx: Context) -> None:
    ctx.gpu = detect_gpu(ctx.executor, ctx.config.gpu_type, ctx.config.cuda_available)
    for line in ctx.gpu.summary():
        logger.info(f"  {line}")


def detect_and_ensure_cuda(ctx: Context) -> None:
    detect(ctx)
    assert ctx.gpu is not None
    if wsl.ensure_cuda_toolkit(ctx.executor, ctx.gpu):
        ctx.gpu.nvcc_version = nvcc_version(ctx.executor)
        logger.info(f"CUDA version: {ctx.gpu.nvcc_version}")


def build_and_verify(ctx: Context) -> None:
    assert ctx.gpu is not None, "GPU detection must run before the build"
    ctx.build = build_llama(ctx.executor, ctx.config.paths.llama_dir, ctx.gpu)
    verify_build(ctx.executor, ctx.build)
    ctx.notes.append(f"llama.cpp built ({ctx.build.mode}{', CPU fallback' if ctx.build.fell_back else ''}): "
                     f"{ctx.build.bin_dir}")


def llama_openwebui() -> Plan:
    plan = Plan("llama-openwebui", "llama.cpp + OpenWebUI with optional CUDA acceleration")

    @plan.add("Ensure sudo is available")
    def _sudo(ctx):
        apt.ensure_sudo(ctx.executor)

    @plan.add("Prepare directories and service user")
    def _dirs(ctx):
        paths = ctx.config.paths
        prepare_dirs(ctx, [paths.llama_dir, paths.model_dir, paths.openwebui_dir])
        systemd.ensure_service_user(ctx.executor, ctx.config.server.service_user)

    @plan.add("Install build and runtime packages")
    def _packages(ctx):
        apt.update(ctx.executor)
        apt.install(ctx.executor, apt.BUILD_PACKAGES + apt.LLAMA_EXTRA_PACKAGES + apt.OPENWEBUI_RUNTIME_PACKAGES)

    plan.add("Detect GPU and CUDA toolkit")(detect_and_ensure_cuda)

    @plan.add("Sync llama.cpp")
    def _sync(ctx):
        sync_repo(ctx.executor, ctx.config.llama_repo, ctx.config.paths.llama_dir)

    plan.add("Build llama.cpp")(build_and_verify)

    @plan.add("Download model")
    def _model(ctx):
        ctx.model_path = models.ensure_model(ctx.executor, ctx.config.model, ctx.config.paths.model_dir,
                                             ctx.config.hf_token)

    @plan.add("Install OpenWebUI")
    def _openwebui(ctx):
        root = openwebui.install_openwebui(ctx.executor, ctx.config)
        if ctx.config.openwebui_source != "installer":
            user = ctx.config.server.service_user
            ctx.executor.run(["chown", "-R", f"{user}:{user}", os.path.join(root, "data")], sudo=True)

    @plan.add("Write systemd services")
    def _units(ctx):
        assert ctx.build is not None
        model_path = ctx.model_path or ctx.config.model_path()
        units = [systemd.llama_server_unit(ctx.config, model_path, ctx.build)]
        if ctx.config.openwebui_source != "installer":
            units.append(systemd.openwebui_unit(ctx.config, backend="llamacpp"))
        for unit in units:
            systemd.install_unit(ctx.executor, unit)
        ctx.services = [unit.name for unit in units]

    @plan.add("Enable services", optional=True)
    def _enable(ctx):
        systemd.enable(ctx.executor, ctx.services)
        port = ctx.config.server.openwebui_port
        ctx.notes += [f"Start with:   sudo systemctl start {' '.join(ctx.services)}"]
        ctx.notes += [f"Logs:         sudo journalctl -u {name} -f" for name in ctx.services]
        ctx.notes += [f"OpenWebUI:    http://localhost:{port}"]

    return plan


def llama_cpp() -> Plan:
    plan = Plan("llama-cpp", "fresh llama.cpp clone and GPU-aware build")

    plan.add("Detect GPU")(detect)

    @plan.add("Install build packages")
    def _packages(ctx):
        apt.update(ctx.executor)
        apt.install(ctx.executor, apt.BUILD_PACKAGES + apt.LLAMA_EXTRA_PACKAGES)

    @plan.add("Clone llama.cpp")
    def _clone(ctx):
        llama_dir = ctx.config.paths.llama_dir
        if ctx.executor.exists(llama_dir):
            logger.info(f"Removing existing {llama_dir}...")
            # the parent is usually root-owned
            ctx.executor.remove(llama_dir, sudo=True)
        prepare_dirs(ctx, [llama_dir])
        sync_repo(ctx.executor, ctx.config.llama_repo, llama_dir)

    plan.add("Build llama.cpp")(build_and_verify)
    return plan


def ollama_openwebui() -> Plan:
    plan = Plan("ollama-openwebui", "Ollama + OpenWebUI, fastfetch and system updates")

    @plan.add("Update system packages")
    def _update(ctx):
        apt.update(ctx.executor)
        apt.upgrade(ctx.executor)

    @plan.add("Install prerequisites")
    def _prereqs(ctx):
        apt.install(ctx.executor, apt.BASE_PACKAGES + ["python3", "python3-venv", "python3-pip"])

    @plan.add("Install fastfetch", optional=True)
    def _fastfetch(ctx):
        wsl.install_fastfetch(ctx.executor, ctx.config.fastfetch_source)

    @plan.add("Install Ollama")
    def _ollama(ctx):
        ollama.install_ollama(ctx.executor)

    @plan.add("Start Ollama and pull default model")
    def _pull(ctx):
        ollama.ensure_serving(ctx.executor, ctx.config.server.ollama_port)
        ollama.pull_model(ctx.executor, ctx.config.ollama_model)

    @plan.add("Install OpenWebUI")
    def _openwebui(ctx):
        paths = ctx.config.paths
        if ctx.config.openwebui_source != "installer":
            prepare_dirs(ctx, [paths.openwebui_dir])
            systemd.ensure_service_user(ctx.executor, ctx.config.server.service_user)
        root = openwebui.install_openwebui(ctx.executor, ctx.config)
        if ctx.config.openwebui_source == "installer":
            ctx.services = ["open-webui"]
            return
        user = ctx.config.server.service_user
        ctx.executor.run(["chown", "-R", f"{user}:{user}", os.path.join(root, "data")], sudo=True)
        unit = systemd.openwebui_unit(ctx.config, backend="ollama")
        systemd.install_unit(ctx.executor, unit)
        ctx.services = [unit.name]

    @plan.add("Enable and start OpenWebUI", optional=True)
    def _enable(ctx):
        systemd.enable(ctx.executor, ctx.services, start=True)

    @plan.add("Check versions", optional=True)
    def _versions(ctx):
        ex = ctx.executor
        ex.run(["ollama", "--version"], check=False)
        webui = os.path.join(ctx.config.paths.openwebui_dir, "venv", "bin", "open-webui")
        ex.run([webui if ex.exists(webui) else "open-webui", "--version"], check=False)
        ex.run(["fastfetch"], check=False)
        ctx.notes += [f"OpenWebUI:    http://localhost:{ctx.config.server.openwebui_port}",
                      f"Ollama API:   http://localhost:{ctx.config.server.ollama_port}",
                      f"Default model: {ctx.config.ollama_model}"]

    return plan


def wsl_gpu() -> Plan:
    plan = Plan("wsl-gpu", "WSL Ubuntu for GPU-enabled development")

    @plan.add("Configure /etc/wsl.conf")
    def _wsl_conf(ctx):
        if wsl.write_wsl_conf(ctx.executor, systemd=ctx.config.wsl_systemd):
            ctx.notes.append("Run 'wsl --shutdown' in PowerShell to apply /etc/wsl.conf changes.")

    @plan.add("Update system")
    def _update(ctx):
        apt.update(ctx.executor)
        apt.upgrade(ctx.executor)

    @plan.add("Install fastfetch")
    def _fastfetch(ctx):
        wsl.install_fastfetch(ctx.executor, ctx.config.fastfetch_source)

    @plan.add("Add login hooks to .bashrc")
    def _hooks(ctx):
        wsl.add_login_hooks(ctx.executor, fastfetch=True, gpu_summary=True)

    @plan.add("Install libtinfo5", optional=True)
    def _libtinfo(ctx):
        apt.install(ctx.executor, ["libtinfo5"])

    @plan.add("Install NVIDIA CLI tools and CUDA runtime")
    def _cuda(ctx):
        wsl.install_cuda_runtime(ctx.executor, ctx.config.cuda)

    @plan.add("Verify GPU access", optional=True)
    def _verify(ctx):
        detect(ctx)
        wsl.verify_gpu(ctx.executor)

    @plan.add("Install btop")
    def _btop(ctx):
        apt.install(ctx.executor, ["btop"])

    @plan.add("Clean up")
    def _cleanup(ctx):
        apt.cleanup(ctx.executor)

    return plan


def hf_model() -> Plan:
    plan = Plan("hf-model", "Hugging Face CLI venv and a GGUF model download")

    @plan.add("Update package lists")
    def _update(ctx):
        apt.update(ctx.executor)

    @plan.add("Install prerequisites")
    def _prereqs(ctx):
        apt.install(ctx.executor, apt.HF_PACKAGES)

    @plan.add("Install fastfetch", optional=True)
    def _fastfetch(ctx):
        wsl.install_fastfetch(ctx.executor, ctx.config.fastfetch_source)

    @plan.add("Fix WSL login directory and add fastfetch")
    def _hooks(ctx):
        wsl.add_login_hooks(ctx.executor, fastfetch=True, cd_home=True)

    @plan.add("Set up Hugging Face venv")
    def _venv(ctx):
        hf = models.install_hf_cli(ctx.executor, ctx.config.paths.hf_venv)
        ctx.notes.append(f"Hugging Face CLI: {hf}")

    @plan.add("Download model")
    def _model(ctx):
        prepare_dirs(ctx, [ctx.config.paths.model_dir])
        ctx.model_path = models.ensure_model(ctx.executor, ctx.config.model, ctx.config.paths.model_dir,
                                             ctx.config.hf_token)
        ctx.notes.append(f"Model ready at: {ctx.model_path}")
        ctx.notes.append("Close and reopen your WSL terminal to see fastfetch on login.")

    return plan


RECIPES: Dict[str, Tuple[str, Callable[[], Plan]]] = {
    "llama-openwebui": ("llama.cpp + OpenWebUI with systemd services", llama_openwebui),
    "llama-cpp": ("fresh llama.cpp build (CUDA when available)", llama_cpp),
    "ollama-openwebui": ("Ollama + OpenWebUI via official installers", ollama_openwebui),
    "wsl-gpu": ("WSL config, fastfetch, CUDA runtime, btop", wsl_gpu),
    "hf-model": ("Hugging Face CLI venv and model download", hf_model),
}


def get_plan(name: str) -> Plan:
    try:
        _, factory = RECIPES[name]
    except KeyError:
        raise KeyError(f"unknown recipe {name!r}; choose from {', '.join(RECIPES)}") from None
    return factory()
