"""
Unit tests for the recipes, run end to end against scripted executors.
"""

from dataclasses import replace

import pytest

from labstrap.executor import DryRunExecutor
from labstrap.plan import OK, SKIPPED
from labstrap.recipes import RECIPES, get_plan

LLAMA_UNIT = "/etc/systemd/system/llamacpp.service"
OPENWEBUI_UNIT = "/etc/systemd/system/openwebui.service"


class TestRegistry:

    def test_names(self):
        assert set(RECIPES) == {"llama-openwebui", "llama-cpp", "ollama-openwebui", "wsl-gpu", "hf-model"}

    def test_unknown(self):
        with pytest.raises(KeyError, match="unknown recipe"):
            get_plan("nosuch")

    @pytest.mark.parametrize("name", sorted(RECIPES))
    def test_dry_run_completes(self, name, make_ctx):
        ex = DryRunExecutor()
        statuses = get_plan(name).run(make_ctx(ex))
        assert all(status == OK for _, status in statuses)
        assert ex.commands


class TestLlamaOpenWebUI:

    def test_cpu_install(self, fake, make_ctx):
        ex = fake(tools={"sudo"})
        ctx = make_ctx(ex)
        get_plan("llama-openwebui").run(ctx)

        assert ctx.build.mode == "cpu"
        assert ex.ran("git clone --branch master https://github.com/ggerganov/llama.cpp.git /opt/llama.cpp")
        assert ex.ran("-DGGML_CUDA=OFF")
        assert ex.downloads[0][1] == "/srv/llama/models/Meta-Llama-3-8B-Instruct.Q4_0.gguf"
        assert "--n-gpu-layers" not in ex.writes[LLAMA_UNIT]
        assert "OPENAI_API_BASE_URL=http://127.0.0.1:9999/v1" in ex.writes[OPENWEBUI_UNIT]
        assert ctx.services == ["llamacpp", "openwebui"]
        # no systemd: units are written, never enabled
        assert not ex.ran("systemctl")

    def test_cuda_install_enables_services(self, fake, make_ctx, config):
        ex = fake(
            tools={"sudo", "nvidia-smi", "nvcc"},
            dirs={"/run/systemd/system"},
            responses={
                "--query-gpu=name": (0, "NVIDIA GeForce RTX 4090"),
                "nvcc --version": (0, "Cuda compilation tools, release 12.4, V12.4.131"),
            },
        )
        ctx = make_ctx(ex, config=replace(config, hf_token="hf_abc"))
        get_plan("llama-openwebui").run(ctx)

        assert ctx.build.mode == "cuda"
        assert "--n-gpu-layers 999" in ex.writes[LLAMA_UNIT]
        assert ex.downloads[0][2] == {"Authorization": "Bearer hf_abc"}
        assert ex.index("systemctl daemon-reload") < ex.index("systemctl enable llamacpp")
        assert ex.ran("systemctl enable openwebui")

    def test_installer_source_writes_only_llama_unit(self, fake, make_ctx, config):
        ex = fake(tools={"sudo"})
        ctx = make_ctx(ex, config=replace(config, openwebui_source="installer"))
        get_plan("llama-openwebui").run(ctx)
        assert OPENWEBUI_UNIT not in ex.writes
        assert ctx.services == ["llamacpp"]


class TestLlamaCpp:

    def test_reclones_existing_checkout(self, fake, make_ctx):
        ex = fake(dirs={"/opt/llama.cpp", "/opt/llama.cpp/.git"})
        get_plan("llama-cpp").run(make_ctx(ex))
        assert ex.index("rm -rf /opt/llama.cpp") < ex.index("mkdir -p /opt/llama.cpp")
        assert ex.ran("git clone")


class TestOllamaOpenWebUI:

    def test_install(self, fake, make_ctx):
        ex = fake(http=[False, True], dirs={"/run/systemd/system"})
        ctx = make_ctx(ex)
        statuses = get_plan("ollama-openwebui").run(ctx)
        assert all(status == OK for _, status in statuses)
        assert ex.spawned == [["ollama", "serve"]]
        assert ex.ran("ollama pull gemma3:270m")
        assert "OLLAMA_BASE_URL=http://127.0.0.1:11434" in ex.writes[OPENWEBUI_UNIT]
        assert ex.ran("systemctl enable --now openwebui")

    def test_failed_fastfetch_is_skipped(self, fake, make_ctx):
        ex = fake(responses={"add-apt-repository": (1, "cannot add PPA")})
        statuses = dict(get_plan("ollama-openwebui").run(make_ctx(ex)))
        assert statuses["Install fastfetch"] == SKIPPED
        assert statuses["Install OpenWebUI"] == OK


class TestWslGpu:

    def test_install(self, fake, make_ctx):
        ex = fake(files={"/root/.bashrc": ""})
        ctx = make_ctx(ex)
        statuses = dict(get_plan("wsl-gpu").run(ctx))
        assert "systemd=true" in ex.writes["/etc/wsl.conf"]
        assert any("wsl --shutdown" in note for note in ctx.notes)
        assert "nvidia-smi --query-gpu" in ex.files["/root/.bashrc"]
        assert ex.ran("install -y btop")
        assert ex.ran("apt-get autoremove -y")
        assert statuses["Install libtinfo5"] == OK

    def test_missing_libtinfo5_is_skipped(self, fake, make_ctx):
        ex = fake(responses={"install -y libtinfo5": (100, "E: Package 'libtinfo5' has no installation candidate")})
        statuses = dict(get_plan("wsl-gpu").run(make_ctx(ex)))
        assert statuses["Install libtinfo5"] == SKIPPED
        assert statuses["Clean up"] == OK


class TestHfModel:

    def test_install(self, fake, make_ctx):
        ex = fake()
        ctx = make_ctx(ex)
        get_plan("hf-model").run(ctx)
        assert ex.ran("/opt/venvs/hf/bin/pip install --upgrade pip huggingface_hub")
        assert ctx.model_path == "/srv/llama/models/Meta-Llama-3-8B-Instruct.Q4_0.gguf"
        assert ex.files["/root/.bashrc"].startswith("cd ~\n")
