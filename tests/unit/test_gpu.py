"""
Unit tests for GPU detection.

Probe outcomes are scripted; the interesting part is the classification
(nvidia > intel > amd > cpu) and when CUDA counts as available.
"""

import pytest

from labstrap.errors import ConfigError
from labstrap.gpu import GpuInfo, detect_gpu

WSL_VERSION = "Linux version 5.15.153.1-microsoft-standard-WSL2 (root@...)"
NVCC = "nvcc: NVIDIA (R) Cuda compiler driver\nCuda compilation tools, release 12.2, V12.2.140"


class TestDetectGpu:

    def test_nvidia_under_wsl_with_nvcc(self, fake):
        ex = fake(
            tools={"nvidia-smi", "nvcc"},
            files={"/proc/version": WSL_VERSION, "/dev/dxg": ""},
            responses={"--query-gpu=name": (0, "NVIDIA GeForce RTX 4070 Laptop GPU\n"), "nvcc --version": (0, NVCC)},
        )
        info = detect_gpu(ex)
        assert info.wsl and info.dxg
        assert info.nvidia_names == ["NVIDIA GeForce RTX 4070 Laptop GPU"]
        assert info.gpu_type == "nvidia"
        assert info.nvcc_version == "12.2"
        assert info.cuda_available

    def test_nvidia_without_nvcc(self, fake):
        ex = fake(tools={"nvidia-smi"}, responses={"--query-gpu=name": (0, "RTX 3090\nRTX 3090\n")})
        info = detect_gpu(ex)
        assert info.gpu_type == "nvidia"
        assert len(info.nvidia_names) == 2
        assert not info.cuda_available

    def test_nvidia_smi_without_driver(self, fake):
        ex = fake(tools={"nvidia-smi"}, responses={"nvidia-smi": (9, "NVIDIA-SMI has failed")})
        info = detect_gpu(ex)
        assert not info.nvidia
        assert info.gpu_type == "cpu"

    def test_nvidia_counts_when_name_query_is_empty(self, fake):
        ex = fake(tools={"nvidia-smi"}, responses={"--query-gpu=name": (0, "")})
        info = detect_gpu(ex)
        assert info.nvidia
        assert info.nvidia_names == []
        assert info.gpu_type == "nvidia"

    def test_dxg_checked_outside_wsl(self, fake):
        info = detect_gpu(fake(files={"/proc/version": "Linux version 6.8.0-generic", "/dev/dxg": ""}))
        assert not info.wsl
        assert info.dxg

    def test_intel_via_sycl(self, fake):
        ex = fake(tools={"sycl-ls"}, responses={"sycl-ls": (0, "[level_zero:gpu] Intel(R) Arc(TM) Graphics")})
        assert detect_gpu(ex).gpu_type == "intel"

    def test_amd_via_rocminfo(self, fake):
        ex = fake(tools={"rocminfo"}, responses={"rocminfo": (0, "Name: gfx1100\nVendor: AMD\namdgpu")})
        info = detect_gpu(ex)
        assert info.gpu_type == "amd"
        assert not info.cuda_available

    def test_nothing_found_is_cpu(self, fake):
        info = detect_gpu(fake(files={"/proc/version": "Linux version 6.8.0-generic"}))
        assert not info.wsl
        assert info.gpu_type == "cpu"
        assert not info.cuda_available

    def test_wsl_without_dxg(self, fake):
        info = detect_gpu(fake(files={"/proc/version": WSL_VERSION}))
        assert info.wsl
        assert not info.dxg

    def test_forced_type_skips_probes(self, fake):
        ex = fake()
        info = detect_gpu(ex, gpu_type="nvidia", cuda_available=True)
        assert info.gpu_type == "nvidia"
        assert info.cuda_available
        assert ex.calls == []

    def test_forced_cpu_ignores_cuda_flag(self, fake):
        info = detect_gpu(fake(), gpu_type="cpu", cuda_available=True)
        assert not info.cuda_available

    def test_forced_invalid(self, fake):
        with pytest.raises(ConfigError):
            detect_gpu(fake(), gpu_type="tpu")


class TestGpuInfo:

    def test_priority(self):
        assert GpuInfo(nvidia=True, intel=True, amd=True).gpu_type == "nvidia"
        assert GpuInfo(intel=True, amd=True).gpu_type == "intel"

    def test_summary_mentions_everything(self):
        lines = GpuInfo(wsl=True, dxg=True, nvidia=True, nvidia_names=["RTX 4090"], nvcc_version="12.4").summary()
        text = "\n".join(lines)
        assert "RTX 4090" in text
        assert "nvcc 12.4" in text
        assert "GPU type:   nvidia" in text
