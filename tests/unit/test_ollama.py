"""
Unit tests for the Ollama install, readiness poll and model pull.
"""

import pytest

from labstrap.errors import ServiceError
from labstrap.ollama import ensure_serving, install_ollama, pull_model


class TestInstall:

    def test_skips_when_installed(self, fake):
        ex = fake(tools={"ollama"})
        install_ollama(ex)
        assert ex.calls == []

    def test_runs_installer(self, fake):
        ex = fake()
        install_ollama(ex)
        assert ex.ran("curl -fsSL https://ollama.com/install.sh | sh")


class TestEnsureServing:

    def test_already_answering(self, fake):
        ex = fake(http=True)
        ensure_serving(ex, retry_delay=0)
        assert ex.spawned == []

    def test_spawns_and_waits(self, fake):
        ex = fake(http=[False, False, True])
        ensure_serving(ex, retry_delay=0)
        assert ex.spawned == [["ollama", "serve"]]

    def test_gives_up(self, fake):
        ex = fake(http=False)
        with pytest.raises(ServiceError, match="after 3 attempts"):
            ensure_serving(ex, max_retries=3, retry_delay=0)
        assert len(ex.spawned) == 1


class TestPull:

    def test_pull(self, fake):
        ex = fake()
        assert pull_model(ex, "gemma3:270m")
        assert ex.ran("ollama pull gemma3:270m")

    def test_failed_pull_is_not_fatal(self, fake):
        ex = fake(responses={"ollama pull": (1, "pull model manifest: file does not exist")})
        assert pull_model(ex, "nosuch:model") is False
