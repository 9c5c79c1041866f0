"""
Unit tests for the apt wrappers.
"""

import pytest

from labstrap import apt
from labstrap.errors import CommandError


class TestApt:

    def test_noninteractive_with_sudo(self, fake):
        ex = fake(root=False)
        apt.update(ex)
        assert ex.calls == ["sudo env DEBIAN_FRONTEND=noninteractive apt-get update -y"]

    def test_install_dedupes_in_order(self, fake):
        ex = fake()
        apt.install(ex, ["git", "curl", "git", "wget", "curl"])
        assert ex.calls == ["env DEBIAN_FRONTEND=noninteractive apt-get install -y git curl wget"]

    def test_install_nothing(self, fake):
        ex = fake()
        apt.install(ex, [])
        assert ex.calls == []

    def test_install_relative_deb(self, fake):
        ex = fake()
        apt.install_deb(ex, "fastfetch.deb")
        assert ex.ran("install -y ./fastfetch.deb")

    def test_cleanup(self, fake):
        ex = fake()
        apt.cleanup(ex)
        assert ex.index("autoremove -y") < ex.index("apt-get clean")

    def test_failure_raises(self, fake):
        ex = fake(responses={"apt-get install": (100, "E: Unable to locate package nosuch")})
        with pytest.raises(CommandError) as info:
            apt.install(ex, ["nosuch"])
        assert info.value.returncode == 100


class TestEnsureSudo:

    def test_present(self, fake):
        ex = fake(tools={"sudo"})
        apt.ensure_sudo(ex)
        assert ex.calls == []

    def test_installed_as_root(self, fake):
        ex = fake()
        apt.ensure_sudo(ex)
        assert ex.index("apt-get update") < ex.index("apt-get install -y sudo")

    def test_not_root(self, fake):
        with pytest.raises(CommandError, match="exit code 127"):
            apt.ensure_sudo(fake(root=False))
