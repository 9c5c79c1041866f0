"""
Unit tests for logging setup.
"""

import logging

from labstrap.log import setup_logging


class TestSetupLogging:

    def test_tees_into_file(self, tmp_path):
        path = tmp_path / "logs" / "wsl-gpu.log"
        assert setup_logging(path) == path
        logging.getLogger("labstrap.apt").debug("apt-get output line")
        for handler in logging.getLogger("labstrap").handlers:
            handler.flush()
        text = path.read_text()
        assert "Logging to" in text
        assert "[labstrap.apt] DEBUG apt-get output line" in text

    def test_unwritable_file_falls_back_to_console(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        assert setup_logging(blocker / "run.log") is None
        assert len(logging.getLogger("labstrap").handlers) == 1

    def test_repeated_setup_does_not_duplicate(self):
        setup_logging()
        setup_logging()
        assert len(logging.getLogger("labstrap").handlers) == 1
