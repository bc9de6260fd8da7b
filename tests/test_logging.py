"""
Tests for logging setup.
"""

import logging
from pathlib import Path

import pytest

from pipewright.core.observability.logging_config import resolve_level, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestResolveLevel:
    def test_flag_precedence(self, monkeypatch):
        monkeypatch.setenv("PIPEWRIGHT_LOG_LEVEL", "ERROR")
        assert resolve_level(debug=True, verbose=True) == "DEBUG"
        assert resolve_level(verbose=True, quiet=True) == "INFO"
        assert resolve_level(quiet=True) == "ERROR"

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("PIPEWRIGHT_LOG_LEVEL", "INFO")
        assert resolve_level() == "INFO"

    def test_default(self, monkeypatch):
        monkeypatch.delenv("PIPEWRIGHT_LOG_LEVEL", raising=False)
        assert resolve_level() == "WARNING"


class TestSetupLogging:
    def test_console_only(self, monkeypatch):
        monkeypatch.delenv("PIPEWRIGHT_LOG_FILE", raising=False)
        setup_logging("INFO")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.INFO

    def test_unknown_level_falls_back(self, monkeypatch):
        monkeypatch.delenv("PIPEWRIGHT_LOG_FILE", raising=False)
        setup_logging("LOUD")
        assert logging.getLogger().level == logging.WARNING

    def test_file_handler_from_environment(self, monkeypatch, tmp_path: Path):
        log_file = tmp_path / "pipewright.log"
        monkeypatch.setenv("PIPEWRIGHT_LOG_FILE", str(log_file))
        monkeypatch.setenv("PIPEWRIGHT_LOG_FILE_LEVEL", "DEBUG")
        setup_logging("WARNING")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        logging.getLogger("pipewright.test").debug("step converged")
        for handler in root.handlers:
            handler.flush()
        assert "step converged" in log_file.read_text()

    def test_third_party_quieted(self, monkeypatch):
        monkeypatch.delenv("PIPEWRIGHT_LOG_FILE", raising=False)
        setup_logging("INFO")
        assert logging.getLogger("werkzeug").level == logging.WARNING
