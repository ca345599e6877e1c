"""
Unit tests for Logger module.

stdout carries the CLI's JSON output, so the logger must never write there.
"""

import io
import logging
import sys

from smartmail.utils.logger import setup_logger


class TestLogger:
    def test_logger_never_writes_to_stdout(self, tmp_path):
        original_stdout = sys.stdout
        captured = io.StringIO()
        sys.stdout = captured
        try:
            test_logger = setup_logger("TestLoggerStdout", log_dir=str(tmp_path))
            test_logger.info("Info message")
            test_logger.error("Error message")
            for handler in test_logger.handlers:
                handler.flush()
        finally:
            sys.stdout = original_stdout

        assert captured.getvalue() == ""

    def test_file_handler_writes_log(self, tmp_path):
        test_logger = setup_logger("TestLoggerFile", log_dir=str(tmp_path), level="DEBUG")
        test_logger.debug("debug line")
        for handler in test_logger.handlers:
            handler.flush()

        content = (tmp_path / "smartmail.log").read_text(encoding="utf-8")
        assert "TestLoggerFile - DEBUG - debug line" in content

    def test_setup_is_idempotent(self, tmp_path):
        first = setup_logger("TestLoggerTwice", log_dir=str(tmp_path))
        count = len(first.handlers)

        second = setup_logger("TestLoggerTwice", log_dir=str(tmp_path))

        assert second is first
        assert len(second.handlers) == count == 2

    def test_level_from_argument(self, tmp_path):
        test_logger = setup_logger("TestLoggerLevel", log_dir=str(tmp_path), level="warning")

        assert test_logger.level == logging.WARNING

    def test_module_loggers_reach_app_logger(self):
        import smartmail.core.orchestrator  # noqa: F401

        ancestors = []
        current = logging.getLogger("smartmail.core.orchestrator")
        while current.parent is not None:
            current = current.parent
            ancestors.append(current.name)

        assert "smartmail" in ancestors
