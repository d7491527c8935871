"""Tests for logging utilities."""

import json
import logging
import sys

import pytest

from dataset_runner.lib.logging import (
    ExecutionLogger,
    JSONFormatter,
    configure_logging,
    get_execution_logger,
    setup_logging,
)
from dataset_runner.lib.settings import RunnerSettings


def _record(msg="Test message", args=(), level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="/test/file.py",
        lineno=42,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_basic_format(self):
        """Should format log record as JSON."""
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["message"] == "Test message"
        assert data["timestamp"].endswith("Z")
        assert data["location"] == "file.py:42"
        assert "execution_id" not in data
        assert "extra" not in data

    def test_format_with_args(self):
        data = json.loads(JSONFormatter().format(_record("Fetched %d records", (250,))))
        assert data["message"] == "Fetched 250 records"

    def test_format_with_exception(self):
        try:
            raise ValueError("Test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(_record(level=logging.ERROR, exc_info=exc_info)))
        assert "ValueError: Test error" in data["exception"]

    def test_execution_context_is_top_level(self):
        record = _record()
        record.execution_id = "abc"
        record.dataset_id = "ds-1"
        record.page = 2

        data = json.loads(JSONFormatter().format(record))

        assert data["execution_id"] == "abc"
        assert data["dataset_id"] == "ds-1"
        assert data["extra"] == {"page": 2}

    def test_execution_logger_output(self, caplog):
        log = get_execution_logger("dataset_runner.test", execution_id="abc", dataset_id="ds-1")

        with caplog.at_level(logging.INFO, logger="dataset_runner.test"):
            log.info("Execution started")

        data = json.loads(JSONFormatter().format(caplog.records[-1]))
        assert (data["execution_id"], data["dataset_id"], data["message"]) == ("abc", "ds-1", "Execution started")


class TestExecutionLogger:
    """Tests for the context-carrying logger."""

    def test_context_is_attached(self, caplog):
        log = get_execution_logger("dataset_runner.test", execution_id="abc", dataset_id="ds-1")

        with caplog.at_level(logging.INFO, logger="dataset_runner.test"):
            log.info("Fetched %d records", 10)

        record = caplog.records[-1]
        assert record.getMessage() == "Fetched 10 records"
        assert record.execution_id == "abc"
        assert record.dataset_id == "ds-1"

    def test_bind_adds_context_without_mutating(self):
        log = ExecutionLogger("dataset_runner.test", execution_id="abc")
        bound = log.bind(page=2)

        assert bound.context == {"execution_id": "abc", "page": 2}
        assert log.context == {"execution_id": "abc"}

    def test_exception_includes_traceback(self, caplog):
        log = get_execution_logger("dataset_runner.test", execution_id="abc")

        with caplog.at_level(logging.ERROR, logger="dataset_runner.test"):
            try:
                raise RuntimeError("boom")
            except RuntimeError:
                log.exception("Could not store result")

        assert caplog.records[-1].exc_info is not None


@pytest.fixture
def root_logger():
    """Root logger whose handlers and level are restored after the test."""
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


class TestSetupLogging:
    """Tests for setup_logging and configure_logging."""

    def test_json_format_and_file(self, root_logger, tmp_path):
        log_file = tmp_path / "runner.log"

        setup_logging("debug", "json", log_file=str(log_file))

        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 2
        assert all(isinstance(h.formatter, JSONFormatter) for h in root_logger.handlers)
        assert logging.getLogger("httpx").level == logging.WARNING

        get_execution_logger("dataset_runner.test", execution_id="abc").info("hello")
        for handler in root_logger.handlers:
            handler.flush()
        line = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
        assert line["message"] == "hello"
        assert line["execution_id"] == "abc"

    def test_console_format(self, root_logger):
        setup_logging(logging.WARNING)

        assert root_logger.level == logging.WARNING
        assert len(root_logger.handlers) == 1
        assert not isinstance(root_logger.handlers[0].formatter, JSONFormatter)

    @pytest.mark.parametrize("level,log_format", [("LOUD", "console"), ("INFO", "xml")])
    def test_rejects_unknown_values(self, root_logger, level, log_format):
        with pytest.raises(ValueError):
            setup_logging(level, log_format)

    def test_configure_from_settings(self, root_logger):
        configure_logging(RunnerSettings(log_level="ERROR", log_format="json"))

        assert root_logger.level == logging.ERROR
        assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)

    def test_configure_from_environment(self, root_logger, monkeypatch, tmp_path):
        log_file = tmp_path / "env.log"
        monkeypatch.setenv("DATASET_RUNNER_LOG_LEVEL", "warning")
        monkeypatch.setenv("DATASET_RUNNER_LOG_FORMAT", "json")
        monkeypatch.setenv("DATASET_RUNNER_LOG_FILE", str(log_file))

        configure_logging()

        assert root_logger.level == logging.WARNING
        assert len(root_logger.handlers) == 2
        assert isinstance(root_logger.handlers[1], logging.FileHandler)
