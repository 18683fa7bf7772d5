"""
Tests for logging helpers.
"""

import json
import logging

import pytest
import structlog

from rerun_agent.logging import bind_run, get_logger, redact_secrets, setup_logging, unbind_run


class TestRedactSecrets:
    def test_redacts_sensitive_keys(self):
        event = {
            "event": "Calling API",
            "token": "abc",
            "Authorization": "Basic xyz",
            "personal_access_token": "pat",
            "build_id": 42,
        }

        result = redact_secrets(None, "info", event)

        assert result["token"] == "[REDACTED]"
        assert result["Authorization"] == "[REDACTED]"
        assert result["personal_access_token"] == "[REDACTED]"
        assert result["build_id"] == 42
        assert result["event"] == "Calling API"

    def test_redacts_nested_headers(self):
        result = redact_secrets(None, "info", {"event": "x", "headers": {"Authorization": "Basic abc", "Accept": "json"}})

        assert result["headers"] == {"Authorization": "[REDACTED]", "Accept": "json"}

    def test_path_keys_untouched(self):
        result = redact_secrets(None, "info", {"event": "x", "path": "/tmp/a"})
        assert result["path"] == "/tmp/a"


class TestSetupLogging:
    def test_json_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "agent.jsonl"
        setup_logging(level="INFO", log_file=log_file)
        try:
            bind_run("run-1")
            get_logger("tests").info("Hello", token="secret-value")
            unbind_run()

            for handler in logging.getLogger().handlers:
                handler.flush()

            line = json.loads(log_file.read_text().strip().splitlines()[-1])
            assert line["event"] == "Hello"
            assert line["run_id"] == "run-1"
            assert line["token"] == "[REDACTED]"
        finally:
            for handler in logging.getLogger().handlers:
                handler.close()
            logging.getLogger().handlers = []
            structlog.reset_defaults()
            structlog.contextvars.clear_contextvars()

    def test_quiets_http_loggers(self):
        setup_logging(level="DEBUG")
        try:
            assert logging.getLogger().level == logging.DEBUG
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            logging.getLogger().handlers = []
            logging.getLogger("httpx").setLevel(logging.NOTSET)
            logging.getLogger("httpcore").setLevel(logging.NOTSET)
            structlog.reset_defaults()

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            setup_logging(level="LOUD")
