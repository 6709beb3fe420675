"""
Unit tests for smsnudge/logging_config.py.

configure_logging: idempotency, dir creation, level, handler type.
log_call: CALL/OK/FAIL lines, argument truncation, re-raise.
"""

import logging
import logging.handlers
import os
from unittest.mock import MagicMock, patch

import pytest

from smsnudge.logging_config import configure_logging, log_call, _format_args, _MAX_ARG_REPR


def _clear_smsnudge_logger():
    """Close and remove all handlers from the smsnudge logger."""
    logger = logging.getLogger("smsnudge")
    for h in logger.handlers[:]:
        h.close()
        logger.removeHandler(h)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def log_paths(tmp_path):
    log_dir = tmp_path / "logs"
    with patch("smsnudge.logging_config._LOG_DIR", log_dir), \
         patch("smsnudge.logging_config._LOG_FILE", log_dir / "smsnudge.log"):
        yield log_dir


@pytest.fixture
def mock_logger():
    logger = MagicMock()
    with patch("smsnudge.logging_config.logging") as mock_logging:
        mock_logging.getLogger.return_value = logger
        yield logger


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------

class TestConfigureLogging:

    def setup_method(self):
        _clear_smsnudge_logger()

    def teardown_method(self):
        _clear_smsnudge_logger()

    def test_returns_named_logger(self, log_paths):
        result = configure_logging()
        assert result.name == "smsnudge"

    def test_creates_log_dir(self, log_paths):
        configure_logging()
        assert log_paths.exists()

    def test_single_rotating_handler_even_when_called_twice(self, log_paths):
        configure_logging()
        configure_logging()
        handlers = logging.getLogger("smsnudge").handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.handlers.RotatingFileHandler)

    @pytest.mark.parametrize("env_value,expected", [
        ("DEBUG", logging.DEBUG),
        ("warning", logging.WARNING),
        ("BOGUS", logging.INFO),
    ])
    def test_log_level_from_env(self, log_paths, env_value, expected):
        with patch.dict(os.environ, {"LOG_LEVEL": env_value}):
            configure_logging()
        assert logging.getLogger("smsnudge").level == expected

    def test_default_level_is_info(self, log_paths):
        env = {k: v for k, v in os.environ.items() if k != "LOG_LEVEL"}
        with patch.dict(os.environ, env, clear=True):
            configure_logging()
        assert logging.getLogger("smsnudge").level == logging.INFO


# ---------------------------------------------------------------------------
# log_call decorator
# ---------------------------------------------------------------------------

class TestLogCall:

    def test_passes_return_value_through(self):
        @log_call
        def add(a, b):
            return a + b

        assert add(2, 3) == 5

    def test_preserves_function_name(self):
        @log_call
        def reserve():
            pass

        assert reserve.__name__ == "reserve"

    def test_logs_call_with_args(self, mock_logger):
        @log_call
        def preview(account_id, limit=None):
            pass

        preview("acct-1", limit=10)

        msg = mock_logger.debug.call_args[0][0]
        assert msg.startswith("CALL preview")
        assert "'acct-1'" in msg
        assert "limit=10" in msg

    def test_logs_ok_with_timing(self, mock_logger):
        @log_call
        def noop():
            pass

        noop()

        msg = mock_logger.info.call_args[0][0]
        assert "OK" in msg and "noop" in msg and "ms" in msg

    def test_logs_fail_and_reraises(self, mock_logger):
        @log_call
        def boom():
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            boom()

        msg = mock_logger.error.call_args[0][0]
        assert "FAIL boom" in msg
        assert "ValueError: bad input" in msg
        mock_logger.info.assert_not_called()


class TestFormatArgs:

    def test_no_args(self):
        assert _format_args((), {}) == "—"

    def test_long_values_are_truncated(self):
        text = _format_args((["x" * 50] * 20,), {})
        assert len(text) == _MAX_ARG_REPR + 3
        assert text.endswith("...")

    def test_short_values_unchanged(self):
        assert _format_args(("acct-1", 3), {"outcome": "failed"}) == "'acct-1', 3, outcome='failed'"
