"""Unit tests for logging setup."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

import pytest

from vigil.logging_config import ColoredFormatter, setup_logging


@pytest.fixture
def record():
    """Create a plain WARNING record."""
    return logging.LogRecord(
        name="vigil.store",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="index unreadable",
        args=(),
        exc_info=None,
    )


def test_plain_formatter_has_no_escape_codes(record):
    """Test that colour is off for non-terminal streams."""
    line = ColoredFormatter(use_color=False).format(record)

    assert "\033[" not in line
    assert "| WARNING  | vigil.store | index unreadable" in line


def test_colored_formatter_leaves_record_untouched(record):
    """Test that colouring does not leak into other handlers."""
    line = ColoredFormatter(use_color=True).format(record)

    assert "\033[33m" in line
    assert record.levelname == "WARNING"
    assert record.name == "vigil.store"


def test_setup_logging_file_and_reuse():
    """Test file output, explicit level and handler reuse."""
    with tempfile.TemporaryDirectory() as tmpdir:
        log_file = Path(tmpdir) / "vigil.log"

        logger = setup_logging("vigil.test_file_output", level="debug", log_file=str(log_file))
        logger.debug("fetched %d urls", 3)

        assert logger.level == logging.DEBUG
        assert not logger.propagate
        assert setup_logging("vigil.test_file_output") is logger
        assert len(logger.handlers) == 2

        for handler in logger.handlers:
            handler.flush()
        assert "fetched 3 urls" in log_file.read_text(encoding="utf-8")

        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
