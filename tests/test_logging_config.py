"""
Tests for coherence_sync.logging_config

Covers:
- Level names and constants
- One shared file for every root, idempotent setup
"""

import logging

import pytest

from coherence_sync import logging_config
from coherence_sync.logging_config import ROOTS, resolve_level, setup_logging


@pytest.fixture
def clean_roots():
    saved = {name: logging.getLogger(name).level for name in ROOTS}
    yield
    for handler in logging_config._handlers:
        for name in ROOTS:
            logging.getLogger(name).removeHandler(handler)
        handler.close()
    logging_config._handlers.clear()
    for name, level in saved.items():
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.propagate = True


class TestResolveLevel:

    def test_names(self):
        assert resolve_level("debug") == logging.DEBUG
        assert resolve_level("WARNING") == logging.WARNING

    def test_constants_pass_through(self):
        assert resolve_level(logging.ERROR) == logging.ERROR

    def test_unknown(self):
        with pytest.raises(ValueError):
            resolve_level("chatty")


class TestSetupLogging:

    def test_roots_share_one_file(self, tmp_path, clean_roots):
        path = tmp_path / "logs" / "coherence.log"
        setup_logging("INFO", log_file=path)

        logging.getLogger("coherence.sync").info("flushed")
        logging.getLogger("storage").warning("slow write")
        for handler in logging_config._handlers:
            handler.flush()

        text = path.read_text()
        assert "[coherence.sync] INFO: flushed" in text
        assert "[storage] WARNING: slow write" in text

    def test_second_call_adds_no_handlers(self, tmp_path, clean_roots):
        path = tmp_path / "coherence.log"
        setup_logging("INFO", log_file=path)
        setup_logging("DEBUG", log_file=path)

        logger = logging.getLogger("api")
        assert len(logger.handlers) == 2
        assert logger.level == logging.DEBUG
