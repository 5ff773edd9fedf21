# tests/test_logging_utils.py

import logging
import pytest

from clusterfoldsim.logging_utils import init_logging


def _get_handler_types():
    """Helper: return a list of handler class types currently installed."""
    return tuple(type(h) for h in logging.root.handlers)


@pytest.fixture
def reset_logging():
    """Ensure clean logging handlers before/after each test."""
    orig = logging.root.handlers[:]
    orig_level = logging.root.level
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    yield
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
        h.close()
    for h in orig:
        logging.root.addHandler(h)
    logging.root.setLevel(orig_level)


def test_init_logging_stream_only(reset_logging):
    init_logging(logfile=None, level=logging.DEBUG)
    assert _get_handler_types() == (logging.StreamHandler,)


def test_init_logging_stream_and_file(tmp_path, reset_logging):
    log_path = tmp_path / "log" / "run.log"
    init_logging(logfile=log_path, level=logging.INFO)

    assert _get_handler_types() == (logging.StreamHandler, logging.FileHandler)

    logging.getLogger("clusterfoldsim.test").info("Estimating fold-change signatures")
    assert "Estimating fold-change signatures" in log_path.read_text()


def test_init_logging_overwrites_previous_handlers(reset_logging):
    logging.root.addHandler(logging.StreamHandler())
    init_logging(None)
    assert _get_handler_types() == (logging.StreamHandler,)


def test_init_logging_accepts_level_names(tmp_path, reset_logging):
    log_path = tmp_path / "test.log"
    init_logging(logfile=str(log_path), level="warning")

    logger = logging.getLogger("x")
    logger.info("info msg")
    logger.warning("warn msg")

    txt = log_path.read_text()
    assert "warn msg" in txt
    assert "info msg" not in txt


def test_init_logging_quiets_matplotlib(reset_logging):
    init_logging(None, level=logging.DEBUG)
    assert logging.getLogger("matplotlib").level == logging.INFO
