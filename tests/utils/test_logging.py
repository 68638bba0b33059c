import logging

import pytest

from keeper.utils.logging import configure_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level

    yield

    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
    logging.getLogger("keeper").setLevel(logging.NOTSET)


def test_default_level_is_info(monkeypatch):
    monkeypatch.delenv("KEEPER_LOG_LEVEL", raising=False)

    configure_logging()

    assert logging.getLogger().level == logging.INFO


def test_level_from_environment(monkeypatch):
    monkeypatch.setenv("KEEPER_LOG_LEVEL", "warning")

    configure_logging()

    assert logging.getLogger().level == logging.WARNING


def test_explicit_level_wins(monkeypatch):
    monkeypatch.setenv("KEEPER_LOG_LEVEL", "WARNING")

    configure_logging(level="debug")

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("keeper").level == logging.DEBUG


def test_unknown_level_falls_back_to_info():
    configure_logging(level="chatty")

    assert logging.getLogger().level == logging.INFO


def test_debug_format_shows_process_id():
    configure_logging(level="DEBUG")

    formatter = logging.getLogger().handlers[0].formatter
    assert "%(process)d" in formatter._fmt


def test_log_file_receives_records(tmp_path):
    log_file = tmp_path / "log" / "keeper.log"

    configure_logging(level="INFO", log_file=str(log_file))
    logging.getLogger("keeper.supervisor").info("Master started")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_file.exists()
    assert "Master started" in log_file.read_text()

