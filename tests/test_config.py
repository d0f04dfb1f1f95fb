"""Tests for environment-variable configuration and CLI logging setup."""
import logging

import pytest

from portalloc import config
from portalloc.logging_setup import setup_logging
from portalloc.ports import AllocatorConfig


def test_defaults(monkeypatch):
    for name in ('PORTALLOC_PORT_START', 'PORTALLOC_PORT_END', 'PORTALLOC_PORT_RETRIES'):
        monkeypatch.delenv(name, raising=False)

    allocator_config = AllocatorConfig()

    assert allocator_config.start_port == 20000
    assert allocator_config.end_port == 30000
    assert allocator_config.max_retries == 10
    assert allocator_config.retry_delay == 1.0


def test_port_window_override(monkeypatch):
    monkeypatch.setenv('PORTALLOC_PORT_START', '40000')
    monkeypatch.setenv('PORTALLOC_PORT_END', '41000')

    allocator_config = AllocatorConfig()

    assert (allocator_config.start_port, allocator_config.end_port) == (40000, 41000)


def test_bad_integer_falls_back(monkeypatch, caplog):
    monkeypatch.setenv('PORTALLOC_PORT_RETRIES', 'lots')

    with caplog.at_level(logging.WARNING, logger='portalloc'):
        assert config.default_port_retries() == 10

    assert 'PORTALLOC_PORT_RETRIES' in caplog.text


def test_directory_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv('PORTALLOC_LOCK_DIR', str(tmp_path / 'locks'))
    monkeypatch.setenv('PORTALLOC_STATE_DIR', str(tmp_path / 'state'))

    assert config.default_lock_dir() == tmp_path / 'locks'
    assert config.default_state_dir() == tmp_path / 'state'


@pytest.fixture
def clean_logger():
    logger = logging.getLogger('portalloc')
    level = logger.level
    yield logger
    for handler in list(logger.handlers):
        if getattr(handler, '_portalloc', False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


def test_setup_logging_adds_handlers_once(clean_logger, monkeypatch, tmp_path):
    log_path = tmp_path / 'portalloc.log'
    monkeypatch.setenv('PORTALLOC_LOG_FILE', str(log_path))

    setup_logging(verbose=True)
    setup_logging(verbose=True)

    ours = [h for h in clean_logger.handlers if getattr(h, '_portalloc', False)]
    assert len(ours) == 2
    assert clean_logger.level == logging.DEBUG

    clean_logger.info('hello from test')
    for handler in ours:
        handler.flush()
    assert 'INFO - portalloc - hello from test' in log_path.read_text()
