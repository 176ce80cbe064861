"""
Unit tests for the logging setup.
"""
import logging

import pytest

from coffeeleaf.logger_config import ColoredFormatter, setup_logger


@pytest.fixture
def scratch_logger_name():
    name = 'coffeeleaf-test-logger'
    yield name
    logging.getLogger(name).handlers.clear()


class TestColoredFormatter:

    def test_colors_a_copy_of_the_record(self):
        record = logging.makeLogRecord({'levelname': 'WARNING', 'msg': 'cache degraded'})
        formatted = ColoredFormatter('%(levelname)s %(message)s', use_color=True).format(record)
        assert formatted.startswith('\033[33mWARNING')
        assert record.levelname == 'WARNING'

    def test_plain_when_disabled(self):
        record = logging.makeLogRecord({'levelname': 'ERROR', 'msg': 'boom'})
        assert ColoredFormatter('%(levelname)s %(message)s', use_color=False).format(record) == 'ERROR boom'


class TestSetupLogger:

    def test_console_only_without_log_dir(self, scratch_logger_name):
        logger = setup_logger(scratch_logger_name)
        assert len(logger.handlers) == 1
        assert logging.getLogger('kafka').level == logging.WARNING

    def test_rotating_file_in_log_dir(self, scratch_logger_name, tmp_path):
        logger = setup_logger(scratch_logger_name, log_dir=str(tmp_path / 'logs'), log_file='worker.log')
        logger.debug('written to file only')
        for handler in logger.handlers:
            handler.flush()

        assert len(logger.handlers) == 2
        assert logger.level == logging.DEBUG
        assert 'written to file only' in (tmp_path / 'logs' / 'worker.log').read_text(encoding='utf-8')

    def test_repeated_setup_does_not_duplicate_handlers(self, scratch_logger_name):
        setup_logger(scratch_logger_name)
        assert len(setup_logger(scratch_logger_name).handlers) == 1
