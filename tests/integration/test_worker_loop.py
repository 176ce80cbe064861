"""
Integration tests for the queue worker loop and its entry point.
"""
import logging
import signal
import threading
import time
from unittest.mock import patch

import pytest

from coffeeleaf.config import TestingConfig
from coffeeleaf.models import PredictionRecord
from coffeeleaf.services.dispatcher import PredictionWorker
from coffeeleaf.worker import install_signal_handlers, main, parse_args

pytestmark = pytest.mark.integration


def wait_for(condition, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return False


class TestWorkerThread:

    def test_worker_processes_queued_upload(self, app, services, leaf_png):
        with app.app_context():
            services.dispatcher.submit(leaf_png, request_id='worker-req-0001')

        worker = services.create_worker()

        def run():
            with app.app_context():
                worker.run()

        thread = threading.Thread(target=run, daemon=True)
        thread.start()
        try:
            assert wait_for(lambda: worker.processed == 1)
        finally:
            worker.stop()
            thread.join(timeout=5)

        assert not thread.is_alive()
        with app.app_context():
            status = services.dispatcher.get_status('worker-req-0001')
            assert status['status'] == 'Success'
            assert PredictionRecord.query.count() == 1


class TestEntryPoint:

    def test_parse_args(self):
        args = parse_args(['--env', 'testing', '-v'])
        assert args.env == 'testing'
        assert args.verbose is True
        assert args.log_dir is None

    def test_signal_handlers_stop_worker(self, services):
        original_int = signal.getsignal(signal.SIGINT)
        original_term = signal.getsignal(signal.SIGTERM)
        worker = services.create_worker()
        try:
            install_signal_handlers(worker)
            signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
        finally:
            signal.signal(signal.SIGINT, original_int)
            signal.signal(signal.SIGTERM, original_term)
        assert worker.is_running is False

    def test_main_runs_and_shuts_down(self, monkeypatch, tmp_path):
        monkeypatch.setattr(TestingConfig, 'UPLOAD_FOLDER', str(tmp_path / 'uploads'))
        try:
            with patch.object(PredictionWorker, 'run') as run, \
                    patch('coffeeleaf.worker.install_signal_handlers') as install:
                assert main(['--env', 'testing']) == 0
        finally:
            logging.getLogger('coffeeleaf').handlers.clear()
        run.assert_called_once_with()
        install.assert_called_once()
