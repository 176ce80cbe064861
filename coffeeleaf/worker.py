# =============================================================================
# CoffeeLeaf Backend
# worker.py - Queue Worker Entry Point
#
# Runs PredictionWorker against the configured queue inside an application
# context. SIGINT/SIGTERM let the in-flight message finish before exit.
# =============================================================================

import sys
import signal
import logging
import argparse

from .app import create_app
from .logger_config import setup_logger
from .utils import get_services


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='CoffeeLeaf prediction worker: consumes queued images and stores results.'
    )
    parser.add_argument('--env', default=None,
                        help="Configuration name (development, testing, production); "
                             "defaults to FLASK_ENV")
    parser.add_argument('--log-dir', default=None,
                        help='Directory for rotating log files (defaults to LOG_DIR)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Log at DEBUG level')
    return parser.parse_args(argv)


def install_signal_handlers(worker):
    """Stop the worker loop on SIGINT/SIGTERM."""
    def _handle(signum, frame):
        logging.getLogger(__name__).info(f"Received signal {signum}, shutting down")
        worker.stop()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main(argv=None):
    """
    Worker entry point.

    Returns:
        int: Process exit code
    """
    args = parse_args(argv)

    app = create_app(args.env)
    logger = setup_logger(
        'coffeeleaf',
        level=logging.DEBUG if args.verbose else logging.INFO,
        log_dir=args.log_dir or app.config.get('LOG_DIR'),
        log_file='worker.log'
    )

    with app.app_context():
        services = get_services(app)
        worker = services.create_worker()
        install_signal_handlers(worker)

        logger.info(f"Worker started (broker: {type(services.broker).__name__}, "
                    f"topic: {worker.topic})")
        try:
            worker.run()
        finally:
            services.shutdown()

    return 0


if __name__ == '__main__':
    sys.exit(main())
