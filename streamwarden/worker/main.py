#!/usr/bin/env python3
"""
Worker entry point.

    python -m streamwarden.worker.main            # Celery worker
    python -m streamwarden.worker.main beat       # beat scheduler
    python -m streamwarden.worker.main sweep      # one stale sweep, then exit
    python -m streamwarden.worker.main reconcile  # one reconciliation poll, then exit
"""

import sys
import logging
from streamwarden.core.config import settings
from streamwarden.worker.celery_app import celery_app
from streamwarden.worker import tasks

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

ONE_SHOT_COMMANDS = {
    'sweep': tasks.sweep_stale_sessions,
    'reconcile': tasks.reconcile_sessions,
}


def main(argv):
    command = argv[1] if len(argv) > 1 else 'worker'

    if command in ONE_SHOT_COMMANDS:
        # Run in-process without a broker
        result = ONE_SHOT_COMMANDS[command].apply().get()
        logging.info(f"{command}: {result}")
        return

    if command not in ('worker', 'beat'):
        raise SystemExit(f"Unknown command: {command}")

    celery_app.start([command, '-l', settings.log_level.lower()])


if __name__ == '__main__':
    main(sys.argv)
