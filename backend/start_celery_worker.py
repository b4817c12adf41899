#!/usr/bin/env python3
"""Start the queue delivery worker with suppressed security warnings for containerized environments."""

import sys
import warnings

# Suppress the superuser privilege warning
warnings.filterwarnings('ignore', category=UserWarning, message='.*superuser privileges.*')
warnings.filterwarnings('ignore', category=RuntimeWarning, message='.*superuser privileges.*')

from lead_importer.workers.celery_app import celery_app

if __name__ == '__main__':
    celery_app.worker_main(
        [
            'worker',
            '--loglevel=info',
            '--queues=imports',
            '--pool=solo',
            '--without-mingle',
            '--without-gossip',
        ]
        + sys.argv[1:]
    )
