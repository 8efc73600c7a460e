# Gunicorn configuration for the server backup manager
# Handles scheduler initialization across multiple workers

import os
import fcntl
import logging

logger = logging.getLogger('gunicorn.error')

SCHEDULER_LOCK_FILE = os.environ.get('SCHEDULER_LOCK_FILE', '/tmp/serverbackup-scheduler.lock')

# Workers create the app with the scheduler stopped; post_worker_init starts it in one of them
os.environ['SCHEDULER_ENABLED'] = 'false'

_lock_handle = None


def post_worker_init(worker):
    """
    Called after a worker is initialized.

    The first worker to take an exclusive lock on SCHEDULER_LOCK_FILE becomes
    the scheduler owner and keeps the lock for its lifetime. When it exits,
    the lock is released and the worker that replaces it takes over.

    Args:
        worker: Gunicorn worker instance; worker.wsgi is the loaded Flask app
    """
    global _lock_handle

    handle = open(SCHEDULER_LOCK_FILE, 'a')
    try:
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        handle.close()
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
        return

    _lock_handle = handle
    logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")

    from serverbackup import start_scheduler
    start_scheduler(worker.wsgi)
