# Gunicorn configuration for sqlkeeper
# Run with: gunicorn -c docker/gunicorn_conf.py "sqlkeeper:create_app()"

import os
import logging

logger = logging.getLogger('gunicorn.error')

# The API has no authentication; expose it only behind a trusted proxy
bind = os.environ.get('GUNICORN_BIND', '127.0.0.1:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))

# POST /api/backups/run dumps synchronously
timeout = int(os.environ.get('DUMP_TIMEOUT', 3600)) + 60


def post_fork(server, worker):
    """
    Called in the worker process before the application is loaded.

    Designates the first worker (worker.age == 1) as the scheduler owner so
    the automatic backup runs only once per schedule.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (``age`` counts spawned workers: 1, 2, ...)
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
