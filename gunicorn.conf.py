# gunicorn -c gunicorn.conf.py "analytics.app:create_app()"
#
# Flask runs each async view on its own event loop inside the worker thread,
# so a request waiting between retries holds its thread. gthread gives every
# worker enough threads to keep serving while others sit in backoff.
import os

from analytics import config

bind = f"0.0.0.0:{config.PORT}"
worker_class = "gthread"
workers = int(os.environ.get("WEB_CONCURRENCY", "1"))

# One thread per pooled connection; more would only queue on the pool.
threads = config.DB_POOL_SIZE + config.DB_MAX_OVERFLOW

# /ready can legitimately spend READY_RETRY.worst_case_wait() (150s) retrying.
timeout = int(config.READY_RETRY.worst_case_wait()) + 60
graceful_timeout = 30

accesslog = "-"
errorlog = "-"
loglevel = config.LOG_LEVEL.lower()
