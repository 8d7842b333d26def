"""
Production Server Configuration

Uvicorn workers under Gunicorn for the analytics API. Each worker runs its
own ingestion outbox; set SESSION_SWEEP_IN_PROCESS=false and schedule the
Prefect sweep flow instead when running many workers.
"""

import os

from src.config import get_settings

settings = get_settings()

# Server socket
bind = os.getenv("BIND", f"{settings.api_host}:{settings.api_port}")
backlog = 2048

# Worker processes
workers = int(os.getenv("WORKERS", settings.api_workers))
if workers > 1 and settings.sessions.funnel_progress_backend == "memory":
    raise RuntimeError("In-memory funnel progress needs a single worker; set WORKERS=1")
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000
max_requests_jitter = 1000
timeout = 60
keepalive = 5
# Leave the outbox time to flush on shutdown
graceful_timeout = 30

proc_name = "forum-analytics-api"

# Logging
errorlog = "-"
loglevel = settings.monitoring.log_level.lower()
# Request logs come from RequestLoggingMiddleware
accesslog = None


def when_ready(server):
    server.log.info("Forum analytics API ready on %s with %s workers", bind, workers)


def worker_abort(worker):
    worker.log.warning("Worker %s aborted; queued envelopes in its outbox are lost", worker.pid)
