# gunicorn.conf.py
import multiprocessing
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
worker_class = "uvicorn.workers.UvicornWorker"

# Layout solves are CPU-bound and short; rendering runs in Celery, not here
workers = int(os.getenv("GUNICORN_WORKERS", multiprocessing.cpu_count() + 1))
threads = int(os.getenv("GUNICORN_THREADS", 1))

worker_connections = int(os.getenv("GUNICORN_WORKER_CONNECTIONS", 1000))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", 5))

# Uploads for collage jobs are the slowest requests
timeout = int(os.getenv("GUNICORN_TIMEOUT", 60))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", 20))

max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", 2000))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", 100))

accesslog = os.getenv("GUNICORN_ACCESSLOG", "-")
errorlog = os.getenv("GUNICORN_ERRORLOG", "-")
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")
