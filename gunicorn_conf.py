"""
Gunicorn Configuration for the charging wallet payment server
Run with: gunicorn -c gunicorn_conf.py webhook_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
backlog = 2048

# Worker processes
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
max_requests = 10000
max_requests_jitter = 1000
# Provider confirm calls are bounded by PROVIDER_TIMEOUT_SECONDS
timeout = 60
keepalive = 30

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

proc_name = "charging_wallet_payments"

# Each worker opens its own engine and connection pool
preload_app = False


def when_ready(server):
    print(f"✅ Gunicorn ready with {workers} uvicorn workers on {bind}")


def post_fork(server, worker):
    print(f"🔧 Worker {worker.pid} started")


def worker_exit(server, worker):
    print(f"👋 Worker {worker.pid} exited")
