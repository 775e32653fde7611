"""Main Flask web server for the podcast activity backup."""
import logging
import os
import signal
import sys
import threading
import time
from functools import wraps
from flask import Flask, request
from flask_cors import CORS

# Configure structured logging
_logging_configured = False
import json as _json


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Outputs logs as JSON objects for easier parsing by log aggregators
    like Loki, Elasticsearch, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        # Add extra fields if present
        if getattr(record, 'run_id', None):
            log_data['run_id'] = record.run_id
        if getattr(record, 'podcast_uuid', None):
            log_data['podcast_uuid'] = record.podcast_uuid

        # Add exception info if present
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return _json.dumps(log_data)


def setup_logging():
    """Configure application logging.

    Environment variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
        LOG_FORMAT: Log output format ('text' or 'json'). Default: text
    """
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
    log_format = os.environ.get('LOG_FORMAT', 'text').lower()

    # Create appropriate formatter based on LOG_FORMAT
    if log_format == 'json':
        formatter = JSONFormatter(datefmt='%Y-%m-%dT%H:%M:%S')
    else:
        formatter = logging.Formatter(
            '[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    # Console handler only - Docker captures stdout for logging
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    # Configure root logger - clear existing handlers first to prevent duplicates
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.addHandler(console_handler)

    # Set specific logger levels
    logging.getLogger('werkzeug').setLevel(logging.INFO)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    # Create application loggers
    for name in ['castkeeper.api', 'castkeeper.backup', 'castkeeper.history',
                 'castkeeper.sync', 'castkeeper.queue']:
        logging.getLogger(name).setLevel(getattr(logging, log_level, logging.INFO))


setup_logging()
logger = logging.getLogger('castkeeper.app')
queue_logger = logging.getLogger('castkeeper.queue')


def log_request_detailed(f):
    """Decorator to log requests with detailed info (IP, user-agent, response time)."""
    @wraps(f)
    def decorated(*args, **kwargs):
        start_time = time.time()
        client_ip = request.headers.get('X-Forwarded-For', request.remote_addr)
        user_agent = request.headers.get('User-Agent', 'Unknown')[:100]

        try:
            result = f(*args, **kwargs)
            elapsed = (time.time() - start_time) * 1000  # ms
            status = result.status_code if hasattr(result, 'status_code') else 200
            logger.info(f"{request.method} {request.path} {status} {elapsed:.0f}ms [{client_ip}] [{user_agent}]")
            return result
        except Exception as e:
            elapsed = (time.time() - start_time) * 1000
            logger.error(f"{request.method} {request.path} ERROR {elapsed:.0f}ms [{client_ip}] - {e}")
            raise
    return decorated


# Import API blueprint
from api import api as api_blueprint

app = Flask(__name__)

# Enable CORS for local dashboards
CORS(app, resources={
    r"/api/*": {
        "origins": ["http://localhost:5173", "http://localhost:3000", "http://localhost:8080"],
        "methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Content-Type"]
    }
})

app.register_blueprint(api_blueprint)

# Import components
from config import (
    BACKUP_INTERVAL_HOURS, WORKER_THREADS, QUEUE_IDLE_WAIT, GRACEFUL_SHUTDOWN_TIMEOUT,
)
from database import Database
from work_queue import WorkQueue
from backup import BackupOrchestrator

# Initialize components
db = Database()
work_queue = WorkQueue(db)
orchestrator = BackupOrchestrator(db, work_queue)

# Graceful shutdown support
shutdown_event = threading.Event()
worker_threads = []


def graceful_shutdown(signum, frame):
    """Handle shutdown signals gracefully.

    Waits for workers to finish their current unit (up to
    GRACEFUL_SHUTDOWN_TIMEOUT seconds) before exiting. Anything left in
    processing is reset to pending on the next start.
    """
    sig_name = signal.Signals(signum).name
    logger.info(f"Received {sig_name} signal, initiating graceful shutdown...")

    # Signal all background threads to stop
    shutdown_event.set()

    deadline = time.time() + GRACEFUL_SHUTDOWN_TIMEOUT
    for thread in worker_threads:
        thread.join(timeout=max(0, deadline - time.time()))

    if any(thread.is_alive() for thread in worker_threads):
        logger.warning("Shutdown timeout reached, forcing exit with units in progress")
    else:
        logger.info("All workers stopped, shutting down cleanly")

    sys.exit(0)


def background_scheduler():
    """Queue a backup run every BACKUP_INTERVAL_HOURS.

    Uses shutdown_event.wait() instead of time.sleep() to allow
    graceful shutdown interruption.
    """
    interval = BACKUP_INTERVAL_HOURS * 3600
    while not shutdown_event.is_set():
        try:
            orchestrator.trigger()
            cleared = db.clear_completed_work_units(older_than_hours=24)
            if cleared:
                queue_logger.info(f"Cleared {cleared} completed work units")
        except Exception as e:
            logger.error(f"Scheduled backup failed to queue: {e}")
        shutdown_event.wait(timeout=interval)


def background_worker(worker_id: int):
    """Claim and run work units until shutdown."""
    queue_logger.info(f"Worker {worker_id} started")
    while not shutdown_event.is_set():
        try:
            if not work_queue.process_next(orchestrator.handle):
                # No pending units, wait before checking again
                shutdown_event.wait(timeout=QUEUE_IDLE_WAIT)
        except Exception as e:
            queue_logger.error(f"Worker {worker_id} error: {e}")
            shutdown_event.wait(timeout=60)  # Wait before retrying on error
    queue_logger.info(f"Worker {worker_id} stopped")


@app.route('/health')
@log_request_detailed
def health_check():
    """Health check endpoint."""
    stats = db.get_stats()
    return {
        'status': 'ok',
        'episodes': stats['episode_count'],
        'podcasts': stats['podcast_count'],
        'workers': sum(1 for thread in worker_threads if thread.is_alive()),
    }


# Startup initialization (runs when module is imported by gunicorn)
def _startup():
    """Initialize the application on startup."""
    logger.info("Castkeeper starting...")
    logger.info(f"Data directory: {db.data_dir}")

    # Reset any units stuck in 'processing' from a previous crash
    work_queue.reset_stuck()

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGTERM, graceful_shutdown)
    signal.signal(signal.SIGINT, graceful_shutdown)
    logger.info("Registered signal handlers for graceful shutdown")

    for worker_id in range(WORKER_THREADS):
        thread = threading.Thread(target=background_worker, args=(worker_id,), daemon=True)
        thread.start()
        worker_threads.append(thread)
    logger.info(f"Started {WORKER_THREADS} queue worker threads")

    scheduler_thread = threading.Thread(target=background_scheduler, daemon=True)
    scheduler_thread.start()
    logger.info(f"Started backup scheduler (every {BACKUP_INTERVAL_HOURS}h)")


_startup()


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    app.run(host='0.0.0.0', port=port)
