"""Centralized configuration constants.

All magic numbers and endpoints should be defined here
for easy tuning and consistency across the codebase.
"""
import os

# ============================================================
# Remote API Endpoints
# ============================================================
API_BASE_URL = os.environ.get('POCKETCASTS_API_URL', 'https://api.pocketcasts.com')
CACHE_BASE_URL = os.environ.get('POCKETCASTS_CACHE_URL', 'https://cache.pocketcasts.com')
REQUEST_TIMEOUT = 30            # Seconds per remote request

# ============================================================
# History Sync
# ============================================================
HISTORY_FLOOR_YEAR = 2010       # Oldest year queried for listen history
PLAY_ACTION = 1                 # History change action code for a listen

# ============================================================
# Batching
# ============================================================
ENQUEUE_BATCH_SIZE = 100        # Max work units per enqueue batch
SQL_BATCH_SIZE = 100            # Max bound parameters per IN (...) lookup

# ============================================================
# Work Queue
# ============================================================
MAX_UNIT_ATTEMPTS = 3           # Deliveries before a unit stays failed
QUEUE_IDLE_WAIT = 5             # Seconds a worker sleeps when queue is empty
WORKER_THREADS = int(os.environ.get('WORKER_THREADS', '4'))

# ============================================================
# Scheduling (hours)
# ============================================================
BACKUP_INTERVAL_HOURS = float(os.environ.get('BACKUP_INTERVAL_HOURS', '6'))
GRACEFUL_SHUTDOWN_TIMEOUT = 60  # Seconds to wait for in-flight units

# ============================================================
# Storage
# ============================================================
DATA_DIR = os.environ.get('DATA_DIR', '/app/data')


def get_credentials():
    """Return (email, password) for the remote account.

    Raises:
        ValueError: If either variable is unset
    """
    email = os.environ.get('POCKETCASTS_EMAIL', '')
    password = os.environ.get('POCKETCASTS_PASSWORD', '')
    if not email or not password:
        raise ValueError("POCKETCASTS_EMAIL and POCKETCASTS_PASSWORD environment variables are required")
    return email, password
