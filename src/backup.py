"""Backup pipeline: podcasts and bookmarks, then per-podcast episodes, then history.

Stage 1 (sync-podcasts) reconciles the subscription and bookmark lists and
fans out one sync-podcast unit per podcast. Each stage-2 unit counts itself
toward the run's progress row; the unit whose increment completes the run
enqueues the single stage-3 (sync-history) unit.
"""
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Tuple

from config import ENQUEUE_BATCH_SIZE, get_credentials
from episode_sync import sync_podcast_episodes
from history import get_listen_history
from models import PlayedAtResult, PodcastSyncResult
from pocketcasts_client import PocketCastsClient
from work_queue import WorkQueue, WorkUnit, SYNC_PODCASTS, SYNC_PODCAST, SYNC_HISTORY

logger = logging.getLogger('castkeeper.backup')


def queue_backup_run(queue: WorkQueue) -> int:
    """Enqueue a new backup run. Returns the stage-1 unit id."""
    unit_id = queue.enqueue(WorkUnit(SYNC_PODCASTS))
    logger.info(f"[Backup] Queued backup run (unit {unit_id})")
    return unit_id


class BackupOrchestrator:
    """Executes work units for the three backup stages."""

    def __init__(self, db, queue: WorkQueue, client: PocketCastsClient = None,
                 credentials: Callable[[], Tuple[str, str]] = get_credentials):
        self.db = db
        self.queue = queue
        self.client = client or PocketCastsClient()
        self.credentials = credentials

    def trigger(self) -> int:
        return queue_backup_run(self.queue)

    def handle(self, unit: WorkUnit):
        """Run one unit. Errors are logged and re-raised for the queue."""
        handlers = {
            SYNC_PODCASTS: self.sync_podcasts,
            SYNC_PODCAST: self.sync_podcast,
            SYNC_HISTORY: self.sync_history,
        }
        handler = handlers.get(unit.unit_type)
        if handler is None:
            raise ValueError(f"Unknown work unit type: {unit.unit_type}")

        try:
            return handler(unit.payload)
        except Exception as e:
            prefix = unit.payload.get('podcast_title') or 'Backup'
            logger.error(
                f"[{prefix}] {unit.unit_type} failed: {e}",
                extra={'run_id': unit.payload.get('run_id'),
                       'podcast_uuid': unit.payload.get('podcast_uuid')}
            )
            raise

    # ========== Stage 1 ==========

    def sync_podcasts(self, payload: Optional[dict] = None) -> str:
        """Reconcile podcasts and bookmarks and fan out per-podcast units.

        Returns:
            The new run id
        """
        email, password = self.credentials()
        token = self.client.login(email, password)

        with ThreadPoolExecutor(max_workers=2) as executor:
            podcasts_future = executor.submit(self.client.fetch_current_podcasts, token)
            bookmarks_future = executor.submit(self.client.fetch_current_bookmarks, token)
            podcasts = podcasts_future.result()
            bookmarks = bookmarks_future.result()

        podcast_total = self.db.save_podcasts(podcasts)
        bookmark_total = self.db.save_bookmarks(bookmarks)
        logger.info(
            f"[Backup] Saved {len(podcasts)} podcasts ({podcast_total} stored), "
            f"{len(bookmarks)} bookmarks ({bookmark_total} stored)"
        )

        run_id = uuid.uuid4().hex
        self.db.reset_backup_progress(run_id, len(podcasts))

        if not podcasts:
            self.queue.enqueue(WorkUnit(SYNC_HISTORY, {'run_id': run_id, 'token': token}))
            logger.info("[Backup] No podcasts to sync, enqueued history sync", extra={'run_id': run_id})
            return run_id

        units = [
            WorkUnit(SYNC_PODCAST, {
                'run_id': run_id,
                'token': token,
                'podcast_uuid': podcast.uuid,
                'podcast_title': podcast.title,
                'podcast_author': podcast.author,
                'podcast_slug': podcast.slug,
            })
            for podcast in podcasts
        ]
        for i in range(0, len(units), ENQUEUE_BATCH_SIZE):
            self.queue.enqueue_batch(units[i:i + ENQUEUE_BATCH_SIZE])

        logger.info(f"[Backup] Enqueued {len(units)} podcast sync units", extra={'run_id': run_id})
        return run_id

    # ========== Stage 2 ==========

    def sync_podcast(self, payload: dict) -> PodcastSyncResult:
        """Sync one podcast's episodes and count it toward the run."""
        run_id = payload['run_id']
        token = payload['token']
        podcast_uuid = payload['podcast_uuid']

        result = sync_podcast_episodes(
            self.client, self.db, token, podcast_uuid,
            payload.get('podcast_title') or '',
            payload.get('podcast_author') or '',
            payload.get('podcast_slug') or '',
        )

        # Queued together with the progress update, only if this unit completes the run
        history_unit = WorkUnit(SYNC_HISTORY, {'run_id': run_id, 'token': token})
        progress = self.db.increment_backup_progress(
            run_id, podcast_uuid, on_complete=self.queue.to_rows([history_unit])
        )
        logger.info(
            f"[Backup] Progress: {progress.completed}/{progress.total}",
            extra={'run_id': run_id, 'podcast_uuid': podcast_uuid}
        )

        if progress.finished_now:
            logger.info("[Backup] All podcasts synced, enqueued history sync", extra={'run_id': run_id})

        return result

    # ========== Stage 3 ==========

    def sync_history(self, payload: dict) -> PlayedAtResult:
        """Merge listen history and move played_at forward."""
        logger.info("[History] Fetching listen history", extra={'run_id': payload.get('run_id')})
        history = get_listen_history(self.client, payload['token'])
        logger.info(f"[History] Got {len(history)} played episodes")

        result = self.db.update_episode_played_at(history)
        logger.info(
            f"[Backup] Complete: played_at {result.updated} updated, {result.skipped} skipped",
            extra={'run_id': payload.get('run_id')}
        )
        return result
