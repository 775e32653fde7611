"""Unit tests for the three-stage backup pipeline."""
import pytest
import sqlite3
import sys
import os
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from conftest import make_podcast, make_bookmark, make_sync_item, make_cache, make_cache_episode
from backup import BackupOrchestrator, queue_backup_run
from models import HistoryChange, HistoryYearResponse
from pocketcasts_client import RemoteFetchError
from work_queue import WorkQueue, WorkUnit, SYNC_PODCASTS, SYNC_PODCAST, SYNC_HISTORY


@pytest.fixture
def queue(temp_db):
    return WorkQueue(temp_db)


@pytest.fixture
def orchestrator(temp_db, queue, mock_client):
    return BackupOrchestrator(
        temp_db, queue, client=mock_client,
        credentials=lambda: ('user@example.com', 'secret')
    )


def drain(queue, orchestrator, limit=1000):
    """Run queued units until the queue is empty. Returns handled unit types."""
    handled = []

    def handler(unit):
        handled.append(unit.unit_type)
        orchestrator.handle(unit)

    for _ in range(limit):
        if not queue.process_next(handler):
            break
    return handled


def pending_units(queue):
    units = []
    while True:
        unit = queue.claim_next()
        if unit is None:
            return units
        units.append(unit)


class TestSyncPodcasts:
    """Tests for stage 1."""

    def test_fans_out_one_unit_per_podcast(self, orchestrator, queue, temp_db, mock_client):
        mock_client.fetch_current_podcasts.return_value = [
            make_podcast('A', title='Alpha', slug='alpha'), make_podcast('B'),
        ]
        mock_client.fetch_current_bookmarks.return_value = [make_bookmark('b1')]

        run_id = orchestrator.sync_podcasts()

        mock_client.login.assert_called_once_with('user@example.com', 'secret')
        units = pending_units(queue)
        assert [u.unit_type for u in units] == [SYNC_PODCAST, SYNC_PODCAST]
        assert units[0].payload == {
            'run_id': run_id,
            'token': 'test-token',
            'podcast_uuid': 'A',
            'podcast_title': 'Alpha',
            'podcast_author': 'Author',
            'podcast_slug': 'alpha',
        }
        progress = temp_db.get_backup_progress(run_id)
        assert (progress['total'], progress['completed']) == (2, 0)
        assert temp_db.get_stats()['bookmark_count'] == 1

    def test_enqueues_in_batches(self, orchestrator, queue, mock_client):
        mock_client.fetch_current_podcasts.return_value = [make_podcast(f"P{i}") for i in range(250)]

        with patch.object(queue, 'enqueue_batch', wraps=queue.enqueue_batch) as spy:
            orchestrator.sync_podcasts()

        assert [len(c.args[0]) for c in spy.call_args_list] == [100, 100, 50]
        assert queue.status()['pending'] == 250

    def test_no_podcasts_goes_straight_to_history(self, orchestrator, queue, mock_client):
        run_id = orchestrator.sync_podcasts()

        units = pending_units(queue)
        assert [u.unit_type for u in units] == [SYNC_HISTORY]
        assert units[0].payload['run_id'] == run_id

    def test_trigger_queues_stage_one(self, orchestrator, queue):
        unit_id = orchestrator.trigger()
        second_id = queue_backup_run(queue)

        units = pending_units(queue)
        assert [(u.id, u.unit_type) for u in units] == [(unit_id, SYNC_PODCASTS), (second_id, SYNC_PODCASTS)]

    def test_missing_credentials(self, temp_db, queue, mock_client):
        def no_credentials():
            raise ValueError("POCKETCASTS_EMAIL and POCKETCASTS_PASSWORD environment variables are required")

        orchestrator = BackupOrchestrator(temp_db, queue, client=mock_client, credentials=no_credentials)

        with pytest.raises(ValueError):
            orchestrator.handle(WorkUnit(SYNC_PODCASTS))
        mock_client.login.assert_not_called()


class TestSyncPodcast:
    """Tests for stage 2 and the completion handoff."""

    def _payload(self, run_id, podcast_uuid):
        return {'run_id': run_id, 'token': 't', 'podcast_uuid': podcast_uuid,
                'podcast_title': 'Show', 'podcast_author': 'Host', 'podcast_slug': 'show'}

    def test_last_unit_enqueues_history_once(self, orchestrator, queue, temp_db):
        temp_db.reset_backup_progress('run-1', 2)

        orchestrator.sync_podcast(self._payload('run-1', 'A'))
        assert pending_units(queue) == []

        orchestrator.sync_podcast(self._payload('run-1', 'B'))
        orchestrator.sync_podcast(self._payload('run-1', 'B'))

        units = pending_units(queue)
        assert [u.unit_type for u in units] == [SYNC_HISTORY]
        assert units[0].payload == {'run_id': 'run-1', 'token': 't'}

    def test_history_handoff_survives_failed_enqueue(self, orchestrator, queue, temp_db):
        """A failed history enqueue rolls back the count so the redelivery hands off."""
        temp_db.reset_backup_progress('run-1', 1)
        insert_units = temp_db._insert_work_units
        calls = []

        def locked_once(conn, units):
            calls.append(units)
            if len(calls) == 1:
                raise sqlite3.OperationalError('database is locked')
            return insert_units(conn, units)

        unit = WorkUnit(SYNC_PODCAST, self._payload('run-1', 'A'))
        with patch.object(temp_db, '_insert_work_units', side_effect=locked_once):
            with pytest.raises(sqlite3.OperationalError):
                orchestrator.handle(unit)

            progress = temp_db.get_backup_progress('run-1')
            assert (progress['completed'], progress['history_enqueued']) == (0, 0)

            orchestrator.handle(unit)

        units = pending_units(queue)
        assert [u.unit_type for u in units] == [SYNC_HISTORY]
        progress = temp_db.get_backup_progress('run-1')
        assert (progress['completed'], progress['history_enqueued']) == (1, 1)

    def test_failure_does_not_count_progress(self, orchestrator, temp_db, mock_client):
        temp_db.reset_backup_progress('run-1', 1)
        mock_client.fetch_episode_cache_metadata.side_effect = RemoteFetchError(
            "Failed to fetch podcast metadata for A: 404", 404, 'A'
        )

        with pytest.raises(RemoteFetchError):
            orchestrator.handle(WorkUnit(SYNC_PODCAST, self._payload('run-1', 'A')))

        assert temp_db.get_backup_progress('run-1')['completed'] == 0


class TestSyncHistory:
    """Tests for stage 3."""

    def test_applies_history(self, orchestrator, temp_db, mock_client):
        from conftest import make_new_episode
        temp_db.insert_new_episodes([make_new_episode('ep-1')])
        mock_client.fetch_history_year.side_effect = [
            HistoryYearResponse(count=1),
            HistoryYearResponse(count=1, changes=[HistoryChange(1, 'ep-1', '1700000000000')]),
            HistoryYearResponse(count=0),
        ]

        result = orchestrator.sync_history({'run_id': 'run-1', 'token': 't'})

        assert (result.updated, result.skipped) == (1, 0)
        assert temp_db.get_episode('ep-1')['played_at'] == '2023-11-14T22:13:20.000Z'


class TestPipeline:
    """End-to-end runs through the queue."""

    def test_full_run(self, orchestrator, queue, temp_db, mock_client):
        mock_client.fetch_current_podcasts.return_value = [make_podcast('A'), make_podcast('B')]
        mock_client.fetch_episode_sync_data.side_effect = lambda token, uuid: [
            make_sync_item(f"{uuid}-1", playing_status=3, played_up_to=100)
        ]
        mock_client.fetch_episode_cache_metadata.side_effect = lambda uuid: make_cache(
            [make_cache_episode(f"{uuid}-1")]
        )
        mock_client.fetch_history_year.side_effect = [
            HistoryYearResponse(count=1),
            HistoryYearResponse(count=1, changes=[HistoryChange(1, 'A-1', '1700000000000')]),
            HistoryYearResponse(count=0),
        ]

        orchestrator.trigger()
        handled = drain(queue, orchestrator)

        assert handled == [SYNC_PODCASTS, SYNC_PODCAST, SYNC_PODCAST, SYNC_HISTORY]
        assert temp_db.get_episode_count() == 2
        assert temp_db.get_episode('A-1')['played_at'] == '2023-11-14T22:13:20.000Z'
        assert temp_db.get_episode('B-1')['played_at'] is None
        progress = temp_db.get_backup_progress()
        assert (progress['completed'], progress['history_enqueued']) == (2, 1)
        assert queue.status()['completed'] == 4

    def test_failed_unit_is_retried(self, orchestrator, queue, temp_db, mock_client):
        mock_client.fetch_current_podcasts.return_value = [make_podcast('A')]
        mock_client.fetch_episode_sync_data.side_effect = [
            RemoteFetchError("Failed to fetch episode sync data for A: 503", 503, 'A'),
            [],
        ]

        orchestrator.trigger()
        handled = drain(queue, orchestrator)

        assert handled == [SYNC_PODCASTS, SYNC_PODCAST, SYNC_PODCAST, SYNC_HISTORY]
        assert temp_db.get_backup_progress()['completed'] == 1

    def test_unknown_unit_type(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.handle(WorkUnit('sync-everything'))
