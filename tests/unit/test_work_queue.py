"""Unit tests for the SQLite-backed work queue."""
import pytest
import sys
import os
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from work_queue import WorkQueue, WorkUnit, SYNC_PODCASTS, SYNC_PODCAST, SYNC_HISTORY


@pytest.fixture
def queue(temp_db):
    return WorkQueue(temp_db, max_attempts=2)


class TestEnqueue:
    """Tests for adding units."""

    def test_enqueue_and_claim(self, queue):
        unit_id = queue.enqueue(WorkUnit(SYNC_PODCAST, {'podcast_uuid': 'pod-1'}))

        claimed = queue.claim_next()

        assert claimed.id == unit_id
        assert claimed.unit_type == SYNC_PODCAST
        assert claimed.payload == {'podcast_uuid': 'pod-1'}
        assert claimed.attempts == 1
        assert queue.claim_next() is None

    def test_batch_assigns_ids(self, queue):
        units = [WorkUnit(SYNC_PODCAST, {'n': i}) for i in range(3)]

        ids = queue.enqueue_batch(units)

        assert len(ids) == 3
        assert [u.id for u in units] == ids
        assert queue.status()['pending'] == 3

    def test_batch_over_limit_rejected(self, queue):
        units = [WorkUnit(SYNC_PODCAST) for _ in range(101)]

        with pytest.raises(ValueError):
            queue.enqueue_batch(units)
        assert queue.status()['total'] == 0

    def test_unknown_type_rejected(self, queue):
        with pytest.raises(ValueError):
            queue.enqueue(WorkUnit('sync-everything'))


class TestDelivery:
    """Tests for ack, fail and redelivery."""

    def test_claim_oldest_first(self, queue):
        first = queue.enqueue(WorkUnit(SYNC_PODCASTS))
        queue.enqueue(WorkUnit(SYNC_HISTORY))

        assert queue.claim_next().id == first

    def test_ack_completes(self, queue):
        queue.enqueue(WorkUnit(SYNC_PODCASTS))
        unit = queue.claim_next()

        queue.ack(unit)

        status = queue.status()
        assert status['completed'] == 1
        assert status['processing'] == 0

    def test_fail_retries_until_max_attempts(self, queue, temp_db):
        queue.enqueue(WorkUnit(SYNC_PODCASTS))

        unit = queue.claim_next()
        assert queue.fail(unit, 'boom') == 'pending'

        unit = queue.claim_next()
        assert unit.attempts == 2
        assert queue.fail(unit, 'boom again') == 'failed'

        assert queue.claim_next() is None
        row = temp_db.get_work_unit(unit.id)
        assert row['status'] == 'failed'
        assert row['error_message'] == 'boom again'

    def test_reset_stuck(self, queue):
        queue.enqueue(WorkUnit(SYNC_PODCASTS))
        queue.claim_next()

        assert queue.reset_stuck() == 1
        assert queue.claim_next() is not None

    def test_process_next_acks_on_success(self, queue):
        queue.enqueue(WorkUnit(SYNC_HISTORY, {'run_id': 'r1'}))
        handler = MagicMock()

        assert queue.process_next(handler) is True

        assert handler.call_args.args[0].payload == {'run_id': 'r1'}
        assert queue.status()['completed'] == 1

    def test_process_next_fails_on_error(self, queue, temp_db):
        unit_id = queue.enqueue(WorkUnit(SYNC_HISTORY))
        handler = MagicMock(side_effect=RuntimeError('remote down'))

        assert queue.process_next(handler) is True

        row = temp_db.get_work_unit(unit_id)
        assert row['status'] == 'pending'
        assert row['error_message'] == 'remote down'

    def test_process_next_idle(self, queue):
        handler = MagicMock()

        assert queue.process_next(handler) is False
        handler.assert_not_called()

    def test_clear_completed(self, queue, temp_db):
        queue.enqueue(WorkUnit(SYNC_PODCASTS))
        queue.ack(queue.claim_next())

        assert temp_db.clear_completed_work_units(older_than_hours=-1) == 1
        assert queue.status()['total'] == 0
