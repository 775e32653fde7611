"""
Work Queue - durable at-least-once delivery of backup work units.

Units live in the work_queue table so a restart never loses them. A claimed
unit stays in 'processing' until acked or failed; units left there by a
crash are put back to pending on startup, so handlers must be idempotent.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import ENQUEUE_BATCH_SIZE, MAX_UNIT_ATTEMPTS

logger = logging.getLogger('castkeeper.queue')

SYNC_PODCASTS = 'sync-podcasts'
SYNC_PODCAST = 'sync-podcast'
SYNC_HISTORY = 'sync-history'
UNIT_TYPES = (SYNC_PODCASTS, SYNC_PODCAST, SYNC_HISTORY)


@dataclass
class WorkUnit:
    """One unit of backup work."""
    unit_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    attempts: int = 0

    @classmethod
    def from_row(cls, row: Dict) -> 'WorkUnit':
        return cls(
            unit_type=row['unit_type'],
            payload=json.loads(row.get('payload') or '{}'),
            id=row['id'],
            attempts=row.get('attempts') or 0,
        )


class WorkQueue:
    """SQLite-backed task queue shared by the scheduler, API and workers."""

    def __init__(self, db, max_attempts: int = MAX_UNIT_ATTEMPTS):
        self.db = db
        self.max_attempts = max_attempts

    def enqueue(self, unit: WorkUnit) -> int:
        """Add one unit. Returns its id."""
        return self.enqueue_batch([unit])[0]

    def enqueue_batch(self, units: List[WorkUnit]) -> List[int]:
        """Add up to ENQUEUE_BATCH_SIZE units in one transaction.

        Raises:
            ValueError: If the batch is too large or a unit type is unknown
        """
        ids = self.db.enqueue_work_units(self.to_rows(units))
        for unit, unit_id in zip(units, ids):
            unit.id = unit_id
        return ids

    def to_rows(self, units: List[WorkUnit]) -> List[Tuple[str, str]]:
        """Validate units and serialize them to (unit_type, payload_json) rows.

        Raises:
            ValueError: If the batch is too large or a unit type is unknown
        """
        if len(units) > ENQUEUE_BATCH_SIZE:
            raise ValueError(
                f"Batch of {len(units)} units exceeds maximum of {ENQUEUE_BATCH_SIZE}"
            )
        for unit in units:
            if unit.unit_type not in UNIT_TYPES:
                raise ValueError(f"Unknown work unit type: {unit.unit_type}")
        return [(unit.unit_type, json.dumps(unit.payload)) for unit in units]

    def claim_next(self) -> Optional[WorkUnit]:
        """Claim the next pending unit, or None when the queue is idle."""
        row = self.db.claim_next_work_unit()
        return WorkUnit.from_row(row) if row else None

    def ack(self, unit: WorkUnit):
        self.db.complete_work_unit(unit.id)

    def fail(self, unit: WorkUnit, error: str) -> str:
        """Record a failed attempt. Returns 'pending' (will retry) or 'failed'."""
        status = self.db.fail_work_unit(unit.id, error, self.max_attempts)
        if status == 'failed':
            logger.error(
                f"Work unit {unit.id} ({unit.unit_type}) failed permanently "
                f"after {unit.attempts} attempts: {error}"
            )
        else:
            logger.warning(f"Work unit {unit.id} ({unit.unit_type}) will be retried: {error}")
        return status

    def process_next(self, handler: Callable[[WorkUnit], Any]) -> bool:
        """Claim one unit and run handler on it.

        The unit is acked when handler returns and failed when it raises.
        Returns False when there was nothing to claim.
        """
        unit = self.claim_next()
        if unit is None:
            return False

        try:
            handler(unit)
        except Exception as e:
            self.fail(unit, str(e) or e.__class__.__name__)
        else:
            self.ack(unit)
        return True

    def reset_stuck(self) -> int:
        """Return units orphaned in 'processing' to pending."""
        count = self.db.reset_stuck_work_units()
        if count:
            logger.warning(f"Reset {count} work units stuck in processing")
        return count

    def status(self) -> Dict:
        return self.db.get_work_queue_status()
