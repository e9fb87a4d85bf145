from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from ..control_plane.job_store import JobStore
from ..db.models import utcnow

logger = structlog.get_logger(__name__)


class LeaseReaper:
    """
    Periodic task:
      - find Claimed/Queued/Running jobs whose lease expired
      - return them to Pending (due now), or dead-letter a Running job whose
        lost attempt used up its budget

    Queue messages for reaped jobs are not touched: their version no longer
    matches, so a worker that receives one drops it.
    """

    def __init__(self, store: JobStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def run_once(self) -> int:
        recovered = await self.store.reclaim_expired_leases(self.clock())
        if recovered:
            logger.warning("expired_leases_reclaimed", count=recovered)
        return recovered
