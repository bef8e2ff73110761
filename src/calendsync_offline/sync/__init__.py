"""
OfflineSynchronizer: thin orchestrator that delegates to sync submodules.
"""

import logging

from calendsync_offline.db import EntryDatabase
from calendsync_offline.models import SyncConfig
from calendsync_offline.models import SyncStats
from calendsync_offline.sync.calendar import OfflineCalendar
from calendsync_offline.sync.engine import Connectivity
from calendsync_offline.sync.engine import SyncEngine
from calendsync_offline.sync.reconciler import EntryDateIndex
from calendsync_offline.sync.reconciler import LiveUpdateReconciler

__all__ = [
    "Connectivity",
    "EntryDateIndex",
    "LiveUpdateReconciler",
    "OfflineCalendar",
    "OfflineSynchronizer",
    "SyncEngine",
]


class OfflineSynchronizer:
    """Run one flush of the local queue against the configured server."""

    def __init__(self, config: SyncConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.stats = SyncStats()

    async def run(self) -> SyncStats:
        """Execute the flush and return its statistics."""
        self.logger.info("Connecting to %s...", self.config.base_url)
        with EntryDatabase(self.config.db_path) as db:
            async with SyncEngine(db, config=self.config) as engine:
                pending = engine.get_pending_count()
                self.logger.debug("%d operation(s) queued", pending)
                self.stats.merge(await engine.sync_pending())
        return self.stats
