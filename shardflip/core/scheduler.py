from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shardflip.core.logger import get_logger

logger = get_logger("scheduler")


class MirrorSyncScheduler:
    """
    Background jobs keeping the stats mirror aligned with the ledger.

    Events normally reach the mirror straight from the event bus; the periodic
    catch-up replays any game the mirror missed (subscriber failure, restart).
    """

    def __init__(self, ledger, mirror, interval_seconds: int = 60):
        self.ledger = ledger
        self.mirror = mirror
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler()

    def start(self):
        # 1. Replay missed settlements
        self.scheduler.add_job(
            self.sync_mirror,
            IntervalTrigger(seconds=self.interval_seconds),
            id="sync_mirror",
            replace_existing=True,
        )

        # 2. Drop expired cache entries
        self.scheduler.add_job(
            self.purge_cache,
            IntervalTrigger(seconds=max(self.mirror.cache.ttl, 1) * 2),
            id="purge_mirror_cache",
            replace_existing=True,
        )

        self.scheduler.start()
        logger.info("Mirror sync scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Mirror sync scheduler shutdown")

    def sync_mirror(self) -> int:
        try:
            return self.mirror.catch_up(self.ledger)
        except Exception as e:
            logger.error(f"Mirror sync failed: {e}", exc_info=True)
            return 0

    def purge_cache(self) -> int:
        removed = self.mirror.cache.purge_expired()
        if removed:
            logger.debug(f"Purged {removed} expired cache entries")
        return removed
