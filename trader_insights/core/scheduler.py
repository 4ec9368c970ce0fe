"""Scheduler for running periodic broker syncs."""

from __future__ import annotations

import logging
import signal
import sys
from datetime import datetime
from typing import Callable, Dict, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from trader_insights.config import get_settings
from trader_insights.core.brokers.models import ReconcileResult
from trader_insights.core.brokers.sync import BrokerSyncService
from trader_insights.db.database import get_db

logger = logging.getLogger(__name__)
settings = get_settings()


def run_sync_cycle() -> Dict[str, ReconcileResult]:
    """Sync every connected user once."""
    with get_db() as db:
        return BrokerSyncService(db).sync_all_users()


class SyncScheduler:
    """Scheduler for periodic broker sync cycles."""

    def __init__(
        self,
        interval_minutes: Optional[int] = None,
        cycle: Callable[[], Dict[str, ReconcileResult]] = run_sync_cycle,
    ):
        """Initialize the scheduler.

        Args:
            interval_minutes: Minutes between cycles (defaults to settings)
            cycle: Function that runs one sync cycle
        """
        self.interval = interval_minutes or settings.sync_interval_minutes
        self.cycle = cycle
        self.scheduler = BlockingScheduler()
        self._cycle_count = 0
        self._shutdown_requested = False

    def _run_cycle(self) -> None:
        """Execute a single sync cycle."""
        self._cycle_count += 1
        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")

        logger.info(f"[Cycle {self._cycle_count}] Starting at {timestamp}")

        try:
            results = self.cycle()
            created = sum(r.created for r in results.values())
            failed = [user_id for user_id, r in results.items() if not r.success]
            logger.info(
                f"[Cycle {self._cycle_count}] Synced {len(results)} user(s), "
                f"{created} new trade(s), {len(failed)} with errors"
            )
        except Exception as e:
            logger.error(f"[Cycle {self._cycle_count}] Error: {e}")

    def _handle_signal(self, signum, frame) -> None:
        """Handle shutdown signals gracefully."""
        if self._shutdown_requested:
            logger.warning("Received second shutdown signal, forcing exit...")
            sys.exit(1)

        logger.info("Received shutdown signal, stopping scheduler...")
        self._shutdown_requested = True
        self.stop()

    def start(self) -> None:
        """Start the scheduler (blocking)."""
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

        self.scheduler.add_job(
            self._run_cycle,
            trigger=IntervalTrigger(minutes=self.interval),
            id="broker_sync",
            name="Broker Sync",
            replace_existing=True,
        )

        logger.info(f"Starting broker sync scheduler with {self.interval}m interval")
        logger.info("Press Ctrl+C to stop")

        # Run first cycle immediately
        self._run_cycle()

        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            pass
        finally:
            logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shutdown complete")
