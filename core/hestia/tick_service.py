"""
Tick Service

Background asyncio task that runs the scheduler for every account at a fixed
interval. The fan-out is blocking, so it runs in a worker thread.
"""

import asyncio
import logging
from typing import Optional

from .models import FanOutResult
from .scheduler import SchedulingOrchestrator, run_for_all_accounts

logger = logging.getLogger(__name__)


class TickService:
    """Periodic trigger for the scheduling orchestrator."""

    def __init__(self, orchestrator: SchedulingOrchestrator, interval_minutes: int = 60):
        self.orchestrator = orchestrator
        self.interval_minutes = interval_minutes
        self.last_result: Optional[FanOutResult] = None

        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the periodic tick loop."""
        if self._running:
            logger.warning("Tick service already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"⏱️ Tick service started (interval: {self.interval_minutes} minutes)")

    async def stop(self):
        """Stop the loop and wait for the current tick to be cancelled."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("⏱️ Tick service stopped")

    async def tick(self) -> FanOutResult:
        """Run one fan-out now."""
        result = await asyncio.to_thread(run_for_all_accounts, self.orchestrator)
        self.last_result = result
        failed = [r.account_id for r in result.results if not r.success]
        if failed:
            logger.warning(f"Tick finished with {len(failed)} failed account(s): {failed}")
        else:
            logger.info(f"Tick finished for {result.accounts_processed} account(s)")
        return result

    async def _run_loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in tick loop: {e}", exc_info=True)

            await asyncio.sleep(self.interval_minutes * 60)
