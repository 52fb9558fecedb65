import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .assignment import AssignmentEngine
from .errors import LedgerServiceError
from .ledger import utcnow

logger = logging.getLogger(__name__)


def seconds_until_next_run(now: datetime) -> float:
    """Seconds from ``now`` to the next 00:00 UTC."""
    next_midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (next_midnight - now).total_seconds()


class DailyAssignmentScheduler:
    def __init__(self, engine: AssignmentEngine, clock: Optional[Callable[[], datetime]] = None):
        self.engine = engine
        self.clock = clock or utcnow
        self._running = False
        self._wakeup: Optional[asyncio.Event] = None

    async def run_once(self) -> None:
        try:
            result = await asyncio.to_thread(self.engine.assign_tasks)
            logger.info(
                f"Daily assignment done: {result.assignments} assignments for {result.users_assigned} users"
            )
        except LedgerServiceError as e:
            logger.error(f"Daily assignment skipped: {e}")
        except Exception:
            logger.exception("Daily assignment failed")

    async def run(self) -> None:
        """
        Run the assignment job every day at 00:00 UTC until ``stop()``.

        A failed run is logged and the loop waits for the next day.
        """
        logger.info("Daily assignment scheduler started")
        self._running = True
        self._wakeup = asyncio.Event()

        while self._running:
            delay = seconds_until_next_run(self.clock())
            logger.info(f"Next assignment run in {delay / 3600:.2f} hours")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break
            await self.run_once()

        logger.info("Daily assignment scheduler stopped")

    async def stop(self) -> None:
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
