"""Background scheduler for the abandoned-cart opportunity expiration sweep.

Wraps an APScheduler AsyncIOScheduler with a single interval job that calls
``CartRecoveryOrchestrator.expire_old_opportunities``. The job is only
registered when cart expiration is enabled.
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from src.relay.sync.carts import CartRecoveryOrchestrator

logger = structlog.get_logger(__name__)

JOB_ID = "cart_expiration_sweep"


class ExpirationScheduler:
    """Runs the expiration sweep every ``interval_minutes``.

    Args:
        carts: Orchestrator that owns the sweep.
        interval_minutes: Minutes between sweeps.
        enabled: Whether the sweep is switched on at all.
    """

    def __init__(
        self,
        carts: CartRecoveryOrchestrator,
        interval_minutes: int = 60,
        enabled: bool = True,
    ) -> None:
        self._carts = carts
        self._interval_minutes = interval_minutes
        self._enabled = enabled
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> bool:
        """Start the scheduler. Returns False when the sweep is disabled."""
        if not self._enabled:
            logger.info("expiration_scheduler.disabled")
            return False

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id=JOB_ID,
            name="Close expired abandoned-cart opportunities",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=600,
        )
        self._scheduler.start()
        logger.info("expiration_scheduler.started", interval_minutes=self._interval_minutes)
        return True

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("expiration_scheduler.stopped")
        self._scheduler = None

    async def run_sweep(self) -> None:
        """Job body: one sweep, errors logged."""
        logger.info("expiration_scheduler.sweep_triggered")
        try:
            result = await self._carts.expire_old_opportunities()
        except Exception as exc:
            logger.error("expiration_scheduler.sweep_failed", error=str(exc))
            return
        logger.info(
            "expiration_scheduler.sweep_complete",
            found=result.found,
            closed=result.closed,
            failed=len(result.failed_ids),
        )
