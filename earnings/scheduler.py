"""Background task: run the profit accrual sweep on a fixed interval."""
import asyncio
import logging

from .service import EarningsService

logger = logging.getLogger(__name__)


async def run_accrual_once(service: EarningsService):
    # The sweep holds a threading lock per subscription; keep it off the event loop.
    return await asyncio.to_thread(service.accrue_profits)


async def profit_accrual_loop(service: EarningsService, interval: float):
    """Accrue profits now and then every ``interval`` seconds until cancelled.

    A failed run is logged and retried on the next tick; accrual is computed
    from absolute elapsed time so nothing is lost by skipping a run.
    """
    while True:
        try:
            report = await run_accrual_once(service)
            logger.debug("Accrual sweep processed %s subscriptions", report.processed)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Profit accrual sweep failed")
        await asyncio.sleep(interval)
