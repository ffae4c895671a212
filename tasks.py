import asyncio
import logging

from compensation import CompensationLog
from database import DocumentStore
from orders import OrderService

logger = logging.getLogger(__name__)


def run_maintenance(store: DocumentStore) -> dict:
    """Expire abandoned orders and replay failed checkout writes."""
    sweep = OrderService(store).sweep_abandoned()
    replay = CompensationLog(store).replay()
    return {**sweep, "compensations": replay}


async def periodic_maintenance(store: DocumentStore, interval: int) -> None:
    logger.info("Maintenance task running every %ss", interval)
    while True:
        try:
            await asyncio.to_thread(run_maintenance, store)
        except Exception:
            logger.exception("Maintenance run failed")
        await asyncio.sleep(interval)
