"""
Presence sweep job.

Redis expires presence records by itself; this job prunes the online index
(and the in-process fallback) and broadcasts offline for every user whose
heartbeat aged past the TTL without an explicit disconnect.
Runs inside the API process because the broadcast needs local sockets.
"""

import asyncio

from app.infrastructure.observability.logging import get_logger
from app.services.realtime.hub import RealtimeHub

logger = get_logger(__name__)

# Back-off after an unexpected failure
ERROR_RETRY_SECONDS = 30


async def run_presence_sweep(hub: RealtimeHub) -> list[str]:
    """Run one sweep and return the users that went offline."""
    expired = await hub.sweep()
    if expired:
        logger.info("Presence sweep completed", expired_users=len(expired))
    return expired


async def start_presence_sweep_scheduler(hub: RealtimeHub, interval_seconds: float) -> None:
    """Sweep forever at a fixed interval until cancelled."""
    logger.info("Starting presence sweep scheduler", interval_seconds=interval_seconds)

    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await run_presence_sweep(hub)

        except asyncio.CancelledError:
            logger.info("Presence sweep scheduler stopped")
            raise
        except Exception as e:
            logger.error(
                "Error in presence sweep scheduler", error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(ERROR_RETRY_SECONDS)
