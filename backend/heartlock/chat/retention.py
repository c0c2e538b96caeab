"""Background retention sweep.

Reads already hide expired messages; this task physically deletes them so
the database does not grow without bound. It runs for the lifetime of the
application and is cancelled on shutdown.
"""
import asyncio
import logging

from heartlock.errors import TransientStoreError

from .store import MessageStore

logger = logging.getLogger(__name__)


async def run_retention_sweeper(store: MessageStore, interval_seconds: float) -> None:
    """Purge expired messages every ``interval_seconds`` until cancelled."""
    logger.info(f"[Retention] Sweeper started (every {interval_seconds}s)")
    try:
        while True:
            try:
                store.purge_expired()
            except TransientStoreError as e:
                # Next sweep retries; reads already hide expired rows
                logger.warning(f"[Retention] Sweep failed: {e.message}")
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("[Retention] Sweeper stopped")
        raise
