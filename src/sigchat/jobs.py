"""Scheduled jobs for sigchat.

Expiry sweep:
- Runs every ``sweep_interval_seconds`` (60 by default) while the server is up,
  or once on demand via ``sigchat sweep``
- Deletes every message whose expiry has passed, together with its reactions
- Announces each deletion to the message's room as ``message_deleted``

A message may outlive its expiry by up to one sweep interval. A failed
sweep is logged and the next tick tries again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from . import db
from .metrics import metrics
from .relay import Relay

logger = logging.getLogger(__name__)

SWEEP_TIMEOUT = 30.0


def sweep_expired(now: datetime | None = None) -> list[dict]:
    """Delete expired messages.

    Args:
        now: Cutoff time (defaults to the current time)

    Returns:
        ``[{"id", "room_id"}]`` for each deleted message.
    """
    deleted = db.delete_expired_messages(now=now)
    metrics.record_sweep(len(deleted))
    if deleted:
        logger.info(f"Auto-deleted {len(deleted)} expired messages")
    return deleted


async def sweep_and_announce(
    relay: Relay,
    now: datetime | None = None,
    timeout: float = SWEEP_TIMEOUT,
) -> list[dict]:
    """Run one sweep on the store executor and broadcast the deletions.

    ``timeout`` bounds the store work only. Deletions that were committed are
    always announced, and each announcement is bounded by the hub's send
    timeout.
    """
    deleted = await asyncio.wait_for(db.run_sync(sweep_expired, now), timeout=timeout)
    await relay.announce_deletions(deleted)
    return deleted


# --- Background sweeper ---

_shutdown_event: asyncio.Event | None = None
_sweeper_task: asyncio.Task | None = None


async def run_sweeper(relay: Relay, interval: float, shutdown_event: asyncio.Event) -> None:
    """Sweep every ``interval`` seconds until ``shutdown_event`` is set."""
    logger.info(f"Expiry sweep scheduled every {interval}s")
    while not shutdown_event.is_set():
        try:
            # Wait for the interval or the shutdown signal
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass

        try:
            await sweep_and_announce(relay)
        except asyncio.TimeoutError:
            logger.error(f"Expiry sweep timed out after {SWEEP_TIMEOUT}s")
        except Exception as e:
            logger.error(f"Error deleting expired messages: {e}", exc_info=True)


def schedule_sweeper(relay: Relay, interval: float) -> asyncio.Task | None:
    """Start the background sweeper on the running loop.

    Should be called during application startup. An interval <= 0 disables it.
    """
    global _shutdown_event, _sweeper_task

    if interval <= 0:
        logger.info("Expiry sweep disabled")
        return None

    _shutdown_event = asyncio.Event()
    _sweeper_task = asyncio.get_running_loop().create_task(
        run_sweeper(relay, interval, _shutdown_event)
    )
    return _sweeper_task


async def stop_sweeper() -> None:
    """Signal the sweeper to stop and wait for it to finish."""
    global _shutdown_event, _sweeper_task
    if _shutdown_event is not None:
        _shutdown_event.set()
    if _sweeper_task is not None:
        await _sweeper_task
    _shutdown_event = None
    _sweeper_task = None
