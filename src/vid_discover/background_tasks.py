"""Background tasks for the daily quota reset and suggestion expiry"""

import asyncio
import logging
from datetime import datetime, timezone

from .config import CLEANUP_INTERVAL
from .curator import SuggestionCurator
from .notifications import Notifier, send
from .quota import QuotaLedger, next_reset_time

logger = logging.getLogger(__name__)

QUOTA_CHECK_INTERVAL = 60 * 60  # 1 hour
POST_RESET_DELAY = 60  # 1 minute
ERROR_BACKOFF = 5 * 60  # 5 minutes


def seconds_until_next_reset(now: datetime | None = None, reset_hour: int = 0) -> float:
    now = now or datetime.now(timezone.utc)
    return (next_reset_time(now, reset_hour) - now).total_seconds()


def reset_quota_if_due(ledger: QuotaLedger, notifier: Notifier | None = None) -> bool:
    """Reset the ledger if a daily boundary has passed, then re-check usage thresholds."""
    was_reset = ledger.reset_if_new_day()
    if was_reset:
        logger.info(f"Daily quota reset; limit {ledger.limit} units")
        if notifier is not None:
            send(notifier.notify_info, "Daily YouTube quota has been reset.")
    ledger.check_thresholds()
    return was_reset


async def quota_reset_loop(
    ledger: QuotaLedger,
    notifier: Notifier | None = None,
    check_interval: float = QUOTA_CHECK_INTERVAL,
):
    """Wake at the next UTC reset (or every check_interval, whichever is sooner) and reset the ledger"""
    logger.info("Starting quota reset loop")

    while True:
        try:
            delay = min(check_interval, seconds_until_next_reset(reset_hour=ledger.settings.reset_hour_utc) + 1)
            await asyncio.sleep(delay)

            if reset_quota_if_due(ledger, notifier):
                await asyncio.sleep(POST_RESET_DELAY)

        except asyncio.CancelledError:
            logger.info("Quota reset loop cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in quota reset loop: {e}", exc_info=True)
            await asyncio.sleep(ERROR_BACKOFF)


async def suggestion_cleanup_loop(curator: SuggestionCurator, interval: float = CLEANUP_INTERVAL):
    """Withdraw expired pending suggestions once per interval"""
    logger.info("Starting suggestion cleanup loop")

    while True:
        try:
            count = curator.cleanup_expired()
            logger.info(f"Suggestion cleanup removed {count} expired suggestions")
            await asyncio.sleep(interval)

        except asyncio.CancelledError:
            logger.info("Suggestion cleanup loop cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in suggestion cleanup loop: {e}", exc_info=True)
            await asyncio.sleep(ERROR_BACKOFF)
