import asyncio
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from vid_discover import background_tasks
from vid_discover.background_tasks import (
    quota_reset_loop,
    reset_quota_if_due,
    seconds_until_next_reset,
    suggestion_cleanup_loop,
)
from vid_discover.config import ApiSettings
from vid_discover.curator import SuggestionCurator
from vid_discover.notifications import Notifier
from vid_discover.quota import QuotaLedger


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self):
        return self.now


def test_seconds_until_next_reset():
    now = datetime(2026, 3, 10, 23, 0, tzinfo=timezone.utc)
    assert seconds_until_next_reset(now) == 3600


def test_seconds_until_next_reset_custom_hour():
    now = datetime(2026, 3, 10, 6, 30, tzinfo=timezone.utc)
    assert seconds_until_next_reset(now, reset_hour=8) == 5400


def test_reset_quota_if_due():
    clock = FakeClock(datetime(2026, 3, 10, 22, 0, tzinfo=timezone.utc))
    notifier = Mock(spec=Notifier)
    ledger = QuotaLedger(ApiSettings(daily_quota_limit=1000), clock=clock)
    ledger.record(400, "search", True)

    assert reset_quota_if_due(ledger, notifier) is False
    assert ledger.status().used == 400
    notifier.notify_info.assert_not_called()

    clock.now = datetime(2026, 3, 11, 0, 0, 30, tzinfo=timezone.utc)
    assert reset_quota_if_due(ledger, notifier) is True
    assert ledger.status().used == 0
    notifier.notify_info.assert_called_once_with("Daily YouTube quota has been reset.")


@pytest.mark.asyncio
async def test_quota_reset_loop_stops_on_cancel():
    ledger = Mock(spec=QuotaLedger)
    ledger.settings = ApiSettings()
    ledger.reset_if_new_day.return_value = False

    task = asyncio.create_task(quota_reset_loop(ledger, check_interval=0.01))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert ledger.reset_if_new_day.call_count >= 1


@pytest.mark.asyncio
async def test_quota_reset_loop_backs_off_on_error(monkeypatch):
    monkeypatch.setattr(background_tasks, "ERROR_BACKOFF", 0.01)
    ledger = Mock(spec=QuotaLedger)
    ledger.settings = ApiSettings()
    ledger.reset_if_new_day.side_effect = RuntimeError("store offline")

    task = asyncio.create_task(quota_reset_loop(ledger, check_interval=0.01))
    await asyncio.sleep(0.1)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert ledger.reset_if_new_day.call_count >= 2


@pytest.mark.asyncio
async def test_cleanup_loop_runs_until_cancelled():
    curator = Mock(spec=SuggestionCurator)
    curator.cleanup_expired.return_value = 3

    task = asyncio.create_task(suggestion_cleanup_loop(curator, interval=0.01))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert curator.cleanup_expired.call_count >= 2
