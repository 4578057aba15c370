from datetime import datetime, timezone
from unittest.mock import Mock

from vid_discover.notifications import Notifier, send


def test_recent_is_newest_first_and_bounded():
    notifier = Notifier(max_messages=3)
    for i in range(5):
        notifier.notify_info(f"message {i}")

    messages = [n.message for n in notifier.recent()]
    assert messages == ["message 4", "message 3", "message 2"]
    assert len(notifier.recent(limit=1)) == 1


def test_quota_limit_message():
    notifier = Notifier()
    notifier.notify_quota_limit("YouTube API", datetime(2026, 3, 11, tzinfo=timezone.utc))

    latest = notifier.recent()[0]
    assert latest.level == "quota_limit"
    assert latest.message == "YouTube API limit reached. Resets at 2026-03-11 00:00 UTC."


def test_send_swallows_sink_errors():
    callback = Mock(side_effect=RuntimeError("sink down"))
    send(callback, "hello")
    callback.assert_called_once_with("hello")


def test_send_without_callback():
    send(None, "ignored")
