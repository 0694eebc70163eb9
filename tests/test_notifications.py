"""
Tests for privilegeflow.notifications -- dispatcher contract.
"""

import logging

import pytest

from privilegeflow.notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationKind,
    RecordingDispatcher,
)


class _Failing(NotificationDispatcher):
    def send(self, notification):
        raise ConnectionError("gateway unreachable")


class TestDispatchers:
    def test_recording_dispatcher_keeps_order(self):
        d = RecordingDispatcher()
        assert d.notify(NotificationKind.APPROVAL_REQUIRED, "sec_ortho", {"request_id": "r1"}) is True
        d.notify(NotificationKind.REJECTION, "dr_ortho")
        assert [n.kind for n in d.sent] == [NotificationKind.APPROVAL_REQUIRED, NotificationKind.REJECTION]
        assert d.for_recipient("dr_ortho")[0].context == {}
        assert len(d.of_kind(NotificationKind.APPROVAL_REQUIRED)) == 1
        d.clear()
        assert d.sent == []

    def test_failure_is_logged_and_swallowed(self, caplog):
        with caplog.at_level(logging.WARNING, logger="privilegeflow.notifications"):
            assert _Failing().notify(NotificationKind.REVIEW_REMINDER, "hod_ortho") is False
        assert "REVIEW_REMINDER" in caplog.text

    def test_logging_dispatcher_logs(self, caplog):
        with caplog.at_level(logging.INFO, logger="privilegeflow.notifications"):
            assert LoggingDispatcher().notify(NotificationKind.APPROVAL_COMPLETE, "dr_ortho") is True
        assert "dr_ortho" in caplog.text

    def test_base_dispatcher_send_is_abstract(self):
        with pytest.raises(NotImplementedError):
            NotificationDispatcher().send(None)
