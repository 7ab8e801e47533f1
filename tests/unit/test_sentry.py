"""Tests for Sentry wiring."""

from unittest.mock import patch
from uuid import uuid4

from jobq.core import sentry
from jobq.jobs.errors import PermanentJobError


def test_init_without_dsn_is_noop(settings):
    with patch("jobq.core.sentry.sentry_sdk.init") as init:
        assert sentry.init_sentry(settings) is False
    init.assert_not_called()


def test_before_send_drops_permanent_errors():
    error = PermanentJobError("bad payload")
    hint = {"exc_info": (type(error), error, None)}

    assert sentry._before_send({"event_id": "1"}, hint) is None


def test_before_send_keeps_crashes():
    error = RuntimeError("handler crashed")
    event = {"event_id": "1"}

    assert sentry._before_send(event, {"exc_info": (type(error), error, None)}) is event
    assert sentry._before_send(event, {}) is event


def test_capture_skipped_when_disabled():
    with patch.object(sentry, "_enabled", False), patch(
        "jobq.core.sentry.sentry_sdk.capture_exception"
    ) as capture:
        sentry.capture_handler_exception(RuntimeError("x"), uuid4(), "emails", 1)
    capture.assert_not_called()


def test_capture_tags_job(settings):
    with patch.object(sentry, "_enabled", True), patch(
        "jobq.core.sentry.sentry_sdk.capture_exception"
    ) as capture:
        error = RuntimeError("x")
        sentry.capture_handler_exception(error, uuid4(), "emails", 2)
    capture.assert_called_once_with(error)
