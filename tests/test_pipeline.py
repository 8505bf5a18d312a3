"""Tests for a full detection cycle."""

import functools
from unittest.mock import MagicMock, patch

import pytest

from arrival_monitor import config, db
from arrival_monitor.lock import DistributedLock
from arrival_monitor.notifier import notify_new_arrivals
from arrival_monitor.pipeline import RunSummary, run_notify_job, run_stock_check
from arrival_monitor.scraper import Snapshot
from arrival_monitor.utils import FetchError


@pytest.fixture
def fetch():
    with patch("arrival_monitor.pipeline.fetch_snapshot") as mock:
        yield mock


class TestRunStockCheck:
    def test_detects_and_notifies(self, fetch, make_snapshot):
        fetch.return_value = make_snapshot("a", "b")
        notify = MagicMock(side_effect=lambda arrivals: [a.product_id for a in arrivals])

        summary = run_stock_check(notify=notify)

        assert summary.to_dict() == {"productsFound": 2, "newArrivalsDetected": 2, "productsNotified": 2}
        [arrivals], _ = notify.call_args
        assert [a.external_id for a in arrivals] == ["a", "b"]

    def test_lock_released_before_notify(self, fetch, make_snapshot):
        fetch.return_value = make_snapshot("a")
        seen = []

        def notify(arrivals):
            seen.append(DistributedLock().try_acquire(config.LOCK_KEY))
            return []

        run_stock_check(notify=notify)

        assert seen == [True]

    def test_no_arrivals_skips_notify(self, fetch, make_snapshot):
        fetch.return_value = make_snapshot("a")
        run_stock_check(notify=lambda arrivals: [])
        notify = MagicMock()

        summary = run_stock_check(notify=notify)

        notify.assert_not_called()
        assert summary.new_arrivals_detected == 0

    def test_skipped_when_lock_held(self, fetch):
        DistributedLock().try_acquire(config.LOCK_KEY)

        summary = run_stock_check(notify=MagicMock())

        assert summary.skipped
        assert summary.to_dict() == {"skipped": True, "reason": "lock-not-acquired"}
        fetch.assert_not_called()

    def test_dry_run_does_not_notify(self, fetch, make_snapshot):
        fetch.return_value = make_snapshot("a", "b")
        notify = MagicMock()

        out = run_stock_check(dry_run=True, notify=notify).to_dict()

        notify.assert_not_called()
        assert out["dryRun"] is True
        assert out["productsNotified"] == 0
        assert [p["external_id"] for p in out["products"]] == ["a", "b"]
        assert [a["external_id"] for a in out["newArrivals"]] == ["a", "b"]
        # detection is still recorded
        assert db.get_product_stats()["total_products"] == 2

    def test_not_modified(self, fetch):
        fetch.return_value = Snapshot(not_modified=True)

        out = run_stock_check(notify=MagicMock()).to_dict()

        assert out == {"productsFound": 0, "newArrivalsDetected": 0, "productsNotified": 0, "notModified": True}

    def test_fetch_error_propagates_and_releases_lock(self, fetch):
        fetch.side_effect = FetchError("upstream down", status=503)

        with pytest.raises(FetchError):
            run_stock_check(notify=MagicMock())

        assert DistributedLock().try_acquire(config.LOCK_KEY)

    def test_end_to_end_with_real_fan_out(self, fetch, make_snapshot, add_user, email_sender, sms_sender):
        add_user("fan@example.com")
        notify = functools.partial(notify_new_arrivals, email_sender=email_sender, sms_sender=sms_sender)

        fetch.return_value = make_snapshot("a", "b")
        first = run_stock_check(notify=notify)
        fetch.return_value = make_snapshot("c", "a", "b")
        second = run_stock_check(notify=notify)

        assert first.products_notified == 2
        assert second.new_arrivals_detected == 1
        assert second.products_notified == 1
        assert len(email_sender.sent) == 2
        assert db.get_product_stats() == {"total_products": 3, "pending_notifications": 0}


class TestRunNotifyJob:
    def test_notifies_stored_products(self, make_snapshot, add_user, email_sender, sms_sender):
        from arrival_monitor.differ import sync_and_detect

        arrivals = sync_and_detect(make_snapshot("a", "b"))
        add_user("job@example.com")
        ids = [a.product_id for a in arrivals]

        result = run_notify_job(ids + [9999], email_sender=email_sender, sms_sender=sms_sender)

        assert result == {"productsFound": 2, "notified": 2, "notifiedProductIds": ids}

    def test_unknown_ids(self):
        assert run_notify_job([12345]) == {"productsFound": 0, "notified": 0, "notifiedProductIds": []}


class TestRunSummary:
    def test_defaults(self):
        assert RunSummary().to_dict() == {"productsFound": 0, "newArrivalsDetected": 0, "productsNotified": 0}
