"""Scheduler entrypoint: fetch, detect and notify once.

Flow:
  1. Take the job lock (skip the cycle if another run holds it)
  2. Fetch the monitored page (conditional GET)
  3. Upsert the snapshot and detect new arrivals in one transaction
  4. Release the lock
  5. Notify subscribers in-process (idempotent via products.notified_at)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import requests

from . import config, db
from .differ import NewArrival, sync_and_detect
from .lock import DistributedLock
from .notifier import notify_new_arrivals
from .scraper import NewProduct, fetch_snapshot

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    skipped: bool = False
    not_modified: bool = False
    dry_run: bool = False
    products_found: int = 0
    new_arrivals_detected: int = 0
    products_notified: int = 0
    products: List[NewProduct] = field(default_factory=list)
    new_arrivals: List[NewArrival] = field(default_factory=list)

    def to_dict(self) -> dict:
        if self.skipped:
            return {"skipped": True, "reason": "lock-not-acquired"}
        out = {
            "productsFound": self.products_found,
            "newArrivalsDetected": self.new_arrivals_detected,
            "productsNotified": self.products_notified,
        }
        if self.not_modified:
            out["notModified"] = True
        if self.dry_run:
            out["dryRun"] = True
            out["products"] = [p.to_dict() for p in self.products]
            out["newArrivals"] = [a.to_dict() for a in self.new_arrivals]
        return out


def run_stock_check(
    *,
    dry_run: bool = False,
    session: Optional[requests.Session] = None,
    lock: Optional[DistributedLock] = None,
    notify: Callable[[Sequence[NewArrival]], List[int]] = notify_new_arrivals,
) -> RunSummary:
    """Run one detection cycle. `dry_run` fetches and diffs but never notifies."""
    lock = lock or DistributedLock()
    started = time.monotonic()

    try:
        with lock.hold(config.LOCK_KEY) as acquired:
            if not acquired:
                logger.warning("Lock not acquired - previous run may still be executing")
                return RunSummary(skipped=True)

            snapshot = fetch_snapshot(session)
            if snapshot.not_modified:
                return RunSummary(not_modified=True, dry_run=dry_run)

            logger.info("Found %d products in snapshot", len(snapshot.products))
            arrivals = sync_and_detect(snapshot)
            logger.info("Detected %d new arrivals", len(arrivals))
            for a in arrivals:
                logger.info("New arrival: %s (id=%s, %s)", a.name, a.product_id, a.url)
    finally:
        logger.info("Detection finished in %.0fms", (time.monotonic() - started) * 1000)

    summary = RunSummary(
        dry_run=dry_run,
        products_found=len(snapshot.products),
        new_arrivals_detected=len(arrivals),
    )
    if dry_run:
        logger.info("Dry run - skipping notifications")
        summary.products = snapshot.products
        summary.new_arrivals = arrivals
        return summary

    if arrivals:
        summary.products_notified = len(notify(arrivals))
    return summary


def run_notify_job(product_ids: Sequence[int], **notify_kwargs) -> dict:
    """Notify for already-detected products, looked up by id."""
    records = db.get_products_by_ids(product_ids)
    if not records:
        logger.info("No products found for ids %s", list(product_ids))
        return {"productsFound": 0, "notified": 0, "notifiedProductIds": []}

    arrivals = [NewArrival.from_record(r) for r in records]
    notified_ids = notify_new_arrivals(arrivals, **notify_kwargs)
    return {
        "productsFound": len(records),
        "notified": len(notified_ids),
        "notifiedProductIds": notified_ids,
    }


__all__ = ["RunSummary", "run_stock_check", "run_notify_job"]
