"""New-arrival fan-out.

Every active recipient gets one email and/or one SMS listing all pending
arrivals of the run. Sends run concurrently; a failing recipient or channel
is logged and skipped, and the products are marked notified afterwards no
matter what, so a permanently broken address cannot cause endless resends.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import config, db
from .differ import NewArrival
from .emailer import EmailSender, create_email_sender_from_env
from .guards import can_use_sms
from .sms import SmsSender, build_sms_body, create_sms_sender_from_env

logger = logging.getLogger(__name__)


@dataclass
class Recipient:
    user_id: int
    email: str
    email_enabled: bool = True
    sms_enabled: bool = False
    phone_number: Optional[str] = None
    subscription_status: Optional[str] = None
    plan_name: Optional[str] = None

    @property
    def can_send_sms(self) -> bool:
        return (
            self.sms_enabled
            and bool(self.phone_number)
            and can_use_sms(self.subscription_status, self.plan_name)
        )

    @property
    def is_active(self) -> bool:
        return self.email_enabled or self.can_send_sms


def _recipient_from_row(row: dict) -> Recipient:
    # No preferences row yet: email on, SMS off.
    email_enabled = row.get("email_enabled")
    sms_enabled = row.get("sms_enabled")
    return Recipient(
        user_id=row["user_id"],
        email=row["email"],
        email_enabled=True if email_enabled is None else bool(email_enabled),
        sms_enabled=bool(sms_enabled),
        phone_number=row.get("phone_number") or None,
        subscription_status=row.get("subscription_status"),
        plan_name=row.get("plan_name"),
    )


def load_recipients(rows: Optional[Iterable[dict]] = None) -> List[Recipient]:
    """
    Collapse the users x team memberships join into one Recipient per user.
    A user in several teams keeps the membership that allows SMS, if any.
    """
    if rows is None:
        rows = db.get_notification_recipient_rows()

    by_user: Dict[int, Recipient] = {}
    for row in rows:
        candidate = _recipient_from_row(row)
        current = by_user.get(candidate.user_id)
        if current is None or (candidate.can_send_sms and not current.can_send_sms):
            by_user[candidate.user_id] = candidate
    return list(by_user.values())


def _pending_arrivals(new_arrivals: Sequence[NewArrival]) -> List[NewArrival]:
    """Idempotency gate: keep arrivals whose product is not yet marked notified."""
    pending_ids = db.get_pending_product_ids([a.product_id for a in new_arrivals])
    pending: List[NewArrival] = []
    seen: set[int] = set()
    for a in new_arrivals:
        if a.product_id in pending_ids and a.product_id not in seen:
            seen.add(a.product_id)
            pending.append(a)
    return pending


def _build_jobs(
    recipients: Sequence[Recipient],
    arrivals: Sequence[NewArrival],
    email_sender: EmailSender,
    sms_sender: SmsSender,
) -> List[Tuple[str, Callable[[], None]]]:
    sms_body = build_sms_body(arrivals)
    jobs: List[Tuple[str, Callable[[], None]]] = []
    for r in recipients:
        if r.email_enabled:
            jobs.append((f"email to {r.email}", lambda r=r: email_sender.send(r.email, arrivals)))
        if r.can_send_sms:
            jobs.append((f"SMS to {r.phone_number}", lambda r=r: sms_sender.send(r.phone_number, sms_body)))
    return jobs


def notify_new_arrivals(
    new_arrivals: Sequence[NewArrival],
    *,
    email_sender: Optional[EmailSender] = None,
    sms_sender: Optional[SmsSender] = None,
    max_workers: Optional[int] = None,
) -> List[int]:
    """Fan the pending arrivals out to every active recipient.

    Returns the product ids marked notified by this call (empty when nothing
    was pending or nobody is subscribed).
    """
    if not new_arrivals:
        logger.info("No new arrivals to notify")
        return []

    pending = _pending_arrivals(new_arrivals)
    logger.info(
        "%d of %d arrivals pending notification (%d already notified)",
        len(pending), len(new_arrivals), len(new_arrivals) - len(pending),
    )
    if not pending:
        return []

    recipients = [r for r in load_recipients() if r.is_active]
    if not recipients:
        logger.warning("No active recipients found - skipping notifications")
        return []

    email_sender = email_sender or create_email_sender_from_env()
    sms_sender = sms_sender or create_sms_sender_from_env()
    jobs = _build_jobs(recipients, pending, email_sender, sms_sender)

    logger.info(
        "Sending %d notifications to %d recipients (%d products each)",
        len(jobs), len(recipients), len(pending),
    )

    failed = 0
    workers = max(1, min(max_workers or config.NOTIFY_MAX_WORKERS, len(jobs) or 1))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify") as pool:
        futures = {pool.submit(fn): label for label, fn in jobs}
        for future in as_completed(futures):
            label = futures[future]
            try:
                future.result()
            except Exception as e:
                failed += 1
                logger.error("Failed to send %s: %s", label, e, exc_info=True)
            else:
                logger.debug("Sent %s", label)

    logger.info("Notification results: %d succeeded, %d failed", len(jobs) - failed, failed)

    # Mark even when some sends failed; failures are not retried.
    claimed = set(db.claim_notified([a.product_id for a in pending]))
    notified_ids = [a.product_id for a in pending if a.product_id in claimed]
    if len(notified_ids) < len(pending):
        logger.info("%d products were marked by a concurrent run", len(pending) - len(notified_ids))
    logger.info("Marked %d products as notified", len(notified_ids))
    return notified_ids


__all__ = ["Recipient", "load_recipients", "notify_new_arrivals"]
