from __future__ import annotations

import argparse
import json
import logging
import smtplib
import threading
import time
from typing import List, Optional

import requests

from . import config, db, pipeline
from .emailer import EmailConfigurationError, create_email_sender_from_env
from .notifier import load_recipients
from .scraper import NewProduct
from .server import CronServer
from .sms import SmsConfigurationError, SmsDeliveryError, create_sms_sender_from_env
from .utils import HTTPError

TEST_SMS_BODY = (
    "Test SMS from the new arrival monitor. "
    "If you can read this, SMS notifications are working."
)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def scheduler_loop(stop: Optional[threading.Event] = None) -> None:
    """Run the stock check every SCHEDULE_INTERVAL_SECONDS until `stop` is set."""
    logger = logging.getLogger(__name__)
    stop = stop or threading.Event()
    logger.info("Starting scheduler loop (interval=%ss)", config.SCHEDULE_INTERVAL_SECONDS)
    while not stop.is_set():
        try:
            summary = pipeline.run_stock_check()
            logger.info("Scheduled run: %s", summary.to_dict())
        except Exception:
            logger.exception("Error in scheduled stock check")
        stop.wait(config.SCHEDULE_INTERVAL_SECONDS)


def serve() -> None:
    """Start the cron endpoints (and the optional in-process scheduler)."""
    config.validate()
    logger = logging.getLogger(__name__)

    logger.info("Initializing database…")
    db.init_db()

    server = CronServer()
    server.start()

    if config.ENABLE_SCHEDULER:
        t_sched = threading.Thread(target=scheduler_loop, name="scheduler", daemon=True)
        t_sched.start()
    else:
        logger.info("In-process scheduler disabled; waiting for external cron calls.")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Stopping…")
        server.stop()


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _sample_product() -> NewProduct:
    return NewProduct(
        external_id="test-product",
        name="Test Jellycat Product",
        url=config.TARGET_URL,
        image_url=None,
        position=0,
    )


def send_test_email(address: str) -> int:
    """Send a sample new-arrival email through the configured SMTP account."""
    try:
        create_email_sender_from_env().send(address, [_sample_product()])
    except EmailConfigurationError as e:
        _print({
            "error": f"Failed to send test email: {e}",
            "hint": "Set EMAIL_USERNAME, EMAIL_PASSWORD and EMAIL_FROM in your .env file",
        })
        return 2
    except (smtplib.SMTPException, OSError) as e:
        _print({"error": f"Failed to send test email: {e}"})
        return 1
    _print({"success": True, "message": f"Test email sent to {address}"})
    return 0


def send_test_sms(phone_number: str) -> int:
    """Send a test SMS through the configured provider."""
    try:
        create_sms_sender_from_env().send(phone_number, TEST_SMS_BODY)
    except SmsConfigurationError as e:
        _print({
            "error": f"Failed to send test SMS: {e}",
            "hint": "Make sure CLICK_SEND_API_KEY is set in your .env file",
        })
        return 2
    except (SmsDeliveryError, HTTPError, requests.RequestException) as e:
        _print({"error": f"Failed to send test SMS: {e}"})
        return 1
    _print({"success": True, "message": f"Test SMS sent to {phone_number}"})
    return 0


def diagnose() -> dict:
    """Who would be notified right now, and how many products are waiting."""
    logger = logging.getLogger(__name__)
    recipients = load_recipients()
    active = [r for r in recipients if r.is_active]
    stats = db.get_product_stats()

    if not active:
        logger.warning("No active recipients: nobody would receive notifications")
    elif stats["pending_notifications"]:
        logger.info("%d pending products ready to notify", stats["pending_notifications"])

    return {
        "recipients": len(recipients),
        "activeRecipients": [
            {"userId": r.user_id, "email": r.email, "emailEnabled": r.email_enabled, "sms": r.can_send_sms}
            for r in active
        ],
        "totalProducts": stats["total_products"],
        "pendingProducts": stats["pending_notifications"],
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="arrival-monitor", description="New-arrival monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="run the cron trigger endpoints")

    check = sub.add_parser("check", help="run one stock check now")
    check.add_argument("--dry-run", action="store_true", help="detect but do not notify")

    notify = sub.add_parser("notify", help="notify for stored product ids")
    notify.add_argument("product_ids", nargs="+", type=int)

    sub.add_parser("reset-notified", help="mark every product as not yet notified")

    recent = sub.add_parser("recent", help="list recently detected products")
    recent.add_argument("--limit", type=int, default=20)

    test_email = sub.add_parser("test-email", help="send a sample new-arrival email")
    test_email.add_argument("address")

    test_sms = sub.add_parser("test-sms", help="send a test SMS (E.164 number)")
    test_sms.add_argument("phone_number")

    sub.add_parser("diagnose", help="show active recipients and pending products")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Initialise and dispatch the requested command."""
    args = _build_parser().parse_args(argv)
    setup_logging()
    command = args.command or "serve"

    if command == "serve":
        serve()
        return 0

    db.init_db()
    if command == "check":
        summary = pipeline.run_stock_check(dry_run=args.dry_run)
        _print(summary.to_dict())
        return 1 if summary.skipped else 0
    if command == "test-email":
        return send_test_email(args.address)
    if command == "test-sms":
        return send_test_sms(args.phone_number)
    if command == "notify":
        _print(pipeline.run_notify_job(args.product_ids))
    elif command == "reset-notified":
        count = db.reset_notified()
        _print({"reset": count})
    elif command == "diagnose":
        _print(diagnose())
    elif command == "recent":
        _print([
            {"id": p.id, "name": p.name, "url": p.url, "createdAt": p.created_at, "notifiedAt": p.notified_at}
            for p in db.get_recent_arrivals(args.limit)
        ])
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
