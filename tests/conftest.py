"""Shared fixtures: a throwaway SQLite database and fake notification senders."""

import datetime as dt
import threading

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from arrival_monitor import config, db
from arrival_monitor.emailer import EmailSender
from arrival_monitor.scraper import NewProduct, Snapshot
from arrival_monitor.sms import SmsSender


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """Every test gets its own initialised database file."""
    monkeypatch.setattr(config, "SQLITE_DB_PATH", str(tmp_path / "monitor.db"))
    db.init_db()
    return tmp_path / "monitor.db"


def _response(status, body="", headers=None):
    resp = requests.Response()
    resp.status_code = status
    resp._content = body.encode("utf-8") if isinstance(body, str) else body
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.encoding = "utf-8"
    resp.url = config.TARGET_URL
    return resp


@pytest.fixture
def make_response():
    return _response


def _snapshot(*external_ids, fetched_at=None, names=None):
    names = names or {}
    products = [
        NewProduct(
            external_id=eid,
            name=names.get(eid, f"Product {eid}"),
            url=f"https://jellycat.com/{eid}/",
            image_url=f"https://cdn.example.com/{eid}.jpg",
            position=i,
        )
        for i, eid in enumerate(external_ids)
    ]
    return Snapshot(
        products=products,
        fetched_at=fetched_at or dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc),
    )


@pytest.fixture
def make_snapshot():
    return _snapshot


@pytest.fixture
def add_user():
    """Insert a user, optional preferences row and optional team membership."""

    def _add(
        email,
        *,
        email_enabled=None,
        sms_enabled=None,
        phone_number=None,
        subscription_status=None,
        plan_name=None,
        deleted=False,
    ):
        with db.connect() as conn:
            cur = conn.execute(
                "INSERT INTO users (email, deleted_at) VALUES (?, ?)",
                (email, "2026-01-01T00:00:00.000000+00:00" if deleted else None),
            )
            user_id = cur.lastrowid
            if email_enabled is not None or sms_enabled is not None or phone_number is not None:
                conn.execute(
                    """
                    INSERT INTO notification_preferences (user_id, email_enabled, sms_enabled, phone_number)
                    VALUES (?, ?, ?, ?)
                    """,
                    (user_id, email_enabled, sms_enabled, phone_number),
                )
            if subscription_status is not None or plan_name is not None:
                team = conn.execute(
                    "INSERT INTO teams (name, subscription_status, plan_name) VALUES (?, ?, ?)",
                    (f"team of {email}", subscription_status, plan_name),
                )
                conn.execute(
                    "INSERT INTO team_members (user_id, team_id) VALUES (?, ?)",
                    (user_id, team.lastrowid),
                )
        return user_id

    return _add


class RecordingEmailSender(EmailSender):
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self._lock = threading.Lock()

    def send(self, to, products):
        if to in self.fail_for:
            raise RuntimeError(f"mailbox unavailable: {to}")
        with self._lock:
            self.sent.append((to, [p.product_id for p in products]))


class RecordingSmsSender(SmsSender):
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self._lock = threading.Lock()

    def send(self, to, body):
        if to in self.fail_for:
            raise RuntimeError(f"invalid phone number: {to}")
        with self._lock:
            self.sent.append((to, body))


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture
def failing_senders():
    def _make(emails=(), phones=()):
        return RecordingEmailSender(fail_for=emails), RecordingSmsSender(fail_for=phones)

    return _make
