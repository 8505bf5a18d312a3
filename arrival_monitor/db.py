"""SQLite persistence layer for the new-arrivals monitor.

Owns the ``products``, ``scraper_state`` and ``job_locks`` tables.  The
``users`` / ``notification_preferences`` / ``teams`` / ``team_members``
tables belong to the account side of the application and are only read
here; :func:`init_db` creates them so a standalone deployment works.
"""

from __future__ import annotations

import datetime as _dt
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator, List, Optional, Sequence, Set

from . import config

if TYPE_CHECKING:
    from .scraper import NewProduct


@dataclass
class ProductRecord:
    id: int
    external_id: str
    name: str
    url: str
    image_url: Optional[str]
    last_known_stock: bool
    last_checked_at: Optional[str]
    created_at: str
    updated_at: str
    notified_at: Optional[str]


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def to_iso(value: _dt.datetime) -> str:
    # Fixed width so stored timestamps sort lexicographically.
    return value.astimezone(_dt.timezone.utc).isoformat(timespec="microseconds")


def _get_connection() -> sqlite3.Connection:
    Path(config.SQLITE_DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    # Autocommit mode; multi-statement work goes through transaction().
    conn = sqlite3.connect(
        config.SQLITE_DB_PATH,
        timeout=config.SQLITE_BUSY_TIMEOUT,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def connect() -> Iterator[sqlite3.Connection]:
    """Yield an autocommit connection and close it afterwards."""
    conn = _get_connection()
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run the block inside one write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so two
    concurrent transactions touching ``products`` are serialised rather
    than both reading the same "before" state.  Any exception rolls the
    whole block back.
    """
    conn = _get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def _using(conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
    if conn is not None:
        yield conn
        return
    with connect() as own:
        yield own


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


def _row_to_product(row: sqlite3.Row) -> ProductRecord:
    return ProductRecord(
        id=int(row["id"]),
        external_id=row["external_id"],
        name=row["name"],
        url=row["url"],
        image_url=row["image_url"],
        last_known_stock=bool(row["last_known_stock"]),
        last_checked_at=row["last_checked_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        notified_at=row["notified_at"],
    )


def _optional_bool(value) -> Optional[bool]:
    return None if value is None else bool(value)


def init_db() -> None:
    """Create tables if they don't exist."""
    with connect() as conn:
        conn.executescript("""
          CREATE TABLE IF NOT EXISTS products (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            external_id      TEXT NOT NULL UNIQUE,
            name             TEXT NOT NULL,
            url              TEXT NOT NULL,
            image_url        TEXT,
            last_known_stock INTEGER NOT NULL DEFAULT 1,
            last_checked_at  TEXT,
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL,
            notified_at      TEXT
          );

          CREATE TABLE IF NOT EXISTS scraper_state (
            key           TEXT PRIMARY KEY,
            etag          TEXT,
            last_modified TEXT,
            updated_at    TEXT NOT NULL
          );

          CREATE TABLE IF NOT EXISTS job_locks (
            lock_id     INTEGER PRIMARY KEY,
            owner       TEXT NOT NULL,
            acquired_at REAL NOT NULL,
            expires_at  REAL NOT NULL
          );

          CREATE TABLE IF NOT EXISTS users (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            email      TEXT NOT NULL UNIQUE,
            deleted_at TEXT
          );

          CREATE TABLE IF NOT EXISTS notification_preferences (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id       INTEGER NOT NULL UNIQUE REFERENCES users(id),
            email_enabled INTEGER,
            sms_enabled   INTEGER,
            phone_number  TEXT,
            updated_at    TEXT
          );

          CREATE TABLE IF NOT EXISTS teams (
            id                  INTEGER PRIMARY KEY AUTOINCREMENT,
            name                TEXT NOT NULL,
            subscription_status TEXT,
            plan_name           TEXT
          );

          CREATE TABLE IF NOT EXISTS team_members (
            id      INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES users(id),
            team_id INTEGER NOT NULL REFERENCES teams(id)
          );

          CREATE INDEX IF NOT EXISTS idx_products_created_at ON products(created_at);
          CREATE INDEX IF NOT EXISTS idx_team_members_user ON team_members(user_id);
        """)


# ---- scraper_state -----------------------------------------------------------

def get_request_state(key: str) -> Optional[dict]:
    """Return the stored validators for `key` or None."""
    with connect() as conn:
        row = conn.execute(
            "SELECT key, etag, last_modified, updated_at FROM scraper_state WHERE key = ? LIMIT 1",
            (key,),
        ).fetchone()
    return dict(row) if row else None


def upsert_request_state(key: str, etag: Optional[str], last_modified: Optional[str]) -> None:
    now = to_iso(utcnow())
    with connect() as conn:
        conn.execute("""
            INSERT INTO scraper_state (key, etag, last_modified, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
              etag          = excluded.etag,
              last_modified = excluded.last_modified,
              updated_at    = excluded.updated_at
        """, (key, etag, last_modified, now))


# ---- products ----------------------------------------------------------------

def get_products_by_external_ids(
    external_ids: Sequence[str], conn: Optional[sqlite3.Connection] = None
) -> List[ProductRecord]:
    if not external_ids:
        return []
    ids = list(external_ids)
    with _using(conn) as c:
        rows = c.execute(
            f"SELECT * FROM products WHERE external_id IN ({_placeholders(ids)})",
            ids,
        ).fetchall()
    return [_row_to_product(r) for r in rows]


def get_products_by_ids(
    product_ids: Sequence[int], conn: Optional[sqlite3.Connection] = None
) -> List[ProductRecord]:
    if not product_ids:
        return []
    ids = [int(i) for i in product_ids]
    with _using(conn) as c:
        rows = c.execute(
            f"SELECT * FROM products WHERE id IN ({_placeholders(ids)}) ORDER BY id",
            ids,
        ).fetchall()
    return [_row_to_product(r) for r in rows]


def upsert_products(
    products: Iterable["NewProduct"],
    checked_at: _dt.datetime,
    conn: Optional[sqlite3.Connection] = None,
) -> None:
    """
    Insert new products or refresh existing ones, keyed on external_id.
    created_at is only written by the insert path; notified_at is never touched.
    """
    now = to_iso(checked_at)
    rows = [
        (p.external_id, p.name, p.url, p.image_url, now, now, now)
        for p in products
    ]
    if not rows:
        return

    with _using(conn) as c:
        c.executemany("""
            INSERT INTO products (
              external_id, name, url, image_url,
              last_known_stock, last_checked_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 1, ?, ?, ?)
            ON CONFLICT(external_id) DO UPDATE SET
              name             = excluded.name,
              url              = excluded.url,
              image_url        = excluded.image_url,
              last_known_stock = excluded.last_known_stock,
              last_checked_at  = excluded.last_checked_at,
              updated_at       = excluded.updated_at
        """, rows)


def get_pending_product_ids(product_ids: Sequence[int]) -> Set[int]:
    """Subset of `product_ids` whose notified_at is still NULL."""
    if not product_ids:
        return set()
    ids = [int(i) for i in product_ids]
    with connect() as conn:
        rows = conn.execute(
            f"SELECT id FROM products WHERE id IN ({_placeholders(ids)}) AND notified_at IS NULL",
            ids,
        ).fetchall()
    return {int(r["id"]) for r in rows}


def mark_notified(product_ids: Sequence[int], notified_at: Optional[_dt.datetime] = None) -> int:
    """Stamp notified_at on still-pending products. Returns rows changed."""
    if not product_ids:
        return 0
    ids = [int(i) for i in product_ids]
    stamp = to_iso(notified_at or utcnow())
    with connect() as conn:
        cur = conn.execute(
            f"""
            UPDATE products
               SET notified_at = ?
             WHERE id IN ({_placeholders(ids)})
               AND notified_at IS NULL
            """,
            [stamp, *ids],
        )
        return cur.rowcount


def claim_notified(product_ids: Sequence[int], notified_at: Optional[_dt.datetime] = None) -> List[int]:
    """Stamp still-pending products and return the ids this call stamped."""
    if not product_ids:
        return []
    ids = [int(i) for i in product_ids]
    stamp = to_iso(notified_at or utcnow())
    with transaction() as conn:
        rows = conn.execute(
            f"SELECT id FROM products WHERE id IN ({_placeholders(ids)}) AND notified_at IS NULL",
            ids,
        ).fetchall()
        claimed = [int(r["id"]) for r in rows]
        if claimed:
            conn.execute(
                f"UPDATE products SET notified_at = ? WHERE id IN ({_placeholders(claimed)})",
                [stamp, *claimed],
            )
    return claimed


def reset_notified() -> int:
    """Operator action: make every notified product pending again."""
    with connect() as conn:
        cur = conn.execute(
            "UPDATE products SET notified_at = NULL WHERE notified_at IS NOT NULL"
        )
        return cur.rowcount


def get_recent_arrivals(limit: int = 40) -> List[ProductRecord]:
    """Most recently first-seen products."""
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT * FROM products
            WHERE last_checked_at IS NOT NULL
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    return [_row_to_product(r) for r in rows]


def get_product_stats() -> dict:
    with connect() as conn:
        row = conn.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN notified_at IS NULL THEN 1 ELSE 0 END) AS pending
            FROM products
            """
        ).fetchone()
    return {"total_products": int(row["total"] or 0), "pending_notifications": int(row["pending"] or 0)}


# ---- recipients --------------------------------------------------------------

def get_notification_recipient_rows() -> List[dict]:
    """
    One row per (user, team membership) for every non-deleted user.
    Users without a preferences row or a team still appear, with NULLs.
    """
    with connect() as conn:
        rows = conn.execute("""
            SELECT u.id                  AS user_id,
                   u.email               AS email,
                   np.email_enabled      AS email_enabled,
                   np.sms_enabled        AS sms_enabled,
                   np.phone_number       AS phone_number,
                   t.subscription_status AS subscription_status,
                   t.plan_name           AS plan_name
              FROM users u
              LEFT JOIN notification_preferences np ON np.user_id = u.id
              LEFT JOIN team_members tm ON tm.user_id = u.id
              LEFT JOIN teams t ON t.id = tm.team_id
             WHERE u.deleted_at IS NULL
             ORDER BY u.id
        """).fetchall()

    return [
        {
            "user_id": int(r["user_id"]),
            "email": r["email"],
            "email_enabled": _optional_bool(r["email_enabled"]),
            "sms_enabled": _optional_bool(r["sms_enabled"]),
            "phone_number": r["phone_number"],
            "subscription_status": r["subscription_status"],
            "plan_name": r["plan_name"],
        }
        for r in rows
    ]


__all__ = [
    "ProductRecord",
    "utcnow",
    "to_iso",
    "connect",
    "transaction",
    "init_db",
    "get_request_state",
    "upsert_request_state",
    "get_products_by_external_ids",
    "get_products_by_ids",
    "upsert_products",
    "get_pending_product_ids",
    "mark_notified",
    "claim_notified",
    "reset_notified",
    "get_recent_arrivals",
    "get_product_stats",
    "get_notification_recipient_rows",
]
