"""New-arrival detection.

A product is a *new arrival* when its external id has never been stored
before.  Position changes and metadata edits on products we already know
never count: detection is a set difference on external ids, not a field
comparison.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import List, Optional

from . import config, db
from .scraper import Snapshot

logger = logging.getLogger(__name__)


@dataclass
class NewArrival:
    product_id: int
    external_id: str
    name: str
    url: str
    image_url: Optional[str]
    detected_at: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_record(cls, record: db.ProductRecord) -> "NewArrival":
        return cls(
            product_id=record.id,
            external_id=record.external_id,
            name=record.name,
            url=record.url,
            image_url=record.image_url,
            detected_at=record.created_at,
        )


def sync_and_detect(snapshot: Snapshot, *, limit: Optional[int] = None) -> List[NewArrival]:
    """
    Upsert the top of `snapshot` and return the products never seen before.

    Read, diff, upsert and re-read all run in one write transaction, so a
    concurrent run either sees our committed rows as existing or waits for
    us; the unique external_id plus ON CONFLICT keeps inserts single.
    """
    limit = config.MAX_TRACKED_PRODUCTS if limit is None else limit
    top = snapshot.products[:limit]
    if not top:
        return []

    external_ids = [p.external_id for p in top]

    with db.transaction() as conn:
        existing = db.get_products_by_external_ids(external_ids, conn=conn)
        known = {p.external_id for p in existing}
        fresh = []
        for p in top:
            if p.external_id not in known:
                known.add(p.external_id)
                fresh.append(p)

        db.upsert_products(top, checked_at=snapshot.fetched_at, conn=conn)

        if not fresh:
            logger.info("Synced %d products; no new arrivals", len(top))
            return []

        inserted = {
            r.external_id: r
            for r in db.get_products_by_external_ids([p.external_id for p in fresh], conn=conn)
        }

        arrivals: List[NewArrival] = []
        for p in fresh:
            record = inserted.get(p.external_id)
            if record is None:
                raise RuntimeError(f"Upserted product {p.external_id!r} missing on re-read")
            arrivals.append(NewArrival.from_record(record))

    logger.info("Synced %d products; %d new arrivals", len(top), len(arrivals))
    return arrivals


__all__ = ["NewArrival", "sync_and_detect"]
