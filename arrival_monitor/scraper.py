from __future__ import annotations

import datetime as _dt
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag
from urllib.parse import urljoin, urlparse

from . import config, db
from .utils import FetchError, fetch_with_backoff, get_http_session

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
MIN_NAME_LENGTH = 2

# Paths on the monitored site that wrap images but are not product pages.
_NON_PRODUCT_PATHS = {"/", "/new", "/shop-all", "/login.php"}
_NON_PRODUCT_PREFIXES = ("/collections/", "/category/", "/about", "/help")

_DIGIT = re.compile(r"\d")


@dataclass
class NewProduct:
    external_id: str
    name: str
    url: str
    image_url: Optional[str]
    position: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Snapshot:
    products: List[NewProduct] = field(default_factory=list)
    fetched_at: _dt.datetime = field(default_factory=db.utcnow)
    not_modified: bool = False


# (html, base_url) -> products in document order.
PageParser = Callable[[str, str], List[NewProduct]]


def extract_external_id(url: str) -> str:
    """
    Use the last URL path segment as a stable id. If the segment ends with a
    hyphenated SKU-ish token that includes a digit, use that token instead.

    https://jellycat.com/heart-dragon/                      -> heart-dragon
    https://www.jellycat.com/eu/amuseable-croissant-a2croi/ -> a2croi
    """
    path = urlparse(url).path or url
    last_segment = path.rstrip("/").split("/")[-1] or path
    last_part = last_segment.split("-")[-1] or last_segment
    return last_part if _DIGIT.search(last_part) else last_segment


def _is_non_product_path(path: str) -> bool:
    return path in _NON_PRODUCT_PATHS or path.startswith(_NON_PRODUCT_PREFIXES)


def _card_name(a: Tag, img: Tag) -> str:
    """Image alt, then anchor title, then nested name/title text, then anchor text."""
    alt = (img.get("alt") or "").strip()
    if alt:
        return alt
    title = (a.get("title") or "").strip()
    if title:
        return title
    nested = " ".join(
        el.get_text(" ", strip=True)
        for el in a.select('[class*="name"], [class*="title"]')
    ).strip()
    if nested:
        return nested
    return a.get_text(" ", strip=True)


def _card_image(img: Tag) -> Optional[str]:
    src = (img.get("src") or "").strip() or (img.get("data-src") or "").strip()
    return src or None


def parse_products(html: str, base_url: Optional[str] = None) -> List[NewProduct]:
    """
    Extract product cards from the "new" page: anchors that wrap an image and
    point at a single-segment slug. Never raises on bad markup.
    """
    base_url = base_url or config.TARGET_URL
    try:
        soup = BeautifulSoup(html or "", "html.parser")
    except Exception:
        logger.exception("Could not parse page markup")
        return []

    products: List[NewProduct] = []
    seen: set[str] = set()

    for a in soup.find_all("a", href=True):
        img = a.find("img")
        if img is None:
            continue

        href = (a.get("href") or "").strip()
        if not href:
            continue

        try:
            resolved = urljoin(base_url, href)
            path = urlparse(resolved).path or "/"
        except ValueError:
            logger.debug("Skipping unparseable href %r", href)
            continue

        if _is_non_product_path(path):
            continue
        # Product slugs are a single path segment like /heart-dragon/
        if len([s for s in path.split("/") if s]) != 1:
            continue

        name = _card_name(a, img)
        if len(name) < MIN_NAME_LENGTH:
            continue

        external_id = extract_external_id(resolved)
        if external_id in seen:
            continue
        seen.add(external_id)

        products.append(
            NewProduct(
                external_id=external_id,
                name=name[:MAX_NAME_LENGTH],
                url=resolved,
                image_url=_card_image(img),
                position=len(products),
            )
        )

    logger.debug("Parsed %d product cards from %d chars of markup", len(products), len(html or ""))
    return products


def _conditional_headers(state: Optional[dict]) -> dict:
    headers = {"Accept": "text/html,application/xhtml+xml", "Cache-Control": "no-cache"}
    if state and state.get("etag"):
        headers["If-None-Match"] = state["etag"]
    if state and state.get("last_modified"):
        headers["If-Modified-Since"] = state["last_modified"]
    return headers


def fetch_snapshot(
    session: Optional[requests.Session] = None,
    *,
    url: Optional[str] = None,
    state_key: Optional[str] = None,
    parser: PageParser = parse_products,
    sleep: Callable[[float], None] = time.sleep,
) -> Snapshot:
    """
    Fetch the monitored page and return its current products in display order.

    Sends If-None-Match / If-Modified-Since from scraper_state. A 304 yields an
    empty not-modified snapshot without touching storage. On 2xx the validators
    are saved (only when they changed) and the markup is handed to `parser`.
    """
    url = url or config.TARGET_URL
    state_key = state_key or config.STATE_KEY

    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True

    try:
        state = db.get_request_state(state_key)
        try:
            response = fetch_with_backoff(
                session,
                url,
                headers=_conditional_headers(state),
                sleep=sleep,
            )
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch {url}: {e}") from e

        if response.status_code == 304:
            logger.info("Page not modified since last fetch (304)")
            return Snapshot(products=[], fetched_at=db.utcnow(), not_modified=True)

        if not 200 <= response.status_code < 300:
            raise FetchError(
                f"Failed to fetch {url} ({response.status_code})",
                status=response.status_code,
            )

        prev_etag = state.get("etag") if state else None
        prev_last_modified = state.get("last_modified") if state else None
        etag = response.headers.get("ETag") or prev_etag
        last_modified = response.headers.get("Last-Modified") or prev_last_modified
        if etag != prev_etag or last_modified != prev_last_modified:
            db.upsert_request_state(state_key, etag, last_modified)
            logger.debug("Stored validators etag=%s last_modified=%s", etag, last_modified)

        products = parser(response.text, url)
        logger.info("Fetched %s: %d products", url, len(products))
        return Snapshot(products=products, fetched_at=db.utcnow())
    finally:
        if close_session:
            session.close()


__all__ = [
    "NewProduct",
    "Snapshot",
    "PageParser",
    "extract_external_id",
    "parse_products",
    "fetch_snapshot",
]
