"""Tests for product extraction and the conditional page fetch."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from arrival_monitor import config, db
from arrival_monitor.scraper import (
    NewProduct,
    extract_external_id,
    fetch_snapshot,
    parse_products,
)
from arrival_monitor.utils import FetchError

FIXTURES = Path(__file__).parent / "fixtures"
BASE = "https://jellycat.com/new"


@pytest.fixture
def page_html():
    return (FIXTURES / "new_page.html").read_text(encoding="utf-8")


class TestExtractExternalId:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://jellycat.com/heart-dragon/", "heart-dragon"),
            ("https://jellycat.com/heart-dragon", "heart-dragon"),
            ("https://jellycat.com/amuseable-croissant-a2croi/", "a2croi"),
            ("https://jellycat.com/bashful-bunny-bas3b/", "bas3b"),
            ("https://jellycat.com/eu/amuseable-croissant-a2croi/", "a2croi"),
            ("https://jellycat.com/squishy-", "squishy-"),
        ],
    )
    def test_ids(self, url, expected):
        assert extract_external_id(url) == expected


class TestParseProducts:
    def test_fixture_page(self, page_html):
        products = parse_products(page_html, BASE)

        assert [p.external_id for p in products] == [
            "heart-dragon",
            "a2croi",
            "bartholomew-bear",
            "bb3",
        ]
        assert [p.position for p in products] == [0, 1, 2, 3]

    def test_name_and_image_fallbacks(self, page_html):
        by_id = {p.external_id: p for p in parse_products(page_html, BASE)}

        # alt text, absolute image
        assert by_id["heart-dragon"].name == "Heart Dragon"
        assert by_id["heart-dragon"].url == "https://jellycat.com/heart-dragon/"
        assert by_id["heart-dragon"].image_url == "https://cdn.example.com/heart-dragon.jpg"
        # anchor title, lazy-loaded image
        assert by_id["a2croi"].name == "Amuseable Croissant"
        assert by_id["a2croi"].image_url == "https://cdn.example.com/a2croi.jpg"
        # nested name element
        assert by_id["bartholomew-bear"].name == "Bartholomew Bear"
        assert by_id["bartholomew-bear"].image_url == "/images/bartholomew.jpg"
        # anchor text
        assert by_id["bb3"].name == "Blossom Bunny"

    def test_first_occurrence_wins_on_duplicates(self, page_html):
        products = parse_products(page_html, BASE)
        dragon = [p for p in products if p.external_id == "heart-dragon"]
        assert len(dragon) == 1
        assert dragon[0].name == "Heart Dragon"

    def test_skips_site_chrome_and_nested_paths(self, page_html):
        urls = {p.url for p in parse_products(page_html, BASE)}
        assert "https://jellycat.com/" not in urls
        assert "https://jellycat.com/login.php" not in urls
        assert "https://jellycat.com/collections/bunnies/" not in urls
        assert "https://jellycat.com/about-us/" not in urls
        assert "https://jellycat.com/eu/woodland-fox/" not in urls

    def test_short_names_are_skipped(self, page_html):
        assert "tiny-thing" not in {p.external_id for p in parse_products(page_html, BASE)}

    def test_anchor_without_image_is_ignored(self):
        assert parse_products('<a href="/heart-dragon/">Heart Dragon</a>', BASE) == []

    def test_name_is_truncated(self):
        long_name = "B" * 400
        html = f'<a href="/big-bear/"><img src="/b.jpg" alt="{long_name}"></a>'
        [product] = parse_products(html, BASE)
        assert len(product.name) == 255

    @pytest.mark.parametrize("html", ["", "<html><body></body></html>", "<<<not html", None])
    def test_empty_or_malformed_input(self, html):
        assert parse_products(html, BASE) == []

    def test_defaults_to_configured_base_url(self, monkeypatch):
        monkeypatch.setattr(config, "TARGET_URL", "https://shop.example.com/new")
        [product] = parse_products('<a href="/fox-cub/"><img src="/f.jpg" alt="Fox Cub"></a>')
        assert product.url == "https://shop.example.com/fox-cub/"


def _session(*responses):
    session = MagicMock(spec=requests.Session)
    session.get.side_effect = list(responses)
    return session


class TestFetchSnapshot:
    def test_parses_and_stores_validators(self, make_response, page_html):
        session = _session(
            make_response(200, page_html, {"ETag": '"v1"', "Last-Modified": "Sun, 01 Mar 2026 12:00:00 GMT"})
        )

        snapshot = fetch_snapshot(session, sleep=lambda s: None)

        assert not snapshot.not_modified
        assert [p.external_id for p in snapshot.products][:2] == ["heart-dragon", "a2croi"]
        state = db.get_request_state(config.STATE_KEY)
        assert state["etag"] == '"v1"'
        assert state["last_modified"] == "Sun, 01 Mar 2026 12:00:00 GMT"
        session.close.assert_not_called()

    def test_sends_stored_validators(self, make_response):
        db.upsert_request_state(config.STATE_KEY, '"v1"', "Sun, 01 Mar 2026 12:00:00 GMT")
        session = _session(make_response(304))

        fetch_snapshot(session, sleep=lambda s: None)

        headers = session.get.call_args.kwargs["headers"]
        assert headers["If-None-Match"] == '"v1"'
        assert headers["If-Modified-Since"] == "Sun, 01 Mar 2026 12:00:00 GMT"

    def test_not_modified_touches_nothing(self, make_response):
        db.upsert_request_state(config.STATE_KEY, '"v1"', None)
        before = db.get_request_state(config.STATE_KEY)
        parser = MagicMock()
        session = _session(make_response(304))

        snapshot = fetch_snapshot(session, parser=parser, sleep=lambda s: None)

        assert snapshot.not_modified
        assert snapshot.products == []
        parser.assert_not_called()
        assert db.get_request_state(config.STATE_KEY) == before
        assert db.get_product_stats()["total_products"] == 0

    def test_unchanged_validators_are_not_rewritten(self, make_response):
        db.upsert_request_state(config.STATE_KEY, '"v1"', None)
        before = db.get_request_state(config.STATE_KEY)
        session = _session(make_response(200, "<html></html>", {"ETag": '"v1"'}))

        fetch_snapshot(session, sleep=lambda s: None)

        assert db.get_request_state(config.STATE_KEY)["updated_at"] == before["updated_at"]

    def test_missing_header_keeps_previous_value(self, make_response):
        db.upsert_request_state(config.STATE_KEY, '"v1"', "Sun, 01 Mar 2026 12:00:00 GMT")
        session = _session(make_response(200, "<html></html>", {"ETag": '"v2"'}))

        fetch_snapshot(session, sleep=lambda s: None)

        state = db.get_request_state(config.STATE_KEY)
        assert state["etag"] == '"v2"'
        assert state["last_modified"] == "Sun, 01 Mar 2026 12:00:00 GMT"

    def test_client_error_is_not_retried(self, make_response):
        session = _session(make_response(404))

        with pytest.raises(FetchError) as excinfo:
            fetch_snapshot(session, sleep=lambda s: None)

        assert excinfo.value.status == 404
        assert session.get.call_count == 1
        assert db.get_request_state(config.STATE_KEY) is None

    def test_rate_limit_then_success(self, make_response, page_html):
        sleeps = []
        session = _session(
            make_response(429, headers={"Retry-After": "2"}),
            make_response(200, page_html),
        )

        snapshot = fetch_snapshot(session, sleep=sleeps.append)

        assert len(snapshot.products) == 4
        assert len(sleeps) == 1 and sleeps[0] >= 2

    def test_persistent_server_error_raises(self, make_response):
        session = _session(*[make_response(503) for _ in range(config.FETCH_MAX_ATTEMPTS)])

        with pytest.raises(FetchError) as excinfo:
            fetch_snapshot(session, sleep=lambda s: None)

        assert excinfo.value.status == 503
        assert session.get.call_count == config.FETCH_MAX_ATTEMPTS

    def test_network_error_becomes_fetch_error(self):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = requests.ConnectionError("dns failure")

        with pytest.raises(FetchError):
            fetch_snapshot(session, sleep=lambda s: None)

        assert session.get.call_count == config.FETCH_MAX_ATTEMPTS

    def test_custom_parser(self, make_response):
        product = NewProduct("x1", "Custom", "https://jellycat.com/x1/", None, 0)
        parser = MagicMock(return_value=[product])
        session = _session(make_response(200, "<html>custom</html>"))

        snapshot = fetch_snapshot(session, url="https://shop.example.com/new", parser=parser, sleep=lambda s: None)

        parser.assert_called_once_with("<html>custom</html>", "https://shop.example.com/new")
        assert snapshot.products == [product]
