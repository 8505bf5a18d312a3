"""
Cron trigger server.
Lightweight HTTP endpoints the external scheduler calls once a minute:

  GET|POST /api/cron/stock-check[?dryRun=1]  detect (and notify) new arrivals
  POST     /api/cron/notify                  notify for {"productIds": [...]}
  GET      /health                           liveness + product counts
"""

from __future__ import annotations

import hmac
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import parse_qs, urlparse

from . import config, db
from .pipeline import run_notify_job, run_stock_check

logger = logging.getLogger(__name__)

STOCK_CHECK_PATH = "/api/cron/stock-check"
NOTIFY_PATH = "/api/cron/notify"


def _same(provided: str, secret: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))


def is_authorized(headers, secret: Optional[str] = None) -> bool:
    """Accept `Authorization: Bearer <secret>` or the cron secret header."""
    secret = secret if secret is not None else config.CRON_SECRET
    if not secret:
        return False

    auth = headers.get("Authorization") or ""
    if auth.startswith("Bearer ") and _same(auth[7:], secret):
        return True

    provided = headers.get(config.CRON_HEADER_NAME) or ""
    return bool(provided) and _same(provided, secret)


class CronHandler(BaseHTTPRequestHandler):
    """HTTP handler for the cron trigger endpoints."""

    def log_message(self, format, *args):
        """Route access logs through logging instead of stderr."""
        logger.info("%s - %s", self.address_string(), format % args)

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path == STOCK_CHECK_PATH:
            self._handle_stock_check(parsed)
        elif parsed.path in ("/", "/health"):
            self._send_health()
        else:
            self._send_json(404, {"error": "Not found"})

    def do_POST(self):
        parsed = urlparse(self.path)
        if parsed.path == STOCK_CHECK_PATH:
            self._handle_stock_check(parsed)
        elif parsed.path == NOTIFY_PATH:
            self._handle_notify()
        else:
            self._send_json(404, {"error": "Not found"})

    def _handle_stock_check(self, parsed):
        if not is_authorized(self.headers):
            self._send_json(401, {"error": "Unauthorized"})
            return

        dry_run = parse_qs(parsed.query).get("dryRun", [None])[0] == "1"
        try:
            summary = run_stock_check(dry_run=dry_run)
        except Exception as e:
            logger.exception("Stock check failed")
            self._send_json(500, {"error": "Stock check failed", "details": str(e)})
            return

        self._send_json(409 if summary.skipped else 200, summary.to_dict())

    def _read_json_body(self):
        try:
            length = int(self.headers.get("Content-Length") or 0)
            if length < 0:
                return None
            return json.loads(self.rfile.read(length) or b"{}")
        except (ValueError, json.JSONDecodeError):
            return None

    def _handle_notify(self):
        # The body must be drained before any response is written.
        body = self._read_json_body()
        if not is_authorized(self.headers):
            logger.error("Unauthorized notify request")
            self._send_json(401, {"error": "Unauthorized"})
            return

        product_ids = body.get("productIds") if isinstance(body, dict) else None
        if (
            not isinstance(product_ids, list)
            or not product_ids
            or not all(isinstance(i, int) and not isinstance(i, bool) for i in product_ids)
        ):
            self._send_json(400, {"error": "Invalid request: productIds required"})
            return

        logger.info("Processing notification job for %d products", len(product_ids))
        try:
            result = run_notify_job(product_ids)
        except Exception as e:
            logger.exception("Notification job failed")
            self._send_json(500, {"error": "Failed to process notifications", "details": str(e)})
            return

        self._send_json(200, result)

    def _send_health(self):
        try:
            stats = db.get_product_stats()
        except Exception as e:
            logger.exception("Health check failed")
            self._send_json(500, {"status": "error", "details": str(e)})
            return
        self._send_json(200, {"status": "ok", **stats})

    def _send_json(self, status: int, payload: dict):
        data = json.dumps(payload, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


class CronServer:
    """Runs the trigger endpoints on a background thread."""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None):
        self.host = host or config.SERVER_HOST
        self.port = config.SERVER_PORT if port is None else port
        self.server: Optional[ThreadingHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.server is not None

    @property
    def base_url(self) -> str:
        host, port = self.server.server_address[:2] if self.server else (self.host, self.port)
        return f"http://{host}:{port}"

    def start(self) -> str:
        """Start the server and return the base URL."""
        if self.server is None:
            self.server = ThreadingHTTPServer((self.host, self.port), CronHandler)
            self.server_thread = threading.Thread(
                target=self.server.serve_forever, name="cron-server", daemon=True
            )
            self.server_thread.start()
            logger.info("Cron server started at %s", self.base_url)
        return self.base_url

    def stop(self):
        """Stop the server."""
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Cron server stopped")


__all__ = ["CronHandler", "CronServer", "is_authorized", "STOCK_CHECK_PATH", "NOTIFY_PATH"]
