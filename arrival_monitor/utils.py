"""Helper utilities.

This module centralises common helper functions such as creating a
configured HTTP session and applying retry policies to network calls.
Two policies live here:

* :func:`retryable_request` wraps outbound provider calls (SMS) and
  retries network errors and 5xx responses with plain exponential
  back-off.
* :func:`fetch_with_backoff` drives the monitored page fetch.  It also
  retries 429 and 403 (soft anti-bot blocks), honours ``Retry-After`` and
  hands the final response back to the caller instead of raising when the
  attempt budget runs out on a retryable status.
"""

from __future__ import annotations

import datetime as _dt
import logging
import math
import random
import time
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional

import requests
from requests import Response
from tenacity import (RetryCallState, Retrying, after_log, before_sleep_log,
                      retry, retry_if_exception, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from . import config

logger = logging.getLogger(__name__)


def get_http_session(user_agent: Optional[str] = None) -> requests.Session:
    """Return a new HTTP session with sensible defaults.

    Caller is responsible for closing the session or letting it be
    garbage collected.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": user_agent or config.USER_AGENT,
            "Accept": "text/html,application/xhtml+xml",
        }
    )
    # Respect environment proxies if configured (requests does this by default)
    return session


class HTTPError(Exception):
    """Raised when an HTTP request fails after retries."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class FetchError(Exception):
    """Raised when the monitored page cannot be fetched."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RetryableStatusError(Exception):
    """Internal signal: the response status is worth another attempt."""

    def __init__(self, response: Response) -> None:
        super().__init__(f"Retryable status {response.status_code}")
        self.response = response


def _raise_for_status(resp: Response) -> None:
    try:
        resp.raise_for_status()
    except requests.RequestException as e:
        raise HTTPError(str(e), status=resp.status_code) from e


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, HTTPError):
        return exc.status is not None and exc.status >= 500
    return isinstance(exc, requests.RequestException)


def retryable_request(method: Callable[[requests.Session, str, Dict[str, Any]], Response]) -> Callable[..., Response]:
    """Decorator factory to apply retry logic to HTTP calls.

    The decorated function must accept a `requests.Session` as its first
    argument, followed by URL and optional kwargs, and return a
    `requests.Response`.  Retries are attempted for network errors or
    HTTP errors (status >= 500).  A maximum of 5 attempts are made with
    exponential back-off between 1 and 10 seconds.  Client errors (4xx)
    raise :class:`HTTPError` immediately.
    """

    @retry(
        reraise=True,
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_transient),
        after=after_log(logger, logging.WARNING),
    )
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        response = method(session, url, **kwargs)
        _raise_for_status(response)
        return response

    return wrapper


# ---- Page fetch back-off -----------------------------------------------------

def is_retryable_status(status: int) -> bool:
    """429, any 5xx and 403 (anti-bot soft block) are retried."""
    if status == 429:
        return True
    if 500 <= status <= 599:
        return True
    return status == 403


def parse_retry_after(value: Optional[str], now: Optional[_dt.datetime] = None) -> Optional[float]:
    """Return the delay in seconds described by a Retry-After header.

    Accepts delta-seconds or an HTTP-date.  Dates in the past, non-finite
    numbers and unparseable values yield None.
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if math.isfinite(seconds) and seconds >= 0 else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=_dt.timezone.utc)
    now = now or _dt.datetime.now(_dt.timezone.utc)
    delta = (when - now).total_seconds()
    return delta if delta > 0 else None


def backoff_delay(attempt: int, retry_after: Optional[str] = None) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    retry_after_seconds = parse_retry_after(retry_after)
    if retry_after_seconds is not None:
        retry_after_seconds = min(retry_after_seconds, config.RETRY_AFTER_MAX_SECONDS)
        return retry_after_seconds + random.uniform(0, config.RETRY_AFTER_JITTER_SECONDS)

    expo = min(
        config.BACKOFF_MAX_SECONDS,
        config.BACKOFF_BASE_SECONDS * (2 ** max(0, attempt - 1)),
    )
    return expo + random.uniform(0, config.BACKOFF_JITTER_SECONDS)


def _wait_for_retry(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    retry_after = None
    if isinstance(exc, RetryableStatusError):
        retry_after = exc.response.headers.get("Retry-After")
    return backoff_delay(retry_state.attempt_number, retry_after)


def _final_outcome(retry_state: RetryCallState) -> Response:
    """Out of attempts: hand back the last response, or re-raise the network error."""
    exc = retry_state.outcome.exception()
    if isinstance(exc, RetryableStatusError):
        return exc.response
    raise exc


def fetch_with_backoff(
    session: requests.Session,
    url: str,
    *,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> Response:
    """GET `url`, retrying transient failures per the page fetch policy.

    Each attempt gets its own `timeout`.  A non-retryable status is
    returned at once.  When attempts run out the last response is
    returned (retryable status) or the last network error is raised.
    """
    max_attempts = max_attempts or config.FETCH_MAX_ATTEMPTS
    timeout = timeout if timeout is not None else config.FETCH_TIMEOUT_SECONDS

    def _attempt() -> Response:
        response = session.get(url, timeout=timeout, **kwargs)
        if is_retryable_status(response.status_code):
            raise RetryableStatusError(response)
        return response

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=_wait_for_retry,
        retry=retry_if_exception_type((requests.RequestException, RetryableStatusError)),
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        retry_error_callback=_final_outcome,
    )
    return retrying(_attempt)


__all__ = [
    "get_http_session",
    "retryable_request",
    "HTTPError",
    "FetchError",
    "is_retryable_status",
    "parse_retry_after",
    "backoff_delay",
    "fetch_with_backoff",
]
