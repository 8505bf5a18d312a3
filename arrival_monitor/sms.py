"""SMS notifier.

ClickSend is the production provider. Without credentials the factory
returns a sender that fails every send with SmsConfigurationError, so a
misconfigured provider shows up per recipient instead of aborting a run.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import requests

from . import config
from .utils import get_http_session, retryable_request

logger = logging.getLogger(__name__)


class SmsConfigurationError(RuntimeError):
    def __init__(self) -> None:
        super().__init__(
            "SMS provider is not configured. Set CLICK_SEND_API_KEY "
            "(and optionally CLICK_SEND_USERNAME) in your .env file."
        )


class SmsDeliveryError(RuntimeError):
    """The provider accepted the request but rejected the message."""


class SmsSender(ABC):
    @abstractmethod
    def send(self, to: str, body: str) -> None:
        """Send `body` to phone number `to`. Raises on failure."""


@retryable_request
def _post(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.post(url, **kwargs)


class UnconfiguredSmsSender(SmsSender):
    def send(self, to: str, body: str) -> None:
        raise SmsConfigurationError()


class ClickSendSmsSender(SmsSender):
    def __init__(
        self,
        api_key: str,
        username: Optional[str] = None,
        *,
        url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 15,
    ) -> None:
        self.api_key = api_key
        self.username = username or api_key
        self.url = url or config.CLICK_SEND_URL
        self.session = session
        self.timeout = timeout

    def send(self, to: str, body: str) -> None:
        session = self.session or get_http_session()
        try:
            resp = _post(
                session,
                self.url,
                auth=(self.username, self.api_key),
                json={"messages": [{"source": "sdk", "body": body, "to": to}]},
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self.timeout,
            )
            data = resp.json()
        finally:
            if self.session is None:
                session.close()

        if data.get("response_code") != "SUCCESS":
            raise SmsDeliveryError(f"ClickSend API error: {data.get('response_msg') or 'Unknown error'}")
        logger.info("SMS sent to %s", to)


def build_sms_body(products: Sequence) -> str:
    if len(products) == 1:
        p = products[0]
        return f"New arrival: {p.name} - {p.url}"
    lines = [f"{i}. {p.name}" for i, p in enumerate(products, start=1)]
    return f"{len(products)} new arrivals:\n" + "\n".join(lines)


def create_sms_sender_from_env() -> SmsSender:
    if not config.CLICK_SEND_API_KEY:
        return UnconfiguredSmsSender()
    return ClickSendSmsSender(config.CLICK_SEND_API_KEY, config.CLICK_SEND_USERNAME)


__all__ = [
    "SmsConfigurationError",
    "SmsDeliveryError",
    "SmsSender",
    "UnconfiguredSmsSender",
    "ClickSendSmsSender",
    "build_sms_body",
    "create_sms_sender_from_env",
]
