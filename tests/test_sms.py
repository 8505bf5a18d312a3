import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from arrival_monitor import config
from arrival_monitor.sms import (
    ClickSendSmsSender,
    SmsConfigurationError,
    SmsDeliveryError,
    UnconfiguredSmsSender,
    build_sms_body,
    create_sms_sender_from_env,
)
from arrival_monitor.utils import HTTPError


def _product(name, url):
    return SimpleNamespace(name=name, url=url)


class TestBuildSmsBody:
    def test_single(self):
        body = build_sms_body([_product("Heart Dragon", "https://jellycat.com/heart-dragon/")])
        assert body == "New arrival: Heart Dragon - https://jellycat.com/heart-dragon/"

    def test_multiple(self):
        body = build_sms_body([_product("A", "u1"), _product("B", "u2")])
        assert body == "2 new arrivals:\n1. A\n2. B"


class TestClickSendSmsSender:
    def _session(self, response):
        session = MagicMock(spec=requests.Session)
        session.post.return_value = response
        return session

    def test_success(self, make_response):
        session = self._session(make_response(200, json.dumps({"response_code": "SUCCESS"})))
        sender = ClickSendSmsSender("key", "user", url="https://sms.example.com/send", session=session)

        sender.send("+15550001", "hello")

        args, kwargs = session.post.call_args
        assert args == ("https://sms.example.com/send",)
        assert kwargs["auth"] == ("user", "key")
        assert kwargs["json"]["messages"][0] == {"source": "sdk", "body": "hello", "to": "+15550001"}
        session.close.assert_not_called()

    def test_provider_rejection(self, make_response):
        session = self._session(
            make_response(200, json.dumps({"response_code": "INVALID_RECIPIENT", "response_msg": "bad number"}))
        )
        with pytest.raises(SmsDeliveryError, match="bad number"):
            ClickSendSmsSender("key", session=session).send("+1", "hello")

    def test_client_error_not_retried(self, make_response):
        session = self._session(make_response(401, "{}"))
        with pytest.raises(HTTPError):
            ClickSendSmsSender("key", session=session).send("+15550001", "hello")
        assert session.post.call_count == 1

    def test_username_defaults_to_key(self):
        assert ClickSendSmsSender("key").username == "key"


class TestFactory:
    def test_unconfigured(self, monkeypatch):
        monkeypatch.setattr(config, "CLICK_SEND_API_KEY", None)
        sender = create_sms_sender_from_env()
        assert isinstance(sender, UnconfiguredSmsSender)
        with pytest.raises(SmsConfigurationError):
            sender.send("+15550001", "hello")

    def test_configured(self, monkeypatch):
        monkeypatch.setattr(config, "CLICK_SEND_API_KEY", "key")
        monkeypatch.setattr(config, "CLICK_SEND_USERNAME", "user")
        sender = create_sms_sender_from_env()
        assert isinstance(sender, ClickSendSmsSender)
        assert (sender.username, sender.api_key) == ("user", "key")
