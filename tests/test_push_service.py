import json
from unittest.mock import Mock, patch

import pytest
from pywebpush import WebPushException

from mchatly.services.push_service import (
    PushDeliveryError,
    PushGoneError,
    WebPushSender,
    delivery_error,
)
from mchatly.services.records import Subscriber

SUBSCRIBER = Subscriber(id="sub-1", endpoint="https://push.example/1", keys={"p256dh": "k", "auth": "a"})


def _webpush_error(status_code):
    response = Mock()
    response.status_code = status_code
    return WebPushException("push failed", response=response)


class TestDeliveryError:
    @pytest.mark.parametrize("status_code", [404, 410])
    def test_gone_codes(self, status_code):
        error = delivery_error("gone", status_code)
        assert isinstance(error, PushGoneError)
        assert error.status_code == status_code

    def test_other_codes(self):
        error = delivery_error("boom", 500)
        assert type(error) is PushDeliveryError
        assert error.status_code == 500


class TestWebPushSender:
    @pytest.mark.asyncio
    @patch("mchatly.services.push_service.webpush")
    async def test_sends_json_payload_with_vapid(self, mock_webpush):
        sender = WebPushSender(vapid_private_key="private", vapid_subject="mailto:ops@example.com")

        await sender.send(SUBSCRIBER, {"title": "Mchatly: User waiting", "tag": "s1"})

        kwargs = mock_webpush.call_args.kwargs
        assert kwargs["subscription_info"] == {"endpoint": "https://push.example/1", "keys": {"p256dh": "k", "auth": "a"}}
        assert json.loads(kwargs["data"]) == {"title": "Mchatly: User waiting", "tag": "s1"}
        assert kwargs["vapid_private_key"] == "private"
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}

    @pytest.mark.asyncio
    @patch("mchatly.services.push_service.webpush")
    async def test_expired_subscription_raises_gone(self, mock_webpush):
        mock_webpush.side_effect = _webpush_error(410)
        sender = WebPushSender(vapid_private_key="private")

        with pytest.raises(PushGoneError) as exc_info:
            await sender.send(SUBSCRIBER, {})
        assert exc_info.value.status_code == 410

    @pytest.mark.asyncio
    @patch("mchatly.services.push_service.webpush")
    async def test_server_error_raises_delivery_error(self, mock_webpush):
        mock_webpush.side_effect = _webpush_error(500)
        sender = WebPushSender(vapid_private_key="private")

        with pytest.raises(PushDeliveryError) as exc_info:
            await sender.send(SUBSCRIBER, {})
        assert not isinstance(exc_info.value, PushGoneError)

    @pytest.mark.asyncio
    @patch("mchatly.services.push_service.webpush")
    async def test_missing_vapid_key(self, mock_webpush):
        sender = WebPushSender(vapid_private_key=None)

        with pytest.raises(PushDeliveryError):
            await sender.send(SUBSCRIBER, {})
        mock_webpush.assert_not_called()
