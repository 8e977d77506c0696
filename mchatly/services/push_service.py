"""Web Push delivery to dashboard subscribers."""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Optional

from pywebpush import WebPushException, webpush

from mchatly.config import settings
from mchatly.logging_config import get_logger
from mchatly.services.records import Subscriber

logger = get_logger("push_service")

GONE_STATUS_CODES = {404, 410}


class PushDeliveryError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PushGoneError(PushDeliveryError):
    """Subscription no longer exists at the push service."""


def delivery_error(message: str, status_code: Optional[int]) -> PushDeliveryError:
    if status_code in GONE_STATUS_CODES:
        return PushGoneError(message, status_code)
    return PushDeliveryError(message, status_code)


class PushSender(ABC):
    @abstractmethod
    async def send(self, subscriber: Subscriber, notification: dict) -> None:
        """Deliver one notification; raises PushDeliveryError on failure."""


class WebPushSender(PushSender):
    def __init__(
        self,
        vapid_private_key: Optional[str] = settings.vapid_private_key,
        vapid_subject: str = settings.vapid_subject,
        ttl_seconds: int = 3600,
        timeout: float = 10.0,
    ):
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout

    def _send_sync(self, subscriber: Subscriber, data: str) -> None:
        webpush(
            subscription_info=subscriber.subscription_info(),
            data=data,
            vapid_private_key=self.vapid_private_key,
            # webpush fills in aud/exp on the dict it receives
            vapid_claims={"sub": self.vapid_subject},
            ttl=self.ttl_seconds,
            timeout=self.timeout,
        )

    async def send(self, subscriber: Subscriber, notification: dict) -> None:
        if not self.vapid_private_key:
            raise PushDeliveryError("VAPID private key not configured")

        data = json.dumps(notification, ensure_ascii=False)
        try:
            await asyncio.to_thread(self._send_sync, subscriber, data)
        except WebPushException as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            raise delivery_error(f"Web push failed: {exc}", status_code) from exc
        except Exception as exc:
            raise PushDeliveryError(f"Web push failed: {exc}") from exc
