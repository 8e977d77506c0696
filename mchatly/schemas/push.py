from typing import Optional

from pydantic import BaseModel


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionRequest(BaseModel):
    endpoint: str
    keys: PushKeys
    tenant_id: Optional[str] = None


class PushSubscriptionResponse(BaseModel):
    success: bool
    subscription_id: str
