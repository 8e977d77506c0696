from mchatly.schemas.escalation import ProcessDueResponse
from mchatly.schemas.history import HistoryItem, HistoryResponse
from mchatly.schemas.message import VisitorMessageRequest, VisitorMessageResponse
from mchatly.schemas.operator import (
    OperatorMessageRequest,
    OperatorMessageResponse,
    PresenceRequest,
    PresenceResponse,
)
from mchatly.schemas.push import PushKeys, PushSubscriptionRequest, PushSubscriptionResponse

__all__ = [
    "HistoryItem",
    "HistoryResponse",
    "OperatorMessageRequest",
    "OperatorMessageResponse",
    "PresenceRequest",
    "PresenceResponse",
    "ProcessDueResponse",
    "PushKeys",
    "PushSubscriptionRequest",
    "PushSubscriptionResponse",
    "VisitorMessageRequest",
    "VisitorMessageResponse",
]
