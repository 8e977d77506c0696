from mchatly.models.chat_session import ChatSession
from mchatly.models.chatbot import Chatbot
from mchatly.models.message import Message
from mchatly.models.pending_escalation import PendingEscalation
from mchatly.models.push_subscription import PushSubscription

__all__ = [
    "Chatbot",
    "ChatSession",
    "Message",
    "PendingEscalation",
    "PushSubscription",
]
