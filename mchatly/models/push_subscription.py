from sqlalchemy import JSON, Column, DateTime, String, Text

from mchatly.database import Base


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    id = Column(String(64), primary_key=True)
    endpoint = Column(Text, nullable=False, unique=True)
    keys = Column(JSON, nullable=False, default=dict)  # p256dh, auth
    tenant_id = Column(String(64), index=True)  # NULL = receives every tenant's escalations
    created_at = Column(DateTime(timezone=True), nullable=False)
