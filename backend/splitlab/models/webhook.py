"""Webhook subscription model."""
from sqlalchemy import Column, String, DateTime, Uuid
import uuid

from splitlab.database import Base, JSONType
from splitlab.timeutils import utcnow


class Webhook(Base):
    """Organization-scoped webhook receiving signed event payloads."""

    __tablename__ = "webhooks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)
    target_url = Column(String(2000), nullable=False)
    secret = Column(String(255), nullable=False)
    events = Column(JSONType, default=list)  # ["experiment.winner_changed", ...]
    status = Column(String(20), default="active", nullable=False)  # active | paused | failed
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Webhook {self.target_url} status={self.status}>"
