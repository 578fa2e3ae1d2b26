"""Experiment event model."""
from sqlalchemy import Column, String, Float, DateTime, ForeignKey, Index, Uuid
import uuid

from splitlab.database import Base, JSONType
from splitlab.timeutils import utcnow


class ExperimentEvent(Base):
    """Append-only raw metric event. Many rows per subject and event key are expected."""

    __tablename__ = "experiment_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id = Column(Uuid, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Uuid, nullable=True, index=True)

    subject_key = Column(String(300), nullable=False)
    variant_key = Column(String(100), nullable=False, index=True)
    event_key = Column(String(100), nullable=False, index=True)
    value = Column(Float, default=1.0, nullable=False)

    ts = Column(DateTime, nullable=False, index=True)
    meta = Column(JSONType, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_events_experiment_ts", "experiment_id", "ts"),
        Index("ix_events_experiment_key_ts", "experiment_id", "event_key", "ts"),
    )

    def __repr__(self):
        return f"<ExperimentEvent {self.event_key}={self.value} variant={self.variant_key}>"
