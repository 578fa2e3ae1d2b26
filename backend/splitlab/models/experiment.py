"""Experiment model."""
from sqlalchemy import Column, String, Text, DateTime, Index, UniqueConstraint, Uuid
import uuid

from splitlab.database import Base, JSONType
from splitlab.timeutils import utcnow


class ExperimentStatus:
    """Allowed experiment statuses."""
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"

    # New assignments may only be created while an experiment is active
    ACTIVE = (RUNNING, COMPLETED)


class Experiment(Base):
    """
    A/B experiment definition.

    Global experiments have a NULL organization_id; an organization can
    override one by defining an experiment with the same code.
    """

    __tablename__ = "experiments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, nullable=True, index=True)

    code = Column(String(100), nullable=False)
    name = Column(String(200), default="")
    description = Column(Text, default="")

    status = Column(String(20), default=ExperimentStatus.DRAFT, nullable=False, index=True)
    started_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)

    # {"unit": "subjectId", "sticky": true, "salt": ""}
    assignment = Column(JSONType, default=dict)
    # [{"key": "a", "weight": 50, "config_slug": ""}, ...]
    variants = Column(JSONType, nullable=False, default=list)
    # {"key": "cr", "kind": "rate", "numerator_event_key": "purchase", ...}
    primary_metric = Column(JSONType, nullable=False)
    secondary_metrics = Column(JSONType, default=list)
    # {"mode": "automatic", "pick_after_ms": 0, "min_exposures": 10, ...}
    winner_policy = Column(JSONType, default=dict)

    winner_variant_key = Column(String(100), default="")
    winner_decided_at = Column(DateTime, nullable=True)
    winner_reason = Column(String(200), default="")

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_experiments_org_code"),
        Index("ix_experiments_status_started_at", "status", "started_at"),
    )

    def __repr__(self):
        return f"<Experiment {self.code} status={self.status}>"
