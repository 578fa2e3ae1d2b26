"""Experiment assignment model."""
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, UniqueConstraint, Uuid
import uuid

from splitlab.database import Base, JSONType
from splitlab.timeutils import utcnow


class ExperimentAssignment(Base):
    """Sticky variant assignment for one subject. Never updated once written."""

    __tablename__ = "experiment_assignments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id = Column(Uuid, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Uuid, nullable=True, index=True)

    subject_key = Column(String(300), nullable=False)
    variant_key = Column(String(100), nullable=False)
    assigned_at = Column(DateTime, default=utcnow, nullable=False)

    context = Column(JSONType, default=dict)  # Opaque caller context (user agent, page, ...)

    __table_args__ = (
        # One assignment per subject per experiment; insert-if-absent relies on it
        UniqueConstraint("experiment_id", "subject_key", name="uq_assignments_experiment_subject"),
        Index("ix_assignments_org_subject", "organization_id", "subject_key"),
    )

    def __repr__(self):
        return f"<ExperimentAssignment {self.subject_key} variant={self.variant_key}>"
