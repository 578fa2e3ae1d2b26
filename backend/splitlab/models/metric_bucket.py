"""Metric bucket model."""
from sqlalchemy import Column, String, Float, Integer, BigInteger, DateTime, ForeignKey, UniqueConstraint, Uuid
import uuid

from splitlab.database import Base


class ExperimentMetricBucket(Base):
    """
    Pre-aggregated events for one (variant, metric) over a fixed-width window.

    Rows are overwritten on every aggregation pass, never incremented, so
    re-aggregating an unchanged window leaves them identical.
    """

    __tablename__ = "experiment_metric_buckets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id = Column(Uuid, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Uuid, nullable=True, index=True)

    variant_key = Column(String(100), nullable=False, index=True)
    metric_key = Column(String(100), nullable=False, index=True)

    bucket_start = Column(DateTime, nullable=False, index=True)
    bucket_ms = Column(BigInteger, nullable=False)

    count = Column(Integer, default=0, nullable=False)
    sum = Column(Float, default=0.0, nullable=False)
    sum_sq = Column(Float, default=0.0, nullable=False)
    min = Column(Float, nullable=True)
    max = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "experiment_id", "variant_key", "metric_key", "bucket_start", "bucket_ms",
            name="uq_metric_buckets_window"
        ),
    )

    def __repr__(self):
        return f"<ExperimentMetricBucket {self.metric_key}@{self.bucket_start} variant={self.variant_key}>"
