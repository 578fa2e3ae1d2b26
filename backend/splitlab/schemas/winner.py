"""Winner and scheduled-run schemas."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from uuid import UUID


class WinnerResponse(BaseModel):
    """Winner snapshot for an experiment."""

    status: str
    winner_variant_key: Optional[str] = None
    decided_at: Optional[datetime] = None
    reason: Optional[str] = None


class AggregationRunRequest(BaseModel):
    """Optional overrides for a scheduled aggregation + winner run."""

    bucketMs: Optional[int] = Field(None, gt=0)
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class AggregationRunItem(BaseModel):
    experiment_id: str
    aggregated: int
    winner: Dict[str, Any]
    error: Optional[str] = None


class AggregationRunResponse(BaseModel):
    range: Dict[str, str]
    bucket_ms: int
    items: List[AggregationRunItem]


class RetentionRunResponse(BaseModel):
    events_retention_days: int
    metrics_retention_days: int
    cutoffs: Dict[str, str]
    deleted: Dict[str, int]


class MetricBucketOut(BaseModel):
    """Aggregated bucket as exposed by the internal metrics endpoint."""

    model_config = ConfigDict(from_attributes=True)

    experiment_id: UUID
    variant_key: str
    metric_key: str
    bucket_start: datetime
    bucket_ms: int
    count: int
    sum: float
    sum_sq: float
    min: Optional[float] = None
    max: Optional[float] = None


class MetricBucketsResponse(BaseModel):
    buckets: List[MetricBucketOut]
