"""Pydantic schemas for request/response validation and experiment definitions."""
from splitlab.schemas.experiment import (
    AssignmentSettings,
    ExperimentDefinition,
    MetricDefinition,
    VariantSpec,
    WinnerPolicy,
)
from splitlab.schemas.assignment import AssignmentRequest, AssignmentResponse, WinnerInfo
from splitlab.schemas.events import EventBatchRequest, EventBatchResponse
from splitlab.schemas.winner import (
    AggregationRunRequest,
    AggregationRunResponse,
    MetricBucketsResponse,
    RetentionRunResponse,
    WinnerResponse,
)

__all__ = [
    "AssignmentSettings",
    "ExperimentDefinition",
    "MetricDefinition",
    "VariantSpec",
    "WinnerPolicy",
    "AssignmentRequest",
    "AssignmentResponse",
    "WinnerInfo",
    "EventBatchRequest",
    "EventBatchResponse",
    "AggregationRunRequest",
    "AggregationRunResponse",
    "MetricBucketsResponse",
    "RetentionRunResponse",
    "WinnerResponse",
]
