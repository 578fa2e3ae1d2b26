"""Internal endpoints called by the external scheduler."""
from fastapi import APIRouter, Depends
from typing import Optional
from datetime import datetime

from splitlab.api.deps import get_metric_aggregator, get_retention_sweeper, get_winner_evaluator
from splitlab.middleware.auth import require_internal_token
from splitlab.schemas.winner import (
    AggregationRunRequest,
    AggregationRunResponse,
    MetricBucketOut,
    MetricBucketsResponse,
    RetentionRunResponse,
)
from splitlab.services.aggregation import MetricAggregator
from splitlab.services.retention import RetentionSweeper
from splitlab.services.winner import WinnerEvaluator

router = APIRouter(prefix="/internal/experiments", dependencies=[Depends(require_internal_token)])


@router.post("/aggregate/run", response_model=AggregationRunResponse)
def run_aggregation(
    run_request: Optional[AggregationRunRequest] = None,
    evaluator: WinnerEvaluator = Depends(get_winner_evaluator)
):
    """
    Aggregate events into buckets and evaluate winners for all active experiments.

    Idempotent: safe to retry or to overlap with another run.
    """
    run_request = run_request or AggregationRunRequest()
    return evaluator.run_aggregation_and_winner(
        bucket_ms=run_request.bucketMs,
        start=run_request.start,
        end=run_request.end
    )


@router.post("/retention/run", response_model=RetentionRunResponse)
def run_retention(sweeper: RetentionSweeper = Depends(get_retention_sweeper)):
    """Delete events and metric buckets past their retention windows."""
    return sweeper.run_retention_cleanup()


@router.get("/{experiment_id}/metrics", response_model=MetricBucketsResponse)
def get_metrics(
    experiment_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    aggregator: MetricAggregator = Depends(get_metric_aggregator)
):
    """Aggregated buckets for an experiment, ordered by bucket start."""
    buckets = aggregator.list_buckets(experiment_id, start, end)
    return MetricBucketsResponse(buckets=[MetricBucketOut.model_validate(b) for b in buckets])
