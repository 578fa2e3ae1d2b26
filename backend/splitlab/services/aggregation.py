"""Time-bucketed metric aggregation."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from splitlab.database import dialect_insert
from splitlab.models.event import ExperimentEvent
from splitlab.models.metric_bucket import ExperimentMetricBucket
from splitlab.schemas.experiment import ExperimentDefinition
from splitlab.services.errors import ValidationError
from splitlab.services.experiments import ExperimentRegistry, coerce_uuid
from splitlab.timeutils import floor_to_bucket, isoformat, to_naive_utc, utcnow

logger = structlog.get_logger()

DEFAULT_BUCKET_MS = 3600000
DEFAULT_LOOKBACK = timedelta(hours=24)

BucketKey = Tuple[str, str, datetime]


def resolve_bucket_ms(bucket_ms) -> int:
    """Bucket width in ms; ``None`` or 0 means the 1 hour default."""
    if not bucket_ms:
        return DEFAULT_BUCKET_MS
    if isinstance(bucket_ms, bool) or not isinstance(bucket_ms, int) or bucket_ms < 0:
        raise ValidationError("bucketMs must be a positive integer")
    return bucket_ms


def resolve_metric_keys(definition: ExperimentDefinition) -> List[str]:
    """
    Raw event keys needed to score the experiment's metrics.

    ``rate`` metrics need their numerator and denominator events; any other
    kind reads events named after the metric itself.
    """
    keys: List[str] = []
    for metric in [definition.primary_metric, *definition.secondary_metrics]:
        if not metric.key:
            continue
        if metric.kind == "rate":
            candidates = [metric.numerator_event_key, metric.denominator_event_key]
        else:
            candidates = [metric.key]
        for key in candidates:
            if key and key not in keys:
                keys.append(key)
    return keys


class MetricAggregator:
    """Rolls raw events into fixed-width buckets per (variant, metric)."""

    def __init__(self, db: Session, registry: Optional[ExperimentRegistry] = None,
                 default_lookback: timedelta = DEFAULT_LOOKBACK, clock=utcnow):
        self.db = db
        self.registry = registry or ExperimentRegistry(db)
        self.default_lookback = default_lookback
        self.clock = clock

    def aggregate_experiment(
        self,
        experiment_id,
        bucket_ms: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Recompute metric buckets for an experiment over ``[start, end]``.

        Every touched bucket is overwritten with the totals of the events it
        covers, so running twice over unchanged events leaves identical rows.
        The lower bound is floored to a bucket boundary so the first bucket
        is always recomputed from all of its events.

        Args:
            experiment_id: Experiment id
            bucket_ms: Bucket width in ms (default 1 hour)
            start: Window start (default: experiment start, else now - default_lookback)
            end: Window end (default: now)

        Raises:
            ValidationError: If ``bucket_ms`` is negative or not an integer

        Returns:
            {"experiment_id": ..., "aggregated": <buckets written>}
        """
        width = resolve_bucket_ms(bucket_ms)
        experiment = self.registry.get(experiment_id)
        definition = ExperimentDefinition.from_experiment(experiment)

        metric_keys = resolve_metric_keys(definition)
        if not metric_keys:
            return {"experiment_id": str(experiment.id), "aggregated": 0}

        now = self.clock()
        start_at = start or experiment.started_at or (now - self.default_lookback)
        end_at = to_naive_utc(end or now)
        start_at = floor_to_bucket(start_at, width)

        stmt = (
            select(ExperimentEvent.variant_key, ExperimentEvent.event_key, ExperimentEvent.ts, ExperimentEvent.value)
            .where(
                ExperimentEvent.experiment_id == experiment.id,
                ExperimentEvent.ts >= start_at,
                ExperimentEvent.ts <= end_at,
                ExperimentEvent.event_key.in_(metric_keys),
            )
            # Fixed order keeps float sums bit-for-bit reproducible
            .order_by(ExperimentEvent.ts, ExperimentEvent.id)
            .execution_options(yield_per=1000)
        )

        groups: Dict[BucketKey, Dict[str, Any]] = {}
        for variant_key, event_key, ts, value in self.db.execute(stmt):
            key = (variant_key, event_key, floor_to_bucket(ts, width))
            group = groups.get(key)
            if group is None:
                group = groups[key] = {"count": 0, "sum": 0.0, "sum_sq": 0.0, "min": value, "max": value}
            group["count"] += 1
            group["sum"] += value
            group["sum_sq"] += value * value
            group["min"] = min(group["min"], value)
            group["max"] = max(group["max"], value)

        for (variant_key, metric_key, bucket_start), totals in groups.items():
            self._upsert_bucket({
                "experiment_id": experiment.id,
                "organization_id": experiment.organization_id,
                "variant_key": variant_key,
                "metric_key": metric_key,
                "bucket_start": bucket_start,
                "bucket_ms": width,
                **totals,
            })
        self.db.commit()

        logger.info(
            "experiment_aggregated",
            experiment_id=str(experiment.id),
            buckets=len(groups),
            start=isoformat(start_at),
            end=isoformat(end_at),
            bucket_ms=width
        )
        return {"experiment_id": str(experiment.id), "aggregated": len(groups)}

    def compute_totals(self, experiment_id, variant_key: str, metric_key: str,
                       start_at: Optional[datetime] = None) -> Dict[str, float]:
        """Sum ``count`` and ``sum`` over matching buckets, optionally from ``start_at`` on."""
        stmt = select(
            func.coalesce(func.sum(ExperimentMetricBucket.count), 0),
            func.coalesce(func.sum(ExperimentMetricBucket.sum), 0.0),
        ).where(
            ExperimentMetricBucket.experiment_id == coerce_uuid(experiment_id, "experimentId"),
            ExperimentMetricBucket.variant_key == str(variant_key),
            ExperimentMetricBucket.metric_key == str(metric_key),
        )
        if start_at is not None:
            stmt = stmt.where(ExperimentMetricBucket.bucket_start >= to_naive_utc(start_at))

        count, total = self.db.execute(stmt).one()
        return {"count": int(count or 0), "sum": float(total or 0)}

    def list_buckets(self, experiment_id, start: Optional[datetime] = None,
                     end: Optional[datetime] = None) -> List[ExperimentMetricBucket]:
        """Buckets for an experiment ordered by ``bucket_start``."""
        experiment = self.registry.get(experiment_id)
        stmt = select(ExperimentMetricBucket).where(ExperimentMetricBucket.experiment_id == experiment.id)
        if start is not None:
            stmt = stmt.where(ExperimentMetricBucket.bucket_start >= to_naive_utc(start))
        if end is not None:
            stmt = stmt.where(ExperimentMetricBucket.bucket_start <= to_naive_utc(end))
        stmt = stmt.order_by(
            ExperimentMetricBucket.bucket_start,
            ExperimentMetricBucket.variant_key,
            ExperimentMetricBucket.metric_key,
        )
        return list(self.db.execute(stmt).scalars())

    def _upsert_bucket(self, values: Dict[str, Any]) -> None:
        """Overwrite (or create) the bucket identified by its window key."""
        totals = {k: values[k] for k in ("count", "sum", "sum_sq", "min", "max")}
        insert = dialect_insert(self.db)
        if insert is not None:
            stmt = insert(ExperimentMetricBucket).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["experiment_id", "variant_key", "metric_key", "bucket_start", "bucket_ms"],
                set_=totals,
            )
            self.db.execute(stmt)
            return

        bucket = self.db.execute(
            select(ExperimentMetricBucket).where(
                ExperimentMetricBucket.experiment_id == values["experiment_id"],
                ExperimentMetricBucket.variant_key == values["variant_key"],
                ExperimentMetricBucket.metric_key == values["metric_key"],
                ExperimentMetricBucket.bucket_start == values["bucket_start"],
                ExperimentMetricBucket.bucket_ms == values["bucket_ms"],
            )
        ).scalars().first()
        if bucket is None:
            self.db.add(ExperimentMetricBucket(**values))
        else:
            for field, value in totals.items():
                setattr(bucket, field, value)
        self.db.flush()
