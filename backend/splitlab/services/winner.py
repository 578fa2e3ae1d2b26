"""Winner evaluation, winner snapshots and the scheduled aggregation run."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from splitlab.models.assignment import ExperimentAssignment
from splitlab.models.experiment import Experiment, ExperimentStatus
from splitlab.schemas.experiment import ExperimentDefinition
from splitlab.services.aggregation import MetricAggregator, resolve_bucket_ms
from splitlab.services.cache import CacheLayer
from splitlab.services.experiments import ExperimentRegistry
from splitlab.services.notifications import WinnerBroadcaster
from splitlab.services.webhooks import WINNER_CHANGED_EVENT, WebhookDispatcher
from splitlab.timeutils import isoformat, to_naive_utc, utcnow

logger = structlog.get_logger()

WINNER_NAMESPACE = "experiments.winner"
DEFAULT_WINNER_TTL = 30
DEFAULT_RUN_WINDOW = timedelta(hours=6)


def _not_decided(reason: str) -> Dict[str, Any]:
    return {"decided": False, "reason": reason}


class WinnerEvaluator:
    """
    Scores variants from aggregated buckets and records a winner.

    Only automatic-mode experiments are evaluated. A recorded winner is
    never replaced. Notifications (broadcast, webhook) are best effort and
    sent after the decision is committed.
    """

    def __init__(
        self,
        db: Session,
        cache: CacheLayer,
        aggregator: Optional[MetricAggregator] = None,
        broadcaster: Optional[WinnerBroadcaster] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        registry: Optional[ExperimentRegistry] = None,
        winner_ttl: int = DEFAULT_WINNER_TTL,
        run_window: timedelta = DEFAULT_RUN_WINDOW,
        clock=utcnow,
    ):
        self.db = db
        self.cache = cache
        self.registry = registry or ExperimentRegistry(db)
        self.aggregator = aggregator or MetricAggregator(db, registry=self.registry, clock=clock)
        self.broadcaster = broadcaster
        self.webhooks = webhooks
        self.winner_ttl = winner_ttl
        self.run_window = run_window
        self.clock = clock

    def evaluate_winner(self, experiment_id) -> Dict[str, Any]:
        """
        Decide the winner of an experiment if its policy allows it.

        Returns a dict with ``decided`` and ``reason``; decided results also
        carry ``winner_variant_key`` and, when freshly decided, per-variant
        ``scores``. Undecided reasons: manual_mode, missing_started_at,
        too_early, no_variants, invalid_primary_rate_metric,
        invalid_primary_metric, insufficient_data, insufficient_assignments.

        Raises:
            NotFoundError: Unknown experiment
        """
        experiment = self.registry.get(experiment_id)
        definition = ExperimentDefinition.from_experiment(experiment)
        policy = definition.winner_policy

        if policy.mode != "automatic":
            return _not_decided("manual_mode")

        if experiment.winner_variant_key and experiment.winner_decided_at:
            return {
                "decided": True,
                "reason": "already_decided",
                "winner_variant_key": experiment.winner_variant_key,
            }

        started_at = experiment.started_at
        if started_at is None:
            return _not_decided("missing_started_at")

        now = self.clock()
        if policy.pick_after_ms > 0 and now - started_at < timedelta(milliseconds=policy.pick_after_ms):
            return _not_decided("too_early")

        variant_keys = definition.variant_keys
        if not variant_keys:
            return _not_decided("no_variants")

        primary = definition.primary_metric
        kind = primary.kind
        objective = primary.objective

        if kind == "rate" and not (primary.numerator_event_key and primary.denominator_event_key):
            return _not_decided("invalid_primary_rate_metric")
        if kind != "rate" and not primary.key:
            return _not_decided("invalid_primary_metric")

        if policy.stat_method != "simple_rate":
            logger.warning(
                "stat_method_not_implemented",
                experiment_id=str(experiment.id),
                stat_method=policy.stat_method
            )

        scores = [self._score_variant(experiment, variant_key, definition) for variant_key in variant_keys]

        if kind == "rate":
            enough = any(
                s["exposures"] >= policy.min_exposures and s["conversions"] >= policy.min_conversions
                for s in scores
            )
            if not enough:
                return _not_decided("insufficient_data")

        if policy.min_assignments > 0:
            counts = self._assignment_counts(experiment)
            short = [
                v.key for v in definition.eligible_variants
                if counts.get(v.key, 0) < policy.min_assignments
            ]
            if short:
                return _not_decided("insufficient_assignments")

        # sorted() is stable, so ties keep declared variant order
        ranked = sorted(scores, key=lambda s: s["score"], reverse=(objective == "maximize"))

        override = policy.override_winner_variant_key
        winner_key = override or ranked[0]["variant_key"]
        reason = "manual_override" if override else f"auto:{kind}:{objective}"

        if not self._record_winner(experiment, winner_key, reason, now):
            self.db.refresh(experiment)
            return {
                "decided": True,
                "reason": "already_decided",
                "winner_variant_key": experiment.winner_variant_key,
            }

        logger.info(
            "winner_decided",
            experiment_id=str(experiment.id),
            experiment_code=experiment.code,
            winner=winner_key,
            reason=reason
        )

        self.clear_experiment_caches(experiment.id)
        self._notify_winner_changed(experiment)

        return {
            "decided": True,
            "reason": reason,
            "winner_variant_key": winner_key,
            "scores": scores,
        }

    def get_winner_snapshot(self, org_id, experiment_code: str) -> Dict[str, Any]:
        """Current winner state for an experiment, cached briefly."""
        experiment = self.registry.resolve(org_id, experiment_code)

        cache_key = str(experiment.id)
        cached = self.cache.get(cache_key, namespace=WINNER_NAMESPACE)
        if isinstance(cached, dict):
            return cached

        snapshot = {
            "experiment_id": str(experiment.id),
            "organization_id": str(experiment.organization_id) if experiment.organization_id else None,
            "code": experiment.code,
            "status": experiment.status,
            "winner_variant_key": experiment.winner_variant_key or None,
            "winner_decided_at": isoformat(experiment.winner_decided_at),
            "winner_reason": experiment.winner_reason or None,
        }
        self.cache.set(cache_key, snapshot, namespace=WINNER_NAMESPACE, ttl_seconds=self.winner_ttl)
        return snapshot

    def clear_experiment_caches(self, experiment_id) -> None:
        self.cache.delete(str(experiment_id), namespace=WINNER_NAMESPACE)

    def run_aggregation_and_winner(
        self,
        bucket_ms: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Aggregate then evaluate every running or completed experiment, one at a time.

        A failure in one experiment is recorded in its item and does not stop
        the batch.

        Args:
            bucket_ms: Bucket width in ms (default 1 hour)
            start: Window start (default: now - 6h)
            end: Window end (default: now)
        """
        now = self.clock()
        width = resolve_bucket_ms(bucket_ms)
        start_at = to_naive_utc(start) if start else now - self.run_window
        end_at = to_naive_utc(end) if end else now

        experiment_ids = self.db.execute(
            select(Experiment.id)
            .where(Experiment.status.in_(ExperimentStatus.ACTIVE))
            .order_by(Experiment.created_at, Experiment.id)
        ).scalars().all()

        items: List[Dict[str, Any]] = []
        for experiment_id in experiment_ids:
            item: Dict[str, Any] = {"experiment_id": str(experiment_id), "aggregated": 0}
            try:
                result = self.aggregator.aggregate_experiment(experiment_id, bucket_ms=width, start=start_at, end=end_at)
                item["aggregated"] = result["aggregated"]
            except Exception as e:
                self.db.rollback()
                logger.error(
                    "experiment_aggregation_failed",
                    experiment_id=str(experiment_id),
                    error=str(e),
                    error_type=type(e).__name__
                )
                item["error"] = str(e)
                item["winner"] = _not_decided("aggregation_failed")
                items.append(item)
                continue

            try:
                item["winner"] = self.evaluate_winner(experiment_id)
            except Exception as e:
                self.db.rollback()
                logger.error(
                    "winner_evaluation_failed",
                    experiment_id=str(experiment_id),
                    error=str(e),
                    error_type=type(e).__name__
                )
                item["winner"] = _not_decided(str(e))
            items.append(item)

        logger.info("aggregation_run_completed", experiments=len(items), bucket_ms=width)
        return {
            "range": {"start": isoformat(start_at), "end": isoformat(end_at)},
            "bucket_ms": width,
            "items": items,
        }

    def _score_variant(self, experiment: Experiment, variant_key: str,
                       definition: ExperimentDefinition) -> Dict[str, Any]:
        primary = definition.primary_metric
        start_at = experiment.started_at

        if primary.kind == "rate":
            num = self.aggregator.compute_totals(experiment.id, variant_key, primary.numerator_event_key, start_at)
            den = self.aggregator.compute_totals(experiment.id, variant_key, primary.denominator_event_key, start_at)
            conversions = num["sum"]
            exposures = den["sum"]
            return {
                "variant_key": variant_key,
                "score": conversions / exposures if exposures > 0 else 0,
                "conversions": conversions,
                "exposures": exposures,
            }

        totals = self.aggregator.compute_totals(experiment.id, variant_key, primary.key, start_at)
        if primary.kind == "count":
            score = totals["count"]
        elif primary.kind == "avg":
            score = totals["sum"] / totals["count"] if totals["count"] > 0 else 0
        else:
            score = totals["sum"]
        return {"variant_key": variant_key, "score": score, "count": totals["count"], "sum": totals["sum"]}

    def _assignment_counts(self, experiment: Experiment) -> Dict[str, int]:
        rows = self.db.execute(
            select(ExperimentAssignment.variant_key, func.count())
            .where(ExperimentAssignment.experiment_id == experiment.id)
            .group_by(ExperimentAssignment.variant_key)
        ).all()
        return {variant_key: count for variant_key, count in rows}

    def _record_winner(self, experiment: Experiment, winner_key: str, reason: str, decided_at: datetime) -> bool:
        """Persist the winner unless one was recorded concurrently. Returns True if written."""
        result = self.db.execute(
            update(Experiment)
            .where(Experiment.id == experiment.id, Experiment.winner_decided_at.is_(None))
            .values(
                winner_variant_key=winner_key,
                winner_decided_at=decided_at,
                winner_reason=reason,
                status=ExperimentStatus.COMPLETED,
                updated_at=decided_at,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            return False
        self.db.refresh(experiment)
        return True

    def _notify_winner_changed(self, experiment: Experiment) -> None:
        """Broadcast and webhook the decision. Failures are logged, never raised."""
        if self.broadcaster is not None:
            try:
                self.broadcaster.broadcast_winner_changed(
                    experiment.code, experiment.winner_variant_key, experiment.winner_decided_at
                )
            except Exception as e:
                logger.warning("winner_broadcast_failed", experiment_id=str(experiment.id), error=str(e))

        if experiment.organization_id and self.webhooks is not None:
            try:
                self.webhooks.emit(
                    WINNER_CHANGED_EVENT,
                    {
                        "experimentId": str(experiment.id),
                        "code": experiment.code,
                        "winnerVariantKey": experiment.winner_variant_key,
                        "decidedAt": isoformat(experiment.winner_decided_at),
                    },
                    experiment.organization_id,
                )
            except Exception as e:
                self.db.rollback()
                logger.warning("winner_webhook_failed", experiment_id=str(experiment.id), error=str(e))
