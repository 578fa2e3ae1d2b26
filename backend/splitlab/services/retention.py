"""Retention cleanup for raw events and metric buckets."""
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import delete
from sqlalchemy.orm import Session

from splitlab.models.event import ExperimentEvent
from splitlab.models.metric_bucket import ExperimentMetricBucket
from splitlab.services.settings_store import SettingsStore
from splitlab.timeutils import isoformat, utcnow

logger = structlog.get_logger()

EVENTS_RETENTION_KEY = "EXPERIMENT_EVENTS_RETENTION_DAYS"
METRICS_RETENTION_KEY = "EXPERIMENT_METRICS_RETENTION_DAYS"


def _to_int(value, fallback: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return fallback


class RetentionSweeper:
    """
    Deletes events and buckets older than the configured retention windows.

    Idempotent; safe to run repeatedly or alongside aggregation.
    """

    def __init__(self, db: Session, settings_store: Optional[SettingsStore] = None,
                 events_default_days: int = 30, metrics_default_days: int = 180, clock=utcnow):
        self.db = db
        self.settings_store = settings_store or SettingsStore(db)
        self.events_default_days = events_default_days
        self.metrics_default_days = metrics_default_days
        self.clock = clock

    def run_retention_cleanup(self) -> Dict[str, Any]:
        """
        Delete events with ``ts < now - events_days`` and buckets with
        ``bucket_start < now - metrics_days``. Rows exactly at a cutoff stay.
        """
        events_days = _to_int(
            self.settings_store.get_setting_value(EVENTS_RETENTION_KEY, str(self.events_default_days)),
            self.events_default_days,
        )
        metrics_days = _to_int(
            self.settings_store.get_setting_value(METRICS_RETENTION_KEY, str(self.metrics_default_days)),
            self.metrics_default_days,
        )

        now = self.clock()
        events_cutoff = now - timedelta(days=events_days)
        metrics_cutoff = now - timedelta(days=metrics_days)

        events_result = self.db.execute(
            delete(ExperimentEvent).where(ExperimentEvent.ts < events_cutoff),
            execution_options={"synchronize_session": False},
        )
        buckets_result = self.db.execute(
            delete(ExperimentMetricBucket).where(ExperimentMetricBucket.bucket_start < metrics_cutoff),
            execution_options={"synchronize_session": False},
        )
        self.db.commit()

        deleted = {
            "events": events_result.rowcount or 0,
            "metric_buckets": buckets_result.rowcount or 0,
        }
        logger.info(
            "retention_cleanup_completed",
            events_retention_days=events_days,
            metrics_retention_days=metrics_days,
            deleted_events=deleted["events"],
            deleted_metric_buckets=deleted["metric_buckets"]
        )

        return {
            "events_retention_days": events_days,
            "metrics_retention_days": metrics_days,
            "cutoffs": {
                "events_cutoff": isoformat(events_cutoff),
                "metrics_cutoff": isoformat(metrics_cutoff),
            },
            "deleted": deleted,
        }
