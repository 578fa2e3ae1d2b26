"""Run the scheduled experiment jobs from the command line.

Usage:
    python run_jobs.py aggregate [--bucket-ms 3600000] [--start ISO] [--end ISO]
    python run_jobs.py retention

Equivalent to the internal HTTP endpoints, for cron hosts that would rather
not go through the API.
"""
import argparse
import json
import sys
from datetime import timedelta

import redis

from splitlab.config import get_settings
from splitlab.database import SessionLocal
from splitlab.middleware.logging import get_logger
from splitlab.services.aggregation import MetricAggregator
from splitlab.services.cache import RedisCache
from splitlab.services.retention import RetentionSweeper
from splitlab.services.settings_store import SettingsStore
from splitlab.services.webhooks import WebhookDispatcher
from splitlab.services.winner import WinnerEvaluator
from splitlab.timeutils import parse_timestamp

logger = get_logger()


def _timestamp(value: str):
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid timestamp: {value}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SplitLab scheduled jobs")
    subparsers = parser.add_subparsers(dest="job", required=True)

    aggregate = subparsers.add_parser("aggregate", help="Aggregate events and evaluate winners")
    aggregate.add_argument("--bucket-ms", type=int, default=None, help="Bucket width in milliseconds")
    aggregate.add_argument("--start", type=_timestamp, default=None, help="Window start (ISO 8601)")
    aggregate.add_argument("--end", type=_timestamp, default=None, help="Window end (ISO 8601)")

    subparsers.add_parser("retention", help="Delete events and buckets past retention")
    return parser


def run_aggregate(db, args) -> dict:
    settings = get_settings()
    # Same Redis as the API, so a decision here clears the snapshot it serves
    cache = RedisCache(redis.from_url(settings.redis_url))
    evaluator = WinnerEvaluator(
        db,
        cache,
        aggregator=MetricAggregator(db, default_lookback=timedelta(hours=settings.aggregation_default_lookback_hours)),
        webhooks=WebhookDispatcher(db, timeout=settings.webhook_timeout_seconds),
        winner_ttl=settings.winner_cache_ttl,
        run_window=timedelta(hours=settings.aggregation_window_hours)
    )
    return evaluator.run_aggregation_and_winner(
        bucket_ms=args.bucket_ms or settings.aggregation_bucket_ms,
        start=args.start,
        end=args.end
    )


def run_retention(db, args) -> dict:
    settings = get_settings()
    sweeper = RetentionSweeper(
        db,
        SettingsStore(db),
        events_default_days=settings.events_retention_days,
        metrics_default_days=settings.metrics_retention_days
    )
    return sweeper.run_retention_cleanup()


JOBS = {
    "aggregate": run_aggregate,
    "retention": run_retention,
}


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    db = SessionLocal()
    try:
        result = JOBS[args.job](db, args)
    except Exception as e:
        logger.error("job_failed", job=args.job, error=str(e), error_type=type(e).__name__)
        db.rollback()
        return 1
    finally:
        db.close()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
