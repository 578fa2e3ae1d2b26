"""Dependency wiring for the experiment services.

Every service receives its collaborators (session, cache, sinks) here
instead of reaching for module globals, so tests can override any of them
through ``app.dependency_overrides``.
"""
from datetime import timedelta
from functools import lru_cache
from typing import Callable, Optional

import redis
from fastapi import Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from splitlab.config import get_settings
from splitlab.database import get_db
from splitlab.middleware.logging import get_logger
from splitlab.services.aggregation import MetricAggregator
from splitlab.services.assignments import AssignmentEngine
from splitlab.services.cache import CacheLayer, RedisCache
from splitlab.services.ingestion import EventIngestion
from splitlab.services.notifications import WinnerBroadcaster
from splitlab.services.rate_limiter import RateLimiter
from splitlab.services.retention import RetentionSweeper
from splitlab.services.settings_store import SettingsStore
from splitlab.services.webhooks import WebhookDispatcher
from splitlab.services.winner import WinnerEvaluator

settings = get_settings()
logger = get_logger()


@lru_cache()
def get_redis() -> redis.Redis:
    """Shared Redis client (connection pool is lazy)."""
    return redis.from_url(settings.redis_url)


def get_cache(redis_client: redis.Redis = Depends(get_redis)) -> CacheLayer:
    return RedisCache(redis_client)


def get_rate_limiter(redis_client: redis.Redis = Depends(get_redis)) -> RateLimiter:
    return RateLimiter(redis_client)


def get_broadcaster(request: Request) -> WinnerBroadcaster:
    return request.app.state.broadcaster


def get_org_id(
    x_org_id: Optional[str] = Header(None),
    org_id: Optional[str] = Query(None, alias="orgId")
) -> Optional[str]:
    """Organization scope from the x-org-id header, else the orgId query param."""
    return x_org_id or org_id


def get_webhook_dispatcher(request: Request, db: Session = Depends(get_db)) -> WebhookDispatcher:
    return WebhookDispatcher(
        db,
        timeout=settings.webhook_timeout_seconds,
        executor=getattr(request.app.state, "webhook_executor", None)
    )


def get_assignment_engine(
    db: Session = Depends(get_db),
    cache: CacheLayer = Depends(get_cache)
) -> AssignmentEngine:
    return AssignmentEngine(db, cache, ttl_seconds=settings.assignment_cache_ttl)


def get_event_ingestion(
    db: Session = Depends(get_db),
    assignments: AssignmentEngine = Depends(get_assignment_engine)
) -> EventIngestion:
    return EventIngestion(db, assignments)


def get_metric_aggregator(db: Session = Depends(get_db)) -> MetricAggregator:
    return MetricAggregator(db, default_lookback=timedelta(hours=settings.aggregation_default_lookback_hours))


def get_winner_evaluator(
    db: Session = Depends(get_db),
    cache: CacheLayer = Depends(get_cache),
    aggregator: MetricAggregator = Depends(get_metric_aggregator),
    broadcaster: WinnerBroadcaster = Depends(get_broadcaster),
    webhooks: WebhookDispatcher = Depends(get_webhook_dispatcher)
) -> WinnerEvaluator:
    return WinnerEvaluator(
        db,
        cache,
        aggregator=aggregator,
        broadcaster=broadcaster,
        webhooks=webhooks,
        winner_ttl=settings.winner_cache_ttl,
        run_window=timedelta(hours=settings.aggregation_window_hours)
    )


def get_retention_sweeper(db: Session = Depends(get_db)) -> RetentionSweeper:
    return RetentionSweeper(
        db,
        SettingsStore(db),
        events_default_days=settings.events_retention_days,
        metrics_default_days=settings.metrics_retention_days
    )


def rate_limit(name: str, limit_setting: str) -> Callable:
    """
    Build a per-client fixed-window rate limit dependency.

    Args:
        name: Limiter name, part of the Redis key
        limit_setting: Settings attribute holding the per-window limit
    """
    async def dependency(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)):
        client = request.client.host if request.client else "unknown"
        limit = getattr(settings, limit_setting)
        allowed, count = limiter.check_rate_limit(
            f"{name}:{client}",
            limit=limit,
            window=settings.rate_limit_window
        )
        if not allowed:
            logger.warning("rate_limit_exceeded", limiter=name, client_ip=client, count=count)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Limit: {limit} requests per {settings.rate_limit_window}s",
                headers={"X-RateLimit-Limit": str(limit), "X-RateLimit-Remaining": "0"}
            )

    return dependency
