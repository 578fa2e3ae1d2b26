"""Shared fixtures: in-memory SQLite session, cache, frozen clock, experiment factory."""
import os

# Settings are cached on first import, so point them at test values first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("INTERNAL_API_TOKEN", "test-internal-token")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from splitlab.database import Base
from splitlab.models import Experiment, ExperimentEvent, ExperimentStatus
from splitlab.services.cache import MemoryCache

NOW = datetime(2024, 1, 15, 12, 0, 0)
INTERNAL_TOKEN = os.environ["INTERNAL_API_TOKEN"]


def fixed_clock():
    return NOW


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """Create test database session."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()

    yield session

    session.close()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def clock():
    return fixed_clock


@pytest.fixture
def make_experiment(db):
    """
    Factory for experiments. Defaults to the checkout-cta setup: two 50/50
    variants scored by purchase/view rate, automatic winner selection.
    """
    def _make(code: str = "checkout-cta", **overrides) -> Experiment:
        values = {
            "code": code,
            "name": code,
            "status": ExperimentStatus.RUNNING,
            "started_at": NOW - timedelta(days=1),
            "assignment": {},
            "variants": [
                {"key": "a", "weight": 50, "configSlug": f"{code}-a"},
                {"key": "b", "weight": 50, "configSlug": f"{code}-b"}
            ],
            "primary_metric": {
                "key": "purchase_rate",
                "kind": "rate",
                "numeratorEventKey": "purchase",
                "denominatorEventKey": "view",
                "objective": "maximize"
            },
            "winner_policy": {
                "mode": "automatic",
                "pickAfterMs": 0,
                "minExposures": 10,
                "minConversions": 1
            },
        }
        values.update(overrides)
        experiment = Experiment(**values)
        db.add(experiment)
        db.commit()
        db.refresh(experiment)
        return experiment

    return _make


@pytest.fixture
def record_events(db):
    """Insert ``count`` raw events for one variant directly into the store."""
    def _record(experiment: Experiment, variant_key: str, event_key: str, count: int,
                value: float = 1.0, ts: datetime = NOW - timedelta(hours=1)):
        for i in range(count):
            db.add(ExperimentEvent(
                experiment_id=experiment.id,
                organization_id=experiment.organization_id,
                subject_key=f"org:global:subject:{variant_key}_{i}",
                variant_key=variant_key,
                event_key=event_key,
                value=value,
                ts=ts
            ))
        db.commit()

    return _record
