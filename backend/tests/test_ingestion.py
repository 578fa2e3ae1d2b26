"""Tests for event ingestion."""
import math
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from splitlab.models import ExperimentAssignment, ExperimentEvent, ExperimentStatus
from splitlab.services.assignments import AssignmentEngine
from splitlab.services.errors import ConflictError, NotFoundError, ValidationError
from splitlab.services.ingestion import EventIngestion, parse_event_value

from conftest import NOW, fixed_clock


@pytest.fixture
def ingestion(db: Session, cache):
    return EventIngestion(db, AssignmentEngine(db, cache, clock=fixed_clock), clock=fixed_clock)


def _events(db: Session):
    return db.execute(select(ExperimentEvent).order_by(ExperimentEvent.ts)).scalars().all()


def test_parse_event_value():
    assert parse_event_value(None) == 1.0
    assert parse_event_value(3) == 3.0
    assert parse_event_value("2.5") == 2.5


@pytest.mark.parametrize("raw", [True, "abc", math.inf, float("nan"), [1]])
def test_parse_event_value_rejects_non_finite_or_non_numeric(raw):
    with pytest.raises(ValidationError):
        parse_event_value(raw)


def test_events_use_assigned_variant(db: Session, ingestion, make_experiment):
    make_experiment()

    result = ingestion.ingest_events(None, "checkout-cta", "user_1", [
        {"eventKey": "view"},
        {"eventKey": "purchase", "value": 49.9}
    ])

    assignment = db.execute(select(ExperimentAssignment)).scalars().one()
    events = _events(db)

    assert result == {"inserted_count": 2}
    assert {e.variant_key for e in events} == {assignment.variant_key}
    assert all(e.subject_key == "org:global:subject:user_1" for e in events)
    assert sorted(e.value for e in events) == [1.0, 49.9]
    assert all(e.ts == NOW for e in events)


def test_explicit_variant_skips_assignment(db: Session, ingestion, make_experiment):
    make_experiment()

    ingestion.ingest_events(None, "checkout-cta", "user_1", [{"eventKey": "view", "variantKey": "b"}])

    count = db.execute(select(func.count()).select_from(ExperimentAssignment)).scalar_one()
    assert count == 0
    assert _events(db)[0].variant_key == "b"


def test_snake_case_fields_accepted(db: Session, ingestion, make_experiment):
    make_experiment()

    ingestion.ingest_events(None, "checkout-cta", "user_1", [{"event_key": "view", "variant_key": "a"}])

    assert _events(db)[0].event_key == "view"


def test_timestamps_parsed(db: Session, ingestion, make_experiment):
    make_experiment()

    ingestion.ingest_events(None, "checkout-cta", "user_1", [
        {"eventKey": "view", "variantKey": "a", "ts": "2024-01-15T10:30:00Z"},
        {"eventKey": "view", "variantKey": "a", "ts": 1705312800000}  # 2024-01-15T10:00:00Z
    ])

    assert [e.ts for e in _events(db)] == [
        datetime(2024, 1, 15, 10, 0, 0),
        datetime(2024, 1, 15, 10, 30, 0)
    ]


def test_meta_stored(db: Session, ingestion, make_experiment):
    make_experiment()

    ingestion.ingest_events(None, "checkout-cta", "user_1", [
        {"eventKey": "view", "variantKey": "a", "meta": {"source": "web"}}
    ])

    assert _events(db)[0].meta == {"source": "web"}


@pytest.mark.parametrize("events,message", [
    ([], "events[] is required"),
    ("view", "events[] is required"),
    (["view"], "Invalid event"),
    ([{"value": 1}], "eventKey is required"),
    ([{"eventKey": "view", "ts": "yesterday"}], "Invalid ts"),
    ([{"eventKey": "view", "value": "lots"}], "Invalid value"),
    ([{"eventKey": "view", "variantKey": "z"}], "Invalid variantKey"),
])
def test_invalid_batches_rejected(db: Session, ingestion, make_experiment, events, message):
    make_experiment()

    with pytest.raises(ValidationError) as exc_info:
        ingestion.ingest_events(None, "checkout-cta", "user_1", events)

    assert exc_info.value.message == message
    assert _events(db) == []


def test_one_bad_event_fails_whole_batch(db: Session, ingestion, make_experiment):
    make_experiment()

    with pytest.raises(ValidationError):
        ingestion.ingest_events(None, "checkout-cta", "user_1", [
            {"eventKey": "view", "variantKey": "a"},
            {"eventKey": ""}
        ])

    assert _events(db) == []


def test_unknown_experiment(ingestion):
    with pytest.raises(NotFoundError):
        ingestion.ingest_events(None, "missing", "user_1", [{"eventKey": "view"}])


def test_missing_subject(ingestion, make_experiment):
    make_experiment()

    with pytest.raises(ValidationError):
        ingestion.ingest_events(None, "checkout-cta", None, [{"eventKey": "view"}])


def test_assignment_needed_on_draft_experiment(db: Session, ingestion, make_experiment):
    make_experiment(status=ExperimentStatus.DRAFT)

    with pytest.raises(ConflictError):
        ingestion.ingest_events(None, "checkout-cta", "user_1", [{"eventKey": "view"}])


def test_bulk_insert_falls_back_to_single_rows():
    """A failed batch is retried row by row; failing rows are skipped."""
    db_mock = MagicMock()
    db_mock.execute.side_effect = [
        SQLAlchemyError("batch failed"),  # bulk insert
        None,                             # row 1
        SQLAlchemyError("row failed"),    # row 2
        None                              # row 3
    ]
    ingestion = EventIngestion(db_mock, MagicMock())
    rows = [{"event_key": "view", "variant_key": "a"} for _ in range(3)]

    inserted = ingestion._bulk_insert(rows)

    assert inserted == 2
    db_mock.rollback.assert_called_once()
    assert db_mock.begin_nested.call_count == 3
    db_mock.commit.assert_called_once()
