"""Tests for winner evaluation and the scheduled aggregation run."""
import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session

from splitlab.models import ExperimentAssignment, ExperimentStatus
from splitlab.services.aggregation import MetricAggregator
from splitlab.services.errors import ValidationError
from splitlab.services.winner import WinnerEvaluator

from conftest import NOW, fixed_clock


@pytest.fixture
def evaluator(db: Session, cache):
    return WinnerEvaluator(db, cache, clock=fixed_clock)


def _seed_rates(experiment, record_events, a=(20, 5), b=(20, 2)):
    """Record (views, purchases) per variant."""
    for variant_key, (views, purchases) in (("a", a), ("b", b)):
        record_events(experiment, variant_key, "view", views)
        record_events(experiment, variant_key, "purchase", purchases)


def _aggregate_and_evaluate(evaluator, experiment):
    evaluator.aggregator.aggregate_experiment(experiment.id)
    return evaluator.evaluate_winner(experiment.id)


def test_highest_rate_wins(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment()
    _seed_rates(experiment, record_events)

    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result["decided"] is True
    assert result["winner_variant_key"] == "a"
    assert result["reason"] == "auto:rate:maximize"
    assert result["scores"][0] == {"variant_key": "a", "score": 0.25, "conversions": 5.0, "exposures": 20.0}

    db.refresh(experiment)
    assert experiment.winner_variant_key == "a"
    assert experiment.winner_decided_at == NOW
    assert experiment.winner_reason == "auto:rate:maximize"
    assert experiment.status == ExperimentStatus.COMPLETED


def test_minimize_objective(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment(primary_metric={
        "key": "bounce_rate", "kind": "rate",
        "numeratorEventKey": "purchase", "denominatorEventKey": "view",
        "objective": "minimize"
    })
    _seed_rates(experiment, record_events)

    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result["winner_variant_key"] == "b"
    assert result["reason"] == "auto:rate:minimize"


@pytest.mark.parametrize("kind,expected", [("count", "b"), ("sum", "a"), ("avg", "a")])
def test_non_rate_metric_kinds(db: Session, evaluator, make_experiment, record_events, kind, expected):
    experiment = make_experiment(primary_metric={"key": "revenue", "kind": kind})
    record_events(experiment, "a", "revenue", 2, value=50.0)   # count 2, sum 100, avg 50
    record_events(experiment, "b", "revenue", 5, value=10.0)   # count 5, sum 50, avg 10

    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result["winner_variant_key"] == expected
    assert result["reason"] == f"auto:{kind}:maximize"


def test_ties_keep_declared_order(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment()
    _seed_rates(experiment, record_events, a=(10, 1), b=(10, 1))

    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result["winner_variant_key"] == "a"


def test_override_winner(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment(winner_policy={
        "mode": "automatic", "minExposures": 10, "minConversions": 1,
        "overrideWinnerVariantKey": "b"
    })
    _seed_rates(experiment, record_events)

    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result["winner_variant_key"] == "b"
    assert result["reason"] == "manual_override"


def test_null_override_is_ignored(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment(winner_policy={
        "mode": "automatic", "minExposures": 10, "minConversions": 1,
        "overrideWinnerVariantKey": None, "statMethod": None
    })
    _seed_rates(experiment, record_events)

    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result["winner_variant_key"] == "a"
    assert result["reason"] == "auto:rate:maximize"


def test_blank_kind_scores_as_count(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment(primary_metric={"key": "revenue", "kind": "", "objective": None})
    record_events(experiment, "a", "revenue", 2, value=50.0)
    record_events(experiment, "b", "revenue", 5, value=10.0)

    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result["winner_variant_key"] == "b"
    assert result["reason"] == "auto:count:maximize"


def test_insufficient_data(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment()
    _seed_rates(experiment, record_events, a=(5, 5), b=(9, 3))

    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result == {"decided": False, "reason": "insufficient_data"}
    db.refresh(experiment)
    assert experiment.winner_decided_at is None
    assert experiment.status == ExperimentStatus.RUNNING


def test_insufficient_conversions(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment()
    _seed_rates(experiment, record_events, a=(20, 0), b=(20, 0))

    assert _aggregate_and_evaluate(evaluator, experiment)["reason"] == "insufficient_data"


def test_manual_mode(evaluator, make_experiment, record_events):
    experiment = make_experiment(winner_policy={"mode": "manual"})
    _seed_rates(experiment, record_events)

    assert _aggregate_and_evaluate(evaluator, experiment) == {"decided": False, "reason": "manual_mode"}


def test_too_early(evaluator, make_experiment):
    experiment = make_experiment(winner_policy={"mode": "automatic", "pickAfterMs": 2 * 24 * 3600 * 1000})

    assert evaluator.evaluate_winner(experiment.id)["reason"] == "too_early"


def test_missing_started_at(evaluator, make_experiment):
    experiment = make_experiment(started_at=None)

    assert evaluator.evaluate_winner(experiment.id)["reason"] == "missing_started_at"


def test_no_variants(evaluator, make_experiment):
    experiment = make_experiment(variants=[])

    assert evaluator.evaluate_winner(experiment.id)["reason"] == "no_variants"


def test_invalid_primary_metrics(evaluator, make_experiment):
    rate = make_experiment(code="rate", primary_metric={"key": "cr", "kind": "rate", "numeratorEventKey": "purchase"})
    count = make_experiment(code="count", primary_metric={"kind": "count"})

    assert evaluator.evaluate_winner(rate.id)["reason"] == "invalid_primary_rate_metric"
    assert evaluator.evaluate_winner(count.id)["reason"] == "invalid_primary_metric"


def test_min_assignments_enforced(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment(winner_policy={
        "mode": "automatic", "minExposures": 10, "minConversions": 1, "minAssignments": 2
    })
    _seed_rates(experiment, record_events)
    for i, variant_key in enumerate(["a", "a", "b"]):
        db.add(ExperimentAssignment(
            experiment_id=experiment.id,
            subject_key=f"org:global:subject:user_{i}",
            variant_key=variant_key,
            assigned_at=NOW
        ))
    db.commit()

    assert _aggregate_and_evaluate(evaluator, experiment)["reason"] == "insufficient_assignments"

    db.add(ExperimentAssignment(
        experiment_id=experiment.id,
        subject_key="org:global:subject:user_3",
        variant_key="b",
        assigned_at=NOW
    ))
    db.commit()

    assert evaluator.evaluate_winner(experiment.id)["winner_variant_key"] == "a"


def test_bayesian_beta_scored_as_simple_rate(evaluator, make_experiment, record_events):
    experiment = make_experiment(winner_policy={
        "mode": "automatic", "minExposures": 10, "minConversions": 1, "statMethod": "bayesian_beta"
    })
    _seed_rates(experiment, record_events)

    assert _aggregate_and_evaluate(evaluator, experiment)["winner_variant_key"] == "a"


def test_winner_set_once(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment()
    _seed_rates(experiment, record_events)
    _aggregate_and_evaluate(evaluator, experiment)

    # b now clearly better, but the decision stands
    record_events(experiment, "b", "purchase", 18)
    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result == {"decided": True, "reason": "already_decided", "winner_variant_key": "a"}
    db.refresh(experiment)
    assert experiment.winner_variant_key == "a"


def test_concurrent_decision_is_not_overwritten(db: Session, evaluator, make_experiment, record_events):
    """If another run records a winner first, this evaluation reports it unchanged."""
    experiment = make_experiment()
    _seed_rates(experiment, record_events)
    evaluator.aggregator.aggregate_experiment(experiment.id)

    real_record = evaluator._record_winner

    def record_after_competitor(exp, winner_key, reason, decided_at):
        exp.winner_variant_key = "b"
        exp.winner_decided_at = decided_at - timedelta(seconds=1)
        exp.winner_reason = "manual_override"
        db.commit()
        return real_record(exp, winner_key, reason, decided_at)

    evaluator._record_winner = record_after_competitor
    result = evaluator.evaluate_winner(experiment.id)

    assert result == {"decided": True, "reason": "already_decided", "winner_variant_key": "b"}


def test_notifications_sent_after_decision(db: Session, cache, make_experiment, record_events):
    org_id = uuid.uuid4()
    experiment = make_experiment(organization_id=org_id)
    _seed_rates(experiment, record_events)
    broadcaster = MagicMock()
    webhooks = MagicMock()
    evaluator = WinnerEvaluator(db, cache, broadcaster=broadcaster, webhooks=webhooks, clock=fixed_clock)

    _aggregate_and_evaluate(evaluator, experiment)

    broadcaster.broadcast_winner_changed.assert_called_once_with("checkout-cta", "a", NOW)
    event, data, organization_id = webhooks.emit.call_args[0]
    assert event == "experiment.winner_changed"
    assert data["winnerVariantKey"] == "a"
    assert data["decidedAt"] == "2024-01-15T12:00:00.000Z"
    assert organization_id == org_id


def test_global_experiment_skips_webhooks(db: Session, cache, make_experiment, record_events):
    experiment = make_experiment()
    _seed_rates(experiment, record_events)
    webhooks = MagicMock()
    evaluator = WinnerEvaluator(db, cache, webhooks=webhooks, clock=fixed_clock)

    _aggregate_and_evaluate(evaluator, experiment)

    webhooks.emit.assert_not_called()


def test_notification_failures_do_not_undo_decision(db: Session, cache, make_experiment, record_events):
    experiment = make_experiment(organization_id=uuid.uuid4())
    _seed_rates(experiment, record_events)
    broadcaster = MagicMock()
    broadcaster.broadcast_winner_changed.side_effect = RuntimeError("socket gone")
    webhooks = MagicMock()
    webhooks.emit.side_effect = ConnectionError("webhook host down")
    evaluator = WinnerEvaluator(db, cache, broadcaster=broadcaster, webhooks=webhooks, clock=fixed_clock)

    result = _aggregate_and_evaluate(evaluator, experiment)

    assert result["decided"] is True
    db.refresh(experiment)
    assert experiment.winner_variant_key == "a"


def test_snapshot_cached_and_cleared_on_decision(db: Session, evaluator, make_experiment, record_events):
    experiment = make_experiment()
    _seed_rates(experiment, record_events)

    before = evaluator.get_winner_snapshot(None, "checkout-cta")
    assert before["status"] == "running"
    assert before["winner_variant_key"] is None

    # Direct edits are invisible until the cache entry goes away
    experiment.winner_reason = "edited"
    db.commit()
    assert evaluator.get_winner_snapshot(None, "checkout-cta")["winner_reason"] is None

    _aggregate_and_evaluate(evaluator, experiment)
    after = evaluator.get_winner_snapshot(None, "checkout-cta")

    assert after["status"] == "completed"
    assert after["winner_variant_key"] == "a"
    assert after["winner_decided_at"] == "2024-01-15T12:00:00.000Z"
    assert after["winner_reason"] == "auto:rate:maximize"


def test_run_covers_active_experiments_only(db: Session, evaluator, make_experiment, record_events):
    running = make_experiment(code="running")
    make_experiment(code="draft", status=ExperimentStatus.DRAFT)
    make_experiment(code="paused", status=ExperimentStatus.PAUSED)
    _seed_rates(running, record_events)

    result = evaluator.run_aggregation_and_winner()

    assert result["bucket_ms"] == 3600000
    assert result["range"] == {"start": "2024-01-15T06:00:00.000Z", "end": "2024-01-15T12:00:00.000Z"}
    assert [item["experiment_id"] for item in result["items"]] == [str(running.id)]
    assert result["items"][0]["winner"]["winner_variant_key"] == "a"


def test_run_isolates_failing_experiment(db: Session, cache, make_experiment, record_events):
    broken = make_experiment(code="broken")
    healthy = make_experiment(code="healthy")
    _seed_rates(healthy, record_events)

    class FlakyAggregator(MetricAggregator):
        def aggregate_experiment(self, experiment_id, bucket_ms=None, start=None, end=None):
            if experiment_id == broken.id:
                raise RuntimeError("boom")
            return super().aggregate_experiment(experiment_id, bucket_ms, start, end)

    evaluator = WinnerEvaluator(db, cache, aggregator=FlakyAggregator(db, clock=fixed_clock), clock=fixed_clock)

    items = {item["experiment_id"]: item for item in evaluator.run_aggregation_and_winner()["items"]}

    assert items[str(broken.id)]["error"] == "boom"
    assert items[str(broken.id)]["winner"] == {"decided": False, "reason": "aggregation_failed"}
    assert items[str(healthy.id)]["winner"]["winner_variant_key"] == "a"
    assert items[str(healthy.id)]["aggregated"] == 4


def test_run_rejects_negative_bucket_width(evaluator, make_experiment):
    make_experiment()

    with pytest.raises(ValidationError):
        evaluator.run_aggregation_and_winner(bucket_ms=-3600000)
