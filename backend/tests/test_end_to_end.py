"""Full flow: assign subjects, ingest events, aggregate, pick a winner, notify."""
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from splitlab.models import ExperimentAssignment, ExperimentStatus
from splitlab.services.assignments import AssignmentEngine
from splitlab.services.ingestion import EventIngestion
from splitlab.services.notifications import WinnerBroadcaster
from splitlab.services.winner import WinnerEvaluator

from conftest import fixed_clock


class RecordingSubscriber:
    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(message)


def test_checkout_cta_scenario(db: Session, cache, make_experiment):
    """
    Every subject views the checkout; only subjects in variant a purchase.
    Variant a must win on purchase/view rate and subscribers hear about it.
    """
    experiment = make_experiment(assignment={"salt": "checkout-cta-2024"})
    assignments = AssignmentEngine(db, cache, clock=fixed_clock)
    ingestion = EventIngestion(db, assignments, clock=fixed_clock)
    broadcaster = WinnerBroadcaster()
    subscriber = RecordingSubscriber()
    broadcaster.subscribe("checkout-cta", subscriber)
    evaluator = WinnerEvaluator(db, cache, broadcaster=broadcaster, clock=fixed_clock)

    variants = {}
    for i in range(60):
        subject_id = f"user_{i}"
        _, assignment = assignments.get_or_create_assignment(None, "checkout-cta", subject_id)
        variants[subject_id] = assignment["variant_key"]

        events = [{"eventKey": "view"}]
        if assignment["variant_key"] == "a":
            events.append({"eventKey": "purchase", "value": 1})
        assert ingestion.ingest_events(None, "checkout-cta", subject_id, events) == {"inserted_count": len(events)}

    assert set(variants.values()) == {"a", "b"}
    assert db.execute(select(func.count()).select_from(ExperimentAssignment)).scalar_one() == 60

    run = evaluator.run_aggregation_and_winner()

    item = run["items"][0]
    assert item["experiment_id"] == str(experiment.id)
    assert item["winner"]["decided"] is True
    assert item["winner"]["winner_variant_key"] == "a"
    assert item["winner"]["reason"] == "auto:rate:maximize"

    db.refresh(experiment)
    assert experiment.status == ExperimentStatus.COMPLETED
    assert experiment.winner_variant_key == "a"

    assert subscriber.messages == [{
        "type": "winner",
        "experimentCode": "checkout-cta",
        "winnerVariantKey": "a",
        "decidedAt": "2024-01-15T12:00:00.000Z"
    }]

    # Assignments stay readable and unchanged after completion
    for subject_id in ("user_0", "user_1", "user_2"):
        _, assignment = assignments.get_or_create_assignment(None, "checkout-cta", subject_id)
        assert assignment["variant_key"] == variants[subject_id]

    # A second run is a no-op for the decision
    again = evaluator.run_aggregation_and_winner()
    assert again["items"][0]["winner"]["reason"] == "already_decided"
    assert len(subscriber.messages) == 1
