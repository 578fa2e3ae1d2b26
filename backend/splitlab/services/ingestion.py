"""Event ingestion service."""
import math
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from splitlab.models.event import ExperimentEvent
from splitlab.schemas.experiment import ExperimentDefinition
from splitlab.services.assignments import AssignmentEngine
from splitlab.services.errors import ValidationError
from splitlab.services.experiments import compute_subject_key
from splitlab.timeutils import parse_timestamp, utcnow

logger = structlog.get_logger()


def _field(event: Mapping, camel: str, snake: str):
    value = event.get(camel)
    return event.get(snake) if value is None else value


def parse_event_value(raw: Any) -> float:
    """Event value, defaulting to 1. Must be a finite number."""
    if raw is None:
        return 1.0
    if isinstance(raw, bool):
        raise ValidationError("Invalid value")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Invalid value") from exc
    if not math.isfinite(value):
        raise ValidationError("Invalid value")
    return value


class EventIngestion:
    """Validates and records per-subject metric events."""

    def __init__(self, db: Session, assignments: AssignmentEngine, clock=utcnow):
        self.db = db
        self.assignments = assignments
        self.clock = clock

    def ingest_events(self, org_id, experiment_code: str, subject_id: str,
                      events: Sequence[Any]) -> Dict[str, int]:
        """
        Record a batch of events for one subject.

        The whole batch is validated before anything is written and the first
        invalid entry fails the call. Events without a ``variantKey`` use the
        subject's assignment, which is created on the spot if needed.

        Returns:
            {"inserted_count": n}

        Raises:
            ValidationError: Empty batch, missing eventKey, bad ts/value or a
                variantKey the experiment does not declare
            NotFoundError: Unknown experiment
            ConflictError: Assignment needed but the experiment is not active
        """
        experiment = self.assignments.registry.resolve(org_id, experiment_code)
        subject_key = compute_subject_key(experiment.organization_id, subject_id)

        if not isinstance(events, (list, tuple)) or not events:
            raise ValidationError("events[] is required")

        definition = ExperimentDefinition.from_experiment(experiment)
        variant_keys = set(definition.variant_keys)

        now = self.clock()
        assigned_variant: Optional[str] = None
        rows: List[Dict[str, Any]] = []

        for event in events:
            if not isinstance(event, Mapping):
                raise ValidationError("Invalid event")

            event_key = str(_field(event, "eventKey", "event_key") or "").strip()
            if not event_key:
                raise ValidationError("eventKey is required")

            try:
                ts = parse_timestamp(event.get("ts"), default=now)
            except ValueError as exc:
                raise ValidationError("Invalid ts") from exc

            value = parse_event_value(event.get("value"))

            variant_key = str(_field(event, "variantKey", "variant_key") or "").strip()
            if not variant_key:
                if assigned_variant is None:
                    _, assignment = self.assignments.get_or_create_assignment(
                        org_id, experiment_code, subject_id, context=None
                    )
                    assigned_variant = assignment["variant_key"]
                variant_key = assigned_variant

            if variant_key not in variant_keys:
                raise ValidationError("Invalid variantKey")

            meta = event.get("meta")
            rows.append({
                "experiment_id": experiment.id,
                "organization_id": experiment.organization_id,
                "subject_key": subject_key,
                "variant_key": variant_key,
                "event_key": event_key,
                "value": value,
                "ts": ts,
                "meta": dict(meta) if isinstance(meta, Mapping) else {},
            })

        inserted = self._bulk_insert(rows)

        logger.info(
            "events_ingested",
            experiment_id=str(experiment.id),
            experiment_code=experiment.code,
            received=len(rows),
            inserted=inserted
        )
        return {"inserted_count": inserted}

    def _bulk_insert(self, rows: List[Dict[str, Any]]) -> int:
        """
        Insert all rows in one statement.

        If the batch fails, each row is retried in its own savepoint so one
        bad row does not block the rest. Returns the number of rows stored.
        """
        try:
            self.db.execute(insert(ExperimentEvent), rows)
            self.db.commit()
            return len(rows)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("events_bulk_insert_failed", rows=len(rows), error=str(e))

        inserted = 0
        for row in rows:
            try:
                with self.db.begin_nested():
                    self.db.execute(insert(ExperimentEvent), [row])
                inserted += 1
            except SQLAlchemyError as e:
                logger.warning(
                    "event_insert_failed",
                    event_key=row["event_key"],
                    variant=row["variant_key"],
                    error=str(e)
                )
        self.db.commit()
        return inserted
