"""Sticky variant assignment."""
from collections.abc import Mapping
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from splitlab.database import dialect_insert
from splitlab.models.assignment import ExperimentAssignment
from splitlab.models.experiment import Experiment, ExperimentStatus
from splitlab.services.cache import CacheLayer
from splitlab.services.errors import ConflictError
from splitlab.services.experiments import ExperimentRegistry, compute_subject_key, pick_weighted_variant
from splitlab.timeutils import isoformat, utcnow

logger = structlog.get_logger()

ASSIGNMENTS_NAMESPACE = "experiments.assignments"
DEFAULT_ASSIGNMENT_TTL = 60


def serialize_assignment(row: ExperimentAssignment) -> Dict[str, Any]:
    """Plain dict form shared by the store path and the cache path."""
    return {
        "experiment_id": str(row.experiment_id),
        "organization_id": str(row.organization_id) if row.organization_id else None,
        "subject_key": row.subject_key,
        "variant_key": row.variant_key,
        "assigned_at": isoformat(row.assigned_at),
        "context": row.context or {},
    }


class AssignmentEngine:
    """
    Assigns subjects to experiment variants.

    Lookup order is cache, then store, then a fresh deterministic pick that
    is persisted with an atomic insert-if-absent. At most one assignment row
    can exist per (experiment, subject), even under concurrent first requests.
    """

    def __init__(
        self,
        db: Session,
        cache: CacheLayer,
        registry: Optional[ExperimentRegistry] = None,
        ttl_seconds: int = DEFAULT_ASSIGNMENT_TTL,
        clock=utcnow,
    ):
        self.db = db
        self.cache = cache
        self.registry = registry or ExperimentRegistry(db)
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def get_or_create_assignment(
        self,
        org_id,
        experiment_code: str,
        subject_id: str,
        context: Optional[Mapping] = None,
    ) -> Tuple[Experiment, Dict[str, Any]]:
        """
        Return the subject's variant, creating the assignment on first request.

        The subject key is built from the experiment's own organization, so a
        global experiment buckets a subject identically whichever org the
        caller passes.

        Args:
            org_id: Caller's organization (None for global)
            experiment_code: Experiment code
            subject_id: Stable subject identifier
            context: Opaque context stored with a newly created assignment

        Returns:
            Tuple of (experiment, assignment dict)

        Raises:
            ValidationError: Bad code/org/subject or no weighted variants
            NotFoundError: Unknown experiment
            ConflictError: No existing assignment and the experiment is not active
        """
        experiment = self.registry.resolve(org_id, experiment_code)
        subject_key = compute_subject_key(experiment.organization_id, subject_id)

        cache_key = f"{experiment.id}:{subject_key}"
        cached = self.cache.get(cache_key, namespace=ASSIGNMENTS_NAMESPACE)
        if cached and cached.get("variant_key"):
            return experiment, cached

        existing = self._find(experiment, subject_key)
        if existing is not None:
            assignment = serialize_assignment(existing)
            self.cache.set(cache_key, assignment, namespace=ASSIGNMENTS_NAMESPACE, ttl_seconds=self.ttl_seconds)
            return experiment, assignment

        if experiment.status not in ExperimentStatus.ACTIVE:
            raise ConflictError("Experiment is not active")

        picked = pick_weighted_variant(experiment, subject_key)

        row = self._insert_if_absent({
            "experiment_id": experiment.id,
            "organization_id": experiment.organization_id,
            "subject_key": subject_key,
            "variant_key": picked.key,
            "assigned_at": self.clock(),
            "context": dict(context) if isinstance(context, Mapping) else {},
        })

        assignment = serialize_assignment(row)
        self.cache.set(cache_key, assignment, namespace=ASSIGNMENTS_NAMESPACE, ttl_seconds=self.ttl_seconds)
        return experiment, assignment

    def _find(self, experiment: Experiment, subject_key: str) -> Optional[ExperimentAssignment]:
        return self.db.execute(
            select(ExperimentAssignment).where(
                ExperimentAssignment.experiment_id == experiment.id,
                ExperimentAssignment.subject_key == subject_key,
            )
        ).scalars().first()

    def _insert_if_absent(self, values: Dict[str, Any]) -> ExperimentAssignment:
        """
        Insert the assignment unless one already exists, then return the stored row.

        Uses ``INSERT ... ON CONFLICT DO NOTHING`` where the dialect supports
        it. A uniqueness violation on other backends means a concurrent
        request won the race; either way the winner's row is returned.
        """
        created = False
        insert = dialect_insert(self.db)
        try:
            if insert is not None:
                stmt = insert(ExperimentAssignment).values(**values).on_conflict_do_nothing(
                    index_elements=["experiment_id", "subject_key"]
                )
                result = self.db.execute(stmt)
                created = result.rowcount == 1
            else:
                self.db.add(ExperimentAssignment(**values))
                self.db.flush()
                created = True
            self.db.commit()
        except IntegrityError:
            self.db.rollback()

        # Drop identity-map state so the read below sees the committed winner
        self.db.expire_all()
        row = self.db.execute(
            select(ExperimentAssignment).where(
                ExperimentAssignment.experiment_id == values["experiment_id"],
                ExperimentAssignment.subject_key == values["subject_key"],
            )
        ).scalars().one()

        if created:
            logger.info(
                "assignment_created",
                experiment_id=str(values["experiment_id"]),
                subject_key=values["subject_key"],
                variant=row.variant_key,
            )
        else:
            logger.info(
                "assignment_race_lost",
                experiment_id=str(values["experiment_id"]),
                subject_key=values["subject_key"],
                variant=row.variant_key,
            )
        return row
