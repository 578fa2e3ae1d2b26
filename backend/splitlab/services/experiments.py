"""Experiment lookup and deterministic variant bucketing."""
import hashlib
import uuid
from typing import Optional, Union
from sqlalchemy import select
from sqlalchemy.orm import Session

from splitlab.models.experiment import Experiment
from splitlab.schemas.experiment import ExperimentDefinition, VariantSpec
from splitlab.services.errors import NotFoundError, ValidationError

GLOBAL_SCOPE = "global"


def _normalize_str(value) -> str:
    return str(value or "").strip()


def coerce_uuid(value: Union[str, uuid.UUID, None], field: str = "id") -> Optional[uuid.UUID]:
    """Parse an optional UUID, raising ValidationError on garbage."""
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}") from exc


def normalize_experiment_code(code) -> str:
    c = _normalize_str(code)
    if not c:
        raise ValidationError("experiment code is required")
    return c


def normalize_subject_id(subject_id) -> str:
    s = _normalize_str(subject_id)
    if not s:
        raise ValidationError("subjectId is required")
    return s


def compute_subject_key(org_id, subject_id) -> str:
    """
    Canonical subject identity: ``org:<orgId|global>:subject:<subjectId>``.

    Example:
        >>> compute_subject_key(None, " user_123 ")
        'org:global:subject:user_123'
    """
    sid = normalize_subject_id(subject_id)
    oid = str(org_id) if org_id else GLOBAL_SCOPE
    return f"org:{oid}:subject:{sid}"


def compute_bucket_int(value: str, modulus: float):
    """
    Map ``value`` to a position in ``[0, modulus)``.

    SHA-256 of the UTF-8 string, first 4 bytes read as a big-endian unsigned
    integer, reduced mod ``modulus``. Changing this reshuffles every live
    experiment, so it must stay fixed.
    """
    if modulus <= 0:
        return 0
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % modulus


def pick_weighted_variant(experiment: Experiment, subject_key: str,
                          definition: Optional[ExperimentDefinition] = None) -> VariantSpec:
    """
    Deterministically pick a variant for a subject.

    Variants with weight > 0 are walked in declared order, accumulating
    weight; the first whose cumulative weight exceeds the hashed position
    wins. The same (salt, subject_key) always yields the same variant.

    Raises:
        ValidationError: If no variant has a positive weight
    """
    definition = definition or ExperimentDefinition.from_experiment(experiment)
    eligible = definition.eligible_variants
    if not eligible:
        raise ValidationError("Experiment has no weighted variants")

    total = sum(v.weight for v in eligible)
    salt = definition.assignment.salt or str(experiment.id)
    pos = compute_bucket_int(f"{salt}:{subject_key}", total)

    cumulative = 0
    for variant in eligible:
        cumulative += variant.weight
        if pos < cumulative:
            return variant

    # Float weights can leave pos a hair past the last boundary
    return eligible[-1]


class ExperimentRegistry:
    """Resolves experiments by (organization, code) with global fallback."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, org_id, code) -> Experiment:
        """
        Find the experiment for ``code`` in the caller's organization.

        An organization-scoped experiment overrides a global one with the same
        code; without a scoped match the global (NULL org) experiment is used.

        Raises:
            ValidationError: If the code is blank or org_id is not a UUID
            NotFoundError: If neither a scoped nor a global experiment exists
        """
        c = normalize_experiment_code(code)
        oid = coerce_uuid(org_id, "orgId")

        experiment = self._find(oid, c)
        if experiment is None and oid is not None:
            experiment = self._find(None, c)

        if experiment is None:
            raise NotFoundError("Experiment not found")
        return experiment

    def get(self, experiment_id) -> Experiment:
        """Load an experiment by id."""
        eid = coerce_uuid(experiment_id, "experimentId")
        experiment = self.db.get(Experiment, eid) if eid else None
        if experiment is None:
            raise NotFoundError("Experiment not found")
        return experiment

    def _find(self, org_id: Optional[uuid.UUID], code: str) -> Optional[Experiment]:
        if org_id is None:
            org_filter = Experiment.organization_id.is_(None)
        else:
            org_filter = Experiment.organization_id == org_id
        return self.db.execute(
            select(Experiment).where(org_filter, Experiment.code == code)
        ).scalars().first()
