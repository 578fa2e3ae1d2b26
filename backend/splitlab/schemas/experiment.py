"""Experiment definition schemas.

The JSON columns on ``Experiment`` are parsed through these models. Keys may
be stored either snake_case or camelCase (``pickAfterMs``). Definitions are
written outside this service, so null fields take their defaults and blank or
unknown choices fall back to the default choice.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as SchemaValidationError
from pydantic.alias_generators import to_camel
from typing import List, Literal, get_args

from splitlab.services.errors import ValidationError

MetricKind = Literal["count", "sum", "avg", "rate"]
Objective = Literal["maximize", "minimize"]
PolicyMode = Literal["manual", "automatic"]
StatMethod = Literal["simple_rate", "bayesian_beta"]


def _choice(value, choices, default: str) -> str:
    text = str(value).strip() if value is not None else ""
    return text if text in get_args(choices) else default


class _DefinitionModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data):
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class VariantSpec(_DefinitionModel):
    """One arm of an experiment."""

    key: str = ""
    weight: float = 0
    config_slug: str = ""

    @field_validator("weight", mode="before")
    @classmethod
    def coerce_weight(cls, v):
        # Missing or malformed weights disable the variant instead of failing the experiment
        try:
            return float(v or 0)
        except (TypeError, ValueError):
            return 0


class MetricDefinition(_DefinitionModel):
    """
    Metric scored for an experiment.

    For ``rate`` metrics the raw events are ``numerator_event_key`` and
    ``denominator_event_key``; every other kind reads events named ``key``.
    """

    key: str = ""
    kind: MetricKind = "count"
    numerator_event_key: str = ""
    denominator_event_key: str = ""
    objective: Objective = "maximize"

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v):
        return _choice(v, MetricKind, "count")

    @field_validator("objective", mode="before")
    @classmethod
    def normalize_objective(cls, v):
        return _choice(v, Objective, "maximize")


class WinnerPolicy(_DefinitionModel):
    """Rules governing whether and when a winner is picked automatically."""

    mode: PolicyMode = "manual"
    pick_after_ms: int = 0
    min_assignments: int = 0
    min_exposures: float = 0
    min_conversions: float = 0
    # bayesian_beta is accepted but scored like simple_rate
    stat_method: StatMethod = "simple_rate"
    override_winner_variant_key: str = ""

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v):
        return _choice(v, PolicyMode, "manual")

    @field_validator("stat_method", mode="before")
    @classmethod
    def normalize_stat_method(cls, v):
        return _choice(v, StatMethod, "simple_rate")


class AssignmentSettings(_DefinitionModel):
    unit: Literal["subjectId"] = "subjectId"
    sticky: bool = True
    salt: str = ""

    @field_validator("unit", mode="before")
    @classmethod
    def normalize_unit(cls, v):
        return "subjectId"


class ExperimentDefinition(_DefinitionModel):
    """Typed view over the JSON columns of an ``Experiment`` row."""

    variants: List[VariantSpec] = Field(default_factory=list)
    primary_metric: MetricDefinition = Field(default_factory=MetricDefinition)
    secondary_metrics: List[MetricDefinition] = Field(default_factory=list)
    winner_policy: WinnerPolicy = Field(default_factory=WinnerPolicy)
    assignment: AssignmentSettings = Field(default_factory=AssignmentSettings)

    @classmethod
    def from_experiment(cls, experiment) -> "ExperimentDefinition":
        """
        Parse an experiment row.

        Raises:
            ValidationError: The stored definition cannot be read even after
                falling back to defaults (e.g. ``pickAfterMs: "soon"``)
        """
        try:
            return cls(
                variants=experiment.variants or [],
                primary_metric=experiment.primary_metric or {},
                secondary_metrics=experiment.secondary_metrics or [],
                winner_policy=experiment.winner_policy or {},
                assignment=experiment.assignment or {},
            )
        except SchemaValidationError as e:
            raise ValidationError(f"Invalid experiment definition: {e.error_count()} invalid field(s)") from e

    @property
    def variant_keys(self) -> List[str]:
        """Declared variant keys, in order, blanks dropped."""
        return [v.key for v in self.variants if v.key]

    @property
    def eligible_variants(self) -> List[VariantSpec]:
        """Variants that can receive new assignments (weight > 0)."""
        return [v for v in self.variants if v.key and v.weight > 0]

    def find_variant(self, key: str):
        for variant in self.variants:
            if variant.key == key:
                return variant
        return None
