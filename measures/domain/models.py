"""
Domain models for calculated measures.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; persistence is left to the store adapters.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from measures.domain.errors import SyntaxErrorCategory

METRIC_NAME_PATTERN = r"^[a-z_][a-z0-9_]*$"


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so ordering comparisons never mix kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class MetricKind(str, Enum):
    """How a metric gets its values."""

    NUMERIC = "numeric"  # logged directly
    CALCULATED = "calculated"  # derived from a formula


class Provenance(str, Enum):
    """Where a measurement sample came from."""

    LOGGED = "logged"
    COMPUTED = "computed"


class MetricDefinition(BaseModel):
    """A measurable or calculated quantity."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(pattern=METRIC_NAME_PATTERN, max_length=100)
    display_name: str | None = None
    description: str | None = None
    category: str = Field(default="other")
    unit: str | None = None
    kind: MetricKind = MetricKind.NUMERIC
    formula: str | None = None
    dependencies: list[str] = Field(
        default_factory=list, description="Base metric names referenced by the formula"
    )
    decimal_places: int = Field(default=2, ge=0, le=10)
    is_active: bool = True
    last_formula_change: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None

    @model_validator(mode="after")
    def formula_matches_kind(self) -> "MetricDefinition":
        if self.kind == MetricKind.CALCULATED:
            if not self.formula or not self.formula.strip():
                raise ValueError("Formula is required for calculated measures")
        elif self.formula or self.dependencies:
            raise ValueError("Only calculated measures can have a formula")
        return self

    @property
    def is_calculated(self) -> bool:
        return self.kind == MetricKind.CALCULATED

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class MetricDefinitionCreate(BaseModel):
    """Author-supplied fields for a new definition (dependencies are derived)."""

    name: str = Field(pattern=METRIC_NAME_PATTERN, max_length=100)
    display_name: str | None = None
    description: str | None = None
    category: str = "other"
    unit: str | None = None
    kind: MetricKind = MetricKind.NUMERIC
    formula: str | None = None
    decimal_places: int = Field(default=2, ge=0, le=10)
    is_active: bool = True


class MetricDefinitionUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    name: str | None = Field(default=None, pattern=METRIC_NAME_PATTERN, max_length=100)
    display_name: str | None = None
    description: str | None = None
    category: str | None = None
    unit: str | None = None
    kind: MetricKind | None = None
    formula: str | None = None
    decimal_places: int | None = Field(default=None, ge=0, le=10)
    is_active: bool | None = None


class MeasurementSample(BaseModel):
    """One observed or computed value for one subject at one point in time."""

    model_config = ConfigDict(frozen=True)  # append-only; corrections are new samples

    id: str = Field(default_factory=new_id)
    subject_id: str = Field(min_length=1)
    metric_name: str = Field(pattern=METRIC_NAME_PATTERN)
    value: float
    measured_at: datetime
    provenance: Provenance = Provenance.LOGGED
    recorded_by: str | None = None
    recorded_at: datetime = Field(default_factory=utcnow)

    @field_validator("measured_at", "recorded_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)


class RecalculationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RecalculationFailure(BaseModel):
    """A single subject/timestamp that could not be recomputed."""

    subject_id: str
    measured_at: datetime | None = None
    error_type: str
    message: str


class RecalculationRun(BaseModel):
    """Progress and outcome of one bulk recalculation of a calculated metric."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    metric_name: str | None = None
    formula: str | None = None
    actor: str | None = None
    status: RecalculationStatus = RecalculationStatus.PENDING

    subjects_total: int = 0
    subjects_processed: int = 0
    values_written: int = 0
    values_unchanged: int = 0
    values_discarded: int = 0
    failure_count: int = 0
    failures: list[RecalculationFailure] = Field(default_factory=list)
    error: str | None = Field(default=None, description="Run-level failure reason")

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in (RecalculationStatus.COMPLETED, RecalculationStatus.FAILED)


class ValidationResult(BaseModel):
    """Outcome of syntax validation for a formula."""

    valid: bool
    error: str | None = None
    category: SyntaxErrorCategory | None = None
    position: int | None = None
    dependencies: list[str] = Field(default_factory=list)


class CycleResult(BaseModel):
    """Outcome of cycle detection for a candidate definition."""

    has_circular: bool
    cycle: list[str] | None = None
