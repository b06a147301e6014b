"""
Storage boundaries for the formula engine.

Key patterns:
- Protocol-based dependency injection for the definition and measure-value stores
- Result type carrying per-subject outcomes out of the recalculation task group

The engine never talks to a database directly; anything that implements these
protocols (an ORM repository, an HTTP client, the in-memory adapter) can back it.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Generic, Protocol, TypeVar

from measures.domain.models import MeasurementSample, MetricDefinition, MetricKind

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Outcome of one subject recalculation: the subject's counts or the error
    that stopped it. Lets a failed subject be recorded on the run while its
    siblings keep going.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


class DefinitionStore(Protocol):
    """
    Read/write access to measure definitions.

    Soft-deleted definitions are returned by id lookups (so callers can see
    that a definition was deleted) but excluded from name lookups and listings
    unless `include_deleted` is set.
    """

    async def get_definition(self, definition_id: str) -> MetricDefinition | None: ...

    async def get_definition_by_name(self, name: str) -> MetricDefinition | None: ...

    async def list_definitions(
        self, kind: MetricKind | None = None, include_deleted: bool = False
    ) -> list[MetricDefinition]: ...

    async def save_definition(self, definition: MetricDefinition) -> MetricDefinition: ...


class MeasureValueStore(Protocol):
    """
    Time-series storage of measurement samples.

    Samples are append-only. `write_computed_value` must be idempotent per
    (subject, metric, measured_at): when the latest sample at that key already
    holds the same computed value, no new sample is appended and the existing
    one is returned.
    """

    async def list_subjects_with_samples(self, metric_names: Sequence[str]) -> list[str]: ...

    async def get_history(
        self,
        subject_id: str,
        metric_name: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[MeasurementSample]:
        """Samples ordered by (measured_at, recorded_at), bounds inclusive."""
        ...

    async def write_computed_value(self, sample: MeasurementSample) -> MeasurementSample: ...
