"""
In-memory store implementations.

This module provides InMemoryDefinitionStore and InMemoryMeasureStore, which
implement the DefinitionStore and MeasureValueStore protocols. They back the
tests and the system check script, and serve as the reference behaviour for
real database adapters (append-only samples, idempotent computed writes).
"""

import asyncio
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime

import structlog

from measures.domain.models import (
    MeasurementSample,
    MetricDefinition,
    MetricKind,
    Provenance,
    ensure_aware,
)

logger = structlog.get_logger(__name__)


class InMemoryDefinitionStore:
    """Definitions keyed by id. Soft-deleted definitions stay retrievable by id."""

    def __init__(self, definitions: Sequence[MetricDefinition] = ()) -> None:
        self._definitions: dict[str, MetricDefinition] = {d.id: d for d in definitions}
        self.logger = logger.bind(store="definitions")

    async def get_definition(self, definition_id: str) -> MetricDefinition | None:
        return self._definitions.get(definition_id)

    async def get_definition_by_name(self, name: str) -> MetricDefinition | None:
        return next(
            (d for d in self._definitions.values() if d.name == name and not d.is_deleted),
            None,
        )

    async def list_definitions(
        self, kind: MetricKind | None = None, include_deleted: bool = False
    ) -> list[MetricDefinition]:
        return [
            d
            for d in self._definitions.values()
            if (kind is None or d.kind == kind) and (include_deleted or not d.is_deleted)
        ]

    async def save_definition(self, definition: MetricDefinition) -> MetricDefinition:
        self._definitions[definition.id] = definition
        self.logger.debug("definition_saved", definition_id=definition.id, name=definition.name)
        return definition


class InMemoryMeasureStore:
    """
    Append-only sample storage keyed by (subject_id, metric_name).

    `write_latency` adds an artificial await before each write so tests can
    interleave other work (e.g. a definition deletion) with a running recalculation.
    """

    def __init__(self, write_latency: float = 0.0) -> None:
        self._samples: dict[tuple[str, str], list[MeasurementSample]] = defaultdict(list)
        self.write_latency = write_latency
        self.writes = 0
        self.logger = logger.bind(store="measures")

    async def record_sample(self, sample: MeasurementSample) -> MeasurementSample:
        """Append a sample as-is (user-logged values, corrections)."""
        self._samples[(sample.subject_id, sample.metric_name)].append(sample)
        return sample

    async def list_subjects_with_samples(self, metric_names: Sequence[str]) -> list[str]:
        wanted = set(metric_names)
        subjects = {
            subject_id
            for (subject_id, metric_name), samples in self._samples.items()
            if metric_name in wanted and samples
        }
        return sorted(subjects)

    async def get_history(
        self,
        subject_id: str,
        metric_name: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[MeasurementSample]:
        since = ensure_aware(since) if since is not None else None
        until = ensure_aware(until) if until is not None else None
        samples = [
            s
            for s in self._samples.get((subject_id, metric_name), [])
            if (since is None or s.measured_at >= since) and (until is None or s.measured_at <= until)
        ]
        return sorted(samples, key=lambda s: (s.measured_at, s.recorded_at))

    async def write_computed_value(self, sample: MeasurementSample) -> MeasurementSample:
        """Append a computed sample unless the latest one at that timestamp already matches."""
        if self.write_latency:
            await asyncio.sleep(self.write_latency)

        series = self._samples[(sample.subject_id, sample.metric_name)]
        at_timestamp = [s for s in series if s.measured_at == sample.measured_at]
        if at_timestamp:
            latest = sorted(at_timestamp, key=lambda s: s.recorded_at)[-1]
            if latest.provenance == Provenance.COMPUTED and latest.value == sample.value:
                return latest

        if sample.provenance != Provenance.COMPUTED:
            sample = sample.model_copy(update={"provenance": Provenance.COMPUTED})
        series.append(sample)
        self.writes += 1
        self.logger.debug(
            "computed_value_written",
            subject_id=sample.subject_id,
            metric=sample.metric_name,
            measured_at=sample.measured_at.isoformat(),
            value=sample.value,
        )
        return sample

    def samples(self, subject_id: str, metric_name: str) -> list[MeasurementSample]:
        return list(self._samples.get((subject_id, metric_name), []))
