"""
Tests for the Result type and the in-memory store adapters.
"""

from datetime import UTC, datetime, timedelta

import pytest

from adapters.memory.store import InMemoryDefinitionStore, InMemoryMeasureStore
from measures.domain.models import MeasurementSample, MetricDefinition, MetricKind, Provenance
from measures.services.stores import Result

T0 = datetime(2024, 3, 1, 8, 30, tzinfo=UTC)


class TestResult:
    """Test the Result type for explicit error handling."""

    def test_result_ok_creates_successful_result(self) -> None:
        result: Result[str, Exception] = Result.ok("success")
        assert not result.is_err()
        assert result.unwrap() == "success"

    def test_result_error_creates_failed_result(self) -> None:
        error = ValueError("test error")
        result: Result[str, ValueError] = Result.err(error)
        assert result.is_err()
        assert result.unwrap_err() is error

    def test_unwrap_raises_on_error_result(self) -> None:
        result: Result[str, ValueError] = Result.err(ValueError("test error"))

        with pytest.raises(ValueError, match="test error"):
            result.unwrap()

    def test_unwrap_err_on_ok_value(self) -> None:
        with pytest.raises(ValueError, match="unwrap_err"):
            Result.ok(1).unwrap_err()

    def test_result_needs_exactly_one_side(self) -> None:
        with pytest.raises(ValueError):
            Result()
        with pytest.raises(ValueError):
            Result(value=1, error=ValueError("x"))


class TestInMemoryDefinitionStore:
    async def test_lookup_by_id_and_name(self) -> None:
        weight = MetricDefinition(name="weight")
        store = InMemoryDefinitionStore([weight])

        assert await store.get_definition(weight.id) == weight
        assert await store.get_definition_by_name("weight") == weight
        assert await store.get_definition_by_name("height") is None

    async def test_soft_deleted_definitions(self) -> None:
        weight = MetricDefinition(name="weight", deleted_at=T0)
        store = InMemoryDefinitionStore([weight])

        assert await store.get_definition(weight.id) == weight
        assert await store.get_definition_by_name("weight") is None
        assert await store.list_definitions() == []
        assert await store.list_definitions(include_deleted=True) == [weight]

    async def test_list_by_kind(self) -> None:
        weight = MetricDefinition(name="weight")
        double = MetricDefinition(
            name="double_weight",
            kind=MetricKind.CALCULATED,
            formula="{weight} * 2",
            dependencies=["weight"],
        )
        store = InMemoryDefinitionStore([weight, double])

        assert await store.list_definitions(kind=MetricKind.CALCULATED) == [double]
        assert await store.list_definitions(kind=MetricKind.NUMERIC) == [weight]


class TestInMemoryMeasureStore:
    @pytest.fixture
    def store(self) -> InMemoryMeasureStore:
        return InMemoryMeasureStore()

    def _computed(self, value: float, at: datetime = T0) -> MeasurementSample:
        return MeasurementSample(
            subject_id="p1",
            metric_name="bmi",
            value=value,
            measured_at=at,
            provenance=Provenance.COMPUTED,
        )

    async def test_history_is_sorted_and_filtered_inclusively(
        self, store: InMemoryMeasureStore
    ) -> None:
        for days in (3, 1, 2):
            await store.record_sample(
                MeasurementSample(
                    subject_id="p1",
                    metric_name="weight",
                    value=float(days),
                    measured_at=T0 + timedelta(days=days),
                )
            )

        history = await store.get_history("p1", "weight")
        assert [s.value for s in history] == [1.0, 2.0, 3.0]

        window = await store.get_history(
            "p1", "weight", since=T0 + timedelta(days=2), until=T0 + timedelta(days=3)
        )
        assert [s.value for s in window] == [2.0, 3.0]

    async def test_subjects_with_samples(self, store: InMemoryMeasureStore) -> None:
        for subject, metric in (("p2", "weight"), ("p1", "height"), ("p3", "waist")):
            await store.record_sample(
                MeasurementSample(subject_id=subject, metric_name=metric, value=1, measured_at=T0)
            )

        assert await store.list_subjects_with_samples(["weight", "height"]) == ["p1", "p2"]
        assert await store.list_subjects_with_samples([]) == []

    async def test_computed_write_is_idempotent(self, store: InMemoryMeasureStore) -> None:
        first = await store.write_computed_value(self._computed(22.86))
        second = await store.write_computed_value(self._computed(22.86))

        assert second.id == first.id
        assert store.writes == 1
        assert len(store.samples("p1", "bmi")) == 1

    async def test_changed_value_appends_new_sample(self, store: InMemoryMeasureStore) -> None:
        await store.write_computed_value(self._computed(22.86))
        updated = await store.write_computed_value(self._computed(23.1))

        assert updated.value == 23.1
        assert len(store.samples("p1", "bmi")) == 2
        history = await store.get_history("p1", "bmi")
        assert history[-1].value == 23.1

    async def test_computed_write_never_overwrites_logged_sample(
        self, store: InMemoryMeasureStore
    ) -> None:
        logged = MeasurementSample(subject_id="p1", metric_name="bmi", value=22.86, measured_at=T0)
        await store.record_sample(logged)

        computed = await store.write_computed_value(self._computed(22.86))

        assert computed.provenance == Provenance.COMPUTED
        assert len(store.samples("p1", "bmi")) == 2
