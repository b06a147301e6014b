"""
Tests for building evaluation bindings from sample history.
"""

from datetime import UTC, datetime, timedelta

import pytest

from measures.domain.errors import EvaluationError
from measures.domain.models import MeasurementSample
from measures.services.bindings import SampleHistory, resolve_bindings, split_reference

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


def _sample(value: float, days: float, metric: str = "weight", **kwargs) -> MeasurementSample:
    return MeasurementSample(
        subject_id="patient-1",
        metric_name=metric,
        value=value,
        measured_at=T0 + timedelta(days=days),
        **kwargs,
    )


@pytest.fixture
def weight_history() -> SampleHistory:
    return SampleHistory([_sample(80.0, 0), _sample(79.0, 10), _sample(77.5, 20)])


class TestSampleHistory:
    def test_current_is_latest_at_or_before(self, weight_history: SampleHistory) -> None:
        assert weight_history.current(T0 + timedelta(days=10)) == 79.0
        assert weight_history.current(T0 + timedelta(days=15)) == 79.0
        assert weight_history.current(T0 - timedelta(days=1)) is None

    def test_previous_is_strictly_before(self, weight_history: SampleHistory) -> None:
        assert weight_history.previous(T0 + timedelta(days=10)) == 80.0
        assert weight_history.previous(T0) is None

    def test_delta(self, weight_history: SampleHistory) -> None:
        assert weight_history.delta(T0 + timedelta(days=20)) == pytest.approx(-1.5)
        assert weight_history.delta(T0) is None

    def test_rolling_average_window_is_inclusive(self, weight_history: SampleHistory) -> None:
        at = T0 + timedelta(days=20)
        assert weight_history.average(at, 10) == pytest.approx((79.0 + 77.5) / 2)
        assert weight_history.average(at, 30) == pytest.approx((80.0 + 79.0 + 77.5) / 3)
        assert weight_history.average(T0 - timedelta(days=1), 7) is None

    def test_resolve_dispatches_on_selector(self, weight_history: SampleHistory) -> None:
        at = T0 + timedelta(days=20)
        assert weight_history.resolve(None, at) == 77.5
        assert weight_history.resolve("current", at) == 77.5
        assert weight_history.resolve("previous", at) == 79.0
        assert weight_history.resolve("avg30", at) == pytest.approx(78.8333333)

    def test_average_window_out_of_range_is_an_evaluation_error(
        self, weight_history: SampleHistory
    ) -> None:
        with pytest.raises(EvaluationError, match="out of range"):
            weight_history.resolve("avg999999999999", T0)
        with pytest.raises(EvaluationError, match="out of range"):
            weight_history.average(datetime(1, 1, 5, tzinfo=UTC), 30)

    def test_unknown_selector(self, weight_history: SampleHistory) -> None:
        with pytest.raises(ValueError, match="Unknown time-series selector"):
            weight_history.resolve("median", T0)

    def test_latest_recorded_correction_wins(self) -> None:
        original = _sample(80.0, 0, recorded_at=T0)
        correction = _sample(81.0, 0, recorded_at=T0 + timedelta(hours=1))

        history = SampleHistory([correction, original])

        assert len(history) == 1
        assert history.current(T0) == 81.0

    def test_naive_lookup_time_is_treated_as_utc(self, weight_history: SampleHistory) -> None:
        assert weight_history.current(datetime(2024, 1, 11, 9, 0)) == 79.0

    def test_timestamps_are_sorted(self) -> None:
        history = SampleHistory([_sample(1.0, 5), _sample(2.0, 1)])
        assert history.timestamps == [T0 + timedelta(days=1), T0 + timedelta(days=5)]


class TestResolveBindings:
    def test_split_reference(self) -> None:
        assert split_reference("previous:weight") == ("previous", "weight")
        assert split_reference("weight") == (None, "weight")

    def test_builds_flat_binding_map(self, weight_history: SampleHistory) -> None:
        at = T0 + timedelta(days=10)
        bindings = resolve_bindings(
            ["weight", "previous:weight", "delta:weight"], {"weight": weight_history}, at
        )

        assert bindings == {"weight": 79.0, "previous:weight": 80.0, "delta:weight": -1.0}

    def test_unresolved_references_are_left_out(self, weight_history: SampleHistory) -> None:
        bindings = resolve_bindings(["previous:weight", "height"], {"weight": weight_history}, T0)
        assert bindings == {}

    def test_accepts_raw_sample_lists(self) -> None:
        samples = [_sample(1.8, 0, metric="height")]
        bindings = resolve_bindings(["height"], {"height": samples}, T0 + timedelta(days=3))
        assert bindings == {"height": 1.8}
