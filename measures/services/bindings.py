"""
Build evaluation bindings from stored sample history.

Reference semantics at computation timestamp t:
- {x} and {current:x}: latest sample of x measured at or before t
- {previous:x}: latest sample of x measured strictly before t
- {delta:x}: current minus previous
- {avgN:x}: mean of samples of x measured in [t - N days, t]

Unresolvable references are left out of the bindings so the evaluator reports
them as missing instead of silently treating them as zero.
"""

from bisect import bisect_left, bisect_right
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta

from measures.domain.errors import EvaluationError
from measures.domain.models import MeasurementSample, ensure_aware


class SampleHistory:
    """
    Effective time series for one subject and one metric.

    Samples are append-only, so several may share a measured_at; the most
    recently recorded one wins.
    """

    def __init__(self, samples: Iterable[MeasurementSample]) -> None:
        effective: dict[datetime, MeasurementSample] = {}
        for sample in sorted(samples, key=lambda s: (s.measured_at, s.recorded_at)):
            effective[sample.measured_at] = sample
        self.samples: list[MeasurementSample] = [effective[ts] for ts in sorted(effective)]
        self._timestamps = [s.measured_at for s in self.samples]

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def timestamps(self) -> list[datetime]:
        return list(self._timestamps)

    def current(self, at: datetime) -> float | None:
        index = bisect_right(self._timestamps, ensure_aware(at))
        return self.samples[index - 1].value if index else None

    def previous(self, at: datetime) -> float | None:
        index = bisect_left(self._timestamps, ensure_aware(at))
        return self.samples[index - 1].value if index else None

    def delta(self, at: datetime) -> float | None:
        current = self.current(at)
        previous = self.previous(at)
        if current is None or previous is None:
            return None
        return current - previous

    def average(self, at: datetime, days: int) -> float | None:
        at = ensure_aware(at)
        try:
            window_start = at - timedelta(days=days)
        except OverflowError as e:
            raise EvaluationError(
                f"Average window of {days} days is out of range at {at.isoformat()}"
            ) from e
        start = bisect_left(self._timestamps, window_start)
        end = bisect_right(self._timestamps, at)
        window = [s.value for s in self.samples[start:end]]
        if not window:
            return None
        return sum(window) / len(window)

    def resolve(self, selector: str | None, at: datetime) -> float | None:
        if selector is None or selector == "current":
            return self.current(at)
        if selector == "previous":
            return self.previous(at)
        if selector == "delta":
            return self.delta(at)
        if selector.startswith("avg"):
            return self.average(at, int(selector[3:]))
        raise ValueError(f"Unknown time-series selector: {selector}")


def split_reference(reference: str) -> tuple[str | None, str]:
    """'previous:weight' -> ('previous', 'weight'); 'weight' -> (None, 'weight')."""
    selector, sep, name = reference.partition(":")
    if not sep:
        return None, reference
    return selector, name


def resolve_bindings(
    references: Iterable[str],
    histories: Mapping[str, SampleHistory | Sequence[MeasurementSample]],
    at: datetime,
) -> dict[str, float]:
    """Resolve every binding key against the subject's history at timestamp `at`."""
    bindings: dict[str, float] = {}
    cache: dict[str, SampleHistory] = {}

    for reference in references:
        selector, name = split_reference(reference)
        history = histories.get(name)
        if history is None:
            continue
        if not isinstance(history, SampleHistory):
            history = cache.setdefault(name, SampleHistory(history))
        value = history.resolve(selector, at)
        if value is not None:
            bindings[reference] = value
    return bindings
