"""
Background recalculation of calculated measures.

Key patterns:
- Explicit task executor: each run is an asyncio task owned by the orchestrator,
  so callers return immediately while runs stay observable and drainable
- Structured concurrency with asyncio.TaskGroup, bounded by a semaphore
- Graceful degradation: per-subject failures are counted, never fatal to a run
- Idempotent writes per (subject, metric, measured_at), so overlapping runs for
  the same definition cannot corrupt stored values

Scope policy: every historical timestamp at which any dependency has a sample
is recomputed, oldest to newest per subject.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from measures.config import EngineConfig, RecalculationConfig
from measures.domain.errors import EvaluationError, FormulaError
from measures.domain.models import (
    MeasurementSample,
    MetricDefinition,
    MetricKind,
    Provenance,
    RecalculationFailure,
    RecalculationRun,
    RecalculationStatus,
    utcnow,
)
from measures.services.bindings import SampleHistory, resolve_bindings
from measures.services.cache import DefinitionCache
from measures.services.dependencies import (
    dependents_of,
    extract_dependencies,
    extract_variable_references,
    topological_order,
)
from measures.services.evaluator import evaluate
from measures.services.formula_parser import Expression, parse_formula
from measures.services.stores import DefinitionStore, MeasureValueStore, Result

logger = structlog.get_logger(__name__)

DEFINITION_DELETED = "Measure definition was deleted during recalculation"
DEFINITION_SUPERSEDED = "Formula changed during recalculation; a newer run owns the values"


@dataclass
class SubjectOutcome:
    """What happened while recomputing one subject."""

    subject_id: str
    written: int = 0
    unchanged: int = 0
    discarded: int = 0
    failures: list[RecalculationFailure] = field(default_factory=list)
    stop_reason: str | None = None


@dataclass
class _RunPlan:
    definition: MetricDefinition
    tree: Expression
    dependencies: list[str]
    references: list[str]


class RecalculationOrchestrator:
    """
    Recomputes historical values of a calculated measure after its formula changes.

    Design principles:
    - The triggering request never waits: `recalculate_all_values_for_metric`
      schedules a task and returns the PENDING run
    - Every write re-checks that the definition still exists with the same formula
    - Observable: structured logs plus counters on each RecalculationRun
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        values: MeasureValueStore,
        config: RecalculationConfig | None = None,
        engine_config: EngineConfig | None = None,
        cache: DefinitionCache | None = None,
    ) -> None:
        self.definitions = definitions
        self.values = values
        self.config = config or RecalculationConfig()
        self.engine_config = engine_config or EngineConfig()
        self.cache = cache
        self.logger = logger.bind(component="recalculation_orchestrator")

        self._tasks: set[asyncio.Task[RecalculationRun]] = set()
        self._history: deque[RecalculationRun] = deque(maxlen=self.config.run_history_size)
        self._latest: dict[str, RecalculationRun] = {}
        self._accepting = True

    # Task executor

    def recalculate_all_values_for_metric(
        self, definition_id: str, actor: str | None = None
    ) -> RecalculationRun:
        """
        Schedule a bulk recalculation and return immediately.

        Must be called from a running event loop. The returned run object is
        updated in place as the background task progresses.
        """
        if not self._accepting:
            raise RuntimeError("Recalculation orchestrator is shut down")

        run = RecalculationRun(definition_id=definition_id, actor=actor)
        self._history.append(run)
        self._latest[definition_id] = run

        task = asyncio.get_running_loop().create_task(
            self.run(run), name=f"recalculate:{definition_id}:{run.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        self.logger.info(
            "recalculation_scheduled", definition_id=definition_id, run_id=run.id, actor=actor
        )
        return run

    @property
    def active_runs(self) -> int:
        return len(self._tasks)

    @property
    def runs(self) -> list[RecalculationRun]:
        return list(self._history)

    def latest_run(self, definition_id: str) -> RecalculationRun | None:
        return self._latest.get(definition_id)

    async def drain(self) -> None:
        """Wait until every scheduled run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting runs, wait for in-flight ones, cancel stragglers."""
        self._accepting = False
        timeout = self.config.shutdown_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except TimeoutError:
            self.logger.warning("recalculation_shutdown_timeout", pending_runs=len(self._tasks))
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.logger.info("recalculation_orchestrator_stopped")

    # Bulk recalculation

    async def run(self, run: RecalculationRun) -> RecalculationRun:
        """
        Execute a run to completion.

        Run-level problems (unknown definition, invalid formula, store failure
        while listing subjects) mark the run FAILED; nothing is raised except
        cancellation.
        """
        start_time = time.perf_counter()
        run.status = RecalculationStatus.RUNNING
        run.started_at = utcnow()
        log = self.logger.bind(definition_id=run.definition_id, run_id=run.id)

        try:
            plan = await self._plan(run)
            run.metric_name = plan.definition.name
            run.formula = plan.definition.formula
            log = log.bind(metric=plan.definition.name)

            subjects = await self.values.list_subjects_with_samples(plan.dependencies)
            run.subjects_total = len(subjects)
            log.info("recalculation_started", subjects=len(subjects))

            semaphore = asyncio.Semaphore(self.config.max_concurrent_subjects)
            async with asyncio.TaskGroup() as task_group:
                for subject_id in subjects:
                    task_group.create_task(
                        self._recalculate_subject_guarded(semaphore, plan, subject_id, run)
                    )

            run.status = RecalculationStatus.COMPLETED
            if run.error == DEFINITION_DELETED:
                run.status = RecalculationStatus.FAILED

        except FormulaError as e:
            self._fail(run, str(e))
        except asyncio.CancelledError:
            self._fail(run, "Recalculation cancelled")
            raise
        except Exception as e:
            log.exception("recalculation_failed", error=str(e))
            self._fail(run, f"{type(e).__name__}: {e}")
        finally:
            run.finished_at = utcnow()
            log.info(
                "recalculation_finished",
                status=run.status.value,
                subjects_total=run.subjects_total,
                subjects_processed=run.subjects_processed,
                values_written=run.values_written,
                values_unchanged=run.values_unchanged,
                values_discarded=run.values_discarded,
                failure_count=run.failure_count,
                error=run.error,
                duration_seconds=round(time.perf_counter() - start_time, 3),
            )
        return run

    async def _plan(self, run: RecalculationRun) -> _RunPlan:
        definition = await self.definitions.get_definition(run.definition_id)
        if definition is None or definition.is_deleted:
            raise FormulaError(f"Measure definition not found: {run.definition_id}")
        if not definition.is_calculated or not definition.formula:
            raise FormulaError(f"Measure '{definition.name}' is not a calculated type")

        tree = parse_formula(definition.formula, max_length=self.engine_config.max_formula_length)
        return _RunPlan(
            definition=definition,
            tree=tree,
            dependencies=extract_dependencies(tree),
            references=extract_variable_references(tree),
        )

    @staticmethod
    def _fail(run: RecalculationRun, error: str) -> None:
        run.status = RecalculationStatus.FAILED
        run.error = error

    async def _recalculate_subject_guarded(
        self,
        semaphore: asyncio.Semaphore,
        plan: _RunPlan,
        subject_id: str,
        run: RecalculationRun,
    ) -> None:
        """Recompute one subject; never raises so sibling subjects keep running."""
        async with semaphore:
            result: Result[SubjectOutcome, Exception]
            try:
                outcome = await asyncio.wait_for(
                    self._recalculate_subject(plan, subject_id, run),
                    timeout=self.config.subject_timeout_seconds,
                )
                result = Result.ok(outcome)
            except TimeoutError as e:
                self.logger.warning(
                    "subject_recalculation_timeout",
                    run_id=run.id,
                    subject_id=subject_id,
                    timeout_seconds=self.config.subject_timeout_seconds,
                )
                result = Result.err(e)
            except Exception as e:
                self.logger.exception(
                    "subject_recalculation_failed",
                    run_id=run.id,
                    subject_id=subject_id,
                    error=str(e),
                )
                result = Result.err(e)

        self._record(run, subject_id, result)

    def _record(
        self, run: RecalculationRun, subject_id: str, result: Result[SubjectOutcome, Exception]
    ) -> None:
        run.subjects_processed += 1
        if result.is_err():
            error = result.unwrap_err()
            failures = [
                RecalculationFailure(
                    subject_id=subject_id,
                    error_type=type(error).__name__,
                    message=str(error) or "subject recalculation timed out",
                )
            ]
        else:
            outcome = result.unwrap()
            run.values_written += outcome.written
            run.values_unchanged += outcome.unchanged
            run.values_discarded += outcome.discarded
            failures = outcome.failures
            if outcome.stop_reason and run.error != DEFINITION_DELETED:
                run.error = outcome.stop_reason

        run.failure_count += len(failures)
        room = self.config.max_recorded_failures - len(run.failures)
        if room > 0:
            run.failures.extend(failures[:room])

    async def _recalculate_subject(
        self, plan: _RunPlan, subject_id: str, run: RecalculationRun
    ) -> SubjectOutcome:
        definition = plan.definition
        outcome = SubjectOutcome(subject_id=subject_id)
        log = self.logger.bind(run_id=run.id, metric=definition.name, subject_id=subject_id)

        histories = {
            name: SampleHistory(await self.values.get_history(subject_id, name))
            for name in plan.dependencies
        }
        timestamps = sorted({ts for history in histories.values() for ts in history.timestamps})

        for index, measured_at in enumerate(timestamps):
            try:
                bindings = resolve_bindings(plan.references, histories, measured_at)
                value = evaluate(
                    plan.tree,
                    bindings,
                    definition.decimal_places,
                    reference_date=measured_at.date(),
                )
            except EvaluationError as e:
                log.warning(
                    "value_recalculation_failed",
                    measured_at=measured_at.isoformat(),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                outcome.failures.append(
                    RecalculationFailure(
                        subject_id=subject_id,
                        measured_at=measured_at,
                        error_type=type(e).__name__,
                        message=str(e),
                    )
                )
                continue

            stop_reason = await self._check_still_current(definition)
            if stop_reason:
                outcome.discarded += len(timestamps) - index
                outcome.stop_reason = stop_reason
                log.info("recalculation_writes_discarded", reason=stop_reason)
                break

            written = await self._write(definition, subject_id, measured_at, value, run.actor)
            if written:
                outcome.written += 1
            else:
                outcome.unchanged += 1

        return outcome

    async def _check_still_current(self, definition: MetricDefinition) -> str | None:
        current = await self.definitions.get_definition(definition.id)
        if current is None or current.is_deleted:
            return DEFINITION_DELETED
        if current.formula != definition.formula:
            return DEFINITION_SUPERSEDED
        return None

    async def _write(
        self,
        definition: MetricDefinition,
        subject_id: str,
        measured_at: datetime,
        value: float,
        actor: str | None,
    ) -> bool:
        sample = MeasurementSample(
            subject_id=subject_id,
            metric_name=definition.name,
            value=value,
            measured_at=measured_at,
            provenance=Provenance.COMPUTED,
            recorded_by=actor,
        )
        stored = await self.values.write_computed_value(sample)
        return stored.id == sample.id

    # Cascading recalculation for a newly logged sample

    async def _active_calculated(self) -> dict[str, MetricDefinition]:
        async def load() -> list[MetricDefinition]:
            return await self.definitions.list_definitions(kind=MetricKind.CALCULATED)

        if self.cache is not None:
            definitions = await self.cache.calculated_definitions(load)
        else:
            definitions = [d for d in await load() if d.is_active and not d.is_deleted]
        return {d.name: d for d in definitions}

    async def recalculate_dependent_metrics(
        self,
        subject_id: str,
        metric_name: str,
        measured_at: datetime,
        actor: str | None = None,
    ) -> list[MeasurementSample]:
        """
        Recompute every calculated metric that depends on `metric_name`.

        Dependents (direct and transitive) are evaluated in dependency order at
        `measured_at` for one subject, so a downstream metric sees the value
        just computed upstream. Evaluation failures are logged and skipped.
        """
        calculated = await self._active_calculated()
        ordered = topological_order(calculated, dependents_of(metric_name, calculated))
        log = self.logger.bind(subject_id=subject_id, changed_metric=metric_name)

        written: list[MeasurementSample] = []
        for name in ordered:
            definition = calculated[name]
            try:
                tree = parse_formula(
                    definition.formula or "", max_length=self.engine_config.max_formula_length
                )
                histories = {
                    dep: SampleHistory(
                        await self.values.get_history(subject_id, dep, until=measured_at)
                    )
                    for dep in extract_dependencies(tree)
                }
                bindings = resolve_bindings(
                    extract_variable_references(tree), histories, measured_at
                )
                value = evaluate(
                    tree, bindings, definition.decimal_places, reference_date=measured_at.date()
                )
            except FormulaError as e:
                log.info(
                    "dependent_metric_skipped",
                    metric=name,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue

            sample = MeasurementSample(
                subject_id=subject_id,
                metric_name=name,
                value=value,
                measured_at=measured_at,
                provenance=Provenance.COMPUTED,
                recorded_by=actor,
            )
            written.append(await self.values.write_computed_value(sample))
            log.info("dependent_metric_calculated", metric=name, value=value)

        return written
