"""
End-to-end system check for the formula engine.

This script exercises:
1. Configuration loading and validation
2. Formula validation and evaluation
3. Definition management with cycle and dependency checks
4. Background recalculation over seeded history
5. Cascading recalculation for a newly logged sample

Run with: uv run python system_check.py
"""

import asyncio
from datetime import UTC, datetime, timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.memory.store import InMemoryDefinitionStore, InMemoryMeasureStore
from measures.config import configure_logging, get_config, print_config_summary, validate_config
from measures.domain.errors import CircularDependencyError, FormulaError
from measures.domain.models import (
    MeasurementSample,
    MetricDefinitionCreate,
    MetricDefinitionUpdate,
    MetricKind,
)
from measures.services import (
    DefinitionCache,
    MetricDefinitionService,
    RecalculationOrchestrator,
    evaluate,
    validate_formula,
)
from measures.services.formula_templates import get_templates

console = Console()

START = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)


async def check_configuration() -> bool:
    """Check configuration loading."""

    console.print(Panel("Checking Configuration", style="blue"))

    try:
        validate_config()
        print_config_summary()
        return True
    except Exception as e:
        console.print(f"Configuration check failed: {e}", style="red")
        return False


async def check_formulas() -> bool:
    """Validate every template and evaluate a few known formulas."""

    console.print(Panel("Checking Formula Language", style="blue"))

    table = Table(title="Templates")
    table.add_column("Template", style="cyan")
    table.add_column("Formula", style="white")
    table.add_column("Valid", style="white")

    all_valid = True
    for template in get_templates():
        result = validate_formula(template.formula)
        all_valid = all_valid and result.valid
        table.add_row(template.id, template.formula, "yes" if result.valid else result.error or "no")
    console.print(table)

    bmi = evaluate("{weight} / ({height} * {height})", {"weight": 70, "height": 1.75}, 2)
    console.print(f"BMI for 70 kg / 1.75 m: {bmi}", style="green")

    for formula in ("-2 ^ 2", "2 ^ 3 ^ 2", "{a} / {b}"):
        try:
            value = evaluate(formula, {"a": 1, "b": 0}, 2)
            console.print(f"{formula} = {value}")
        except FormulaError as e:
            console.print(f"{formula} -> {type(e).__name__}: {e}", style="yellow")

    return all_valid and bmi == 22.86


async def check_recalculation() -> bool:
    """Create definitions, seed history, recalculate and inspect the run."""

    console.print(Panel("Checking Definitions and Recalculation", style="blue"))

    config = get_config()
    definitions = InMemoryDefinitionStore()
    values = InMemoryMeasureStore()
    cache = DefinitionCache(ttl_seconds=config.cache.ttl_seconds, enabled=config.cache.enabled)
    orchestrator = RecalculationOrchestrator(
        definitions, values, config.recalculation, config.engine, cache=cache
    )
    service = MetricDefinitionService(definitions, orchestrator, cache, config.engine)

    await service.create_definition(MetricDefinitionCreate(name="weight", unit="kg"))
    await service.create_definition(MetricDefinitionCreate(name="height", unit="m"))

    for index, subject_id in enumerate(("patient-1", "patient-2", "patient-3")):
        await values.record_sample(
            MeasurementSample(
                subject_id=subject_id, metric_name="height", value=1.6 + index / 10, measured_at=START
            )
        )
        for week in range(4):
            await values.record_sample(
                MeasurementSample(
                    subject_id=subject_id,
                    metric_name="weight",
                    value=80.0 - week + index,
                    measured_at=START + timedelta(weeks=week),
                )
            )

    bmi = await service.create_definition(
        MetricDefinitionCreate(
            name="bmi",
            kind=MetricKind.CALCULATED,
            formula="{weight} / ({height} * {height})",
            unit="kg/m²",
        ),
        actor="system-check",
    )
    change = await service.create_definition(
        MetricDefinitionCreate(
            name="bmi_change",
            kind=MetricKind.CALCULATED,
            formula="{current:bmi} - {previous:bmi}",
            decimal_places=1,
        ),
        actor="system-check",
    )

    try:
        await service.update_definition(bmi.id, MetricDefinitionUpdate(formula="{bmi_change} + 1"))
        console.print("Cycle was not detected", style="red")
        return False
    except CircularDependencyError as e:
        console.print(f"Rejected as expected: {e}", style="green")

    await orchestrator.drain()
    # bmi_change ran alongside bmi; rerun it now that bmi history exists
    orchestrator.recalculate_all_values_for_metric(change.id, actor="system-check")
    await orchestrator.drain()

    table = Table(title="Recalculation Runs")
    table.add_column("Metric", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Subjects", style="white")
    table.add_column("Written", style="white")
    table.add_column("Unchanged", style="white")
    table.add_column("Failures", style="white")
    for run in orchestrator.runs:
        table.add_row(
            run.metric_name or run.definition_id,
            run.status.value,
            f"{run.subjects_processed}/{run.subjects_total}",
            str(run.values_written),
            str(run.values_unchanged),
            str(run.failure_count),
        )
    console.print(table)

    history = await values.get_history("patient-1", "bmi")
    console.print(f"patient-1 BMI history: {[s.value for s in history]}", style="green")

    new_weight = MeasurementSample(
        subject_id="patient-1",
        metric_name="weight",
        value=75.0,
        measured_at=START + timedelta(weeks=4),
    )
    await values.record_sample(new_weight)
    written = await orchestrator.recalculate_dependent_metrics(
        new_weight.subject_id, new_weight.metric_name, new_weight.measured_at, "system-check"
    )
    console.print(
        f"Dependents after new weight: {[(s.metric_name, s.value) for s in written]}",
        style="green",
    )

    await orchestrator.shutdown()
    return len(history) == 4 and [s.metric_name for s in written] == ["bmi", "bmi_change"]


async def run_all_checks() -> None:
    """Run all system checks."""

    configure_logging()
    console.print(Panel("Measure Formula Engine - System Check", style="bold blue"))

    checks = [
        ("Configuration", check_configuration),
        ("Formula Language", check_formulas),
        ("Recalculation", check_recalculation),
    ]

    results = []

    for check_name, check_func in checks:
        console.print(f"\n{'=' * 60}")
        try:
            result = await check_func()
            results.append((check_name, result))
        except KeyboardInterrupt:
            console.print("\nChecks interrupted by user", style="yellow")
            break
        except Exception as e:
            console.print(f"{check_name} failed with exception: {e}", style="red")
            results.append((check_name, False))

    console.print(f"\n{'=' * 60}")
    summary_table = Table(title="Check Results")
    summary_table.add_column("Check", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for check_name, result in results:
        summary_table.add_row(check_name, "PASSED" if result else "FAILED")
        passed += bool(result)

    console.print(summary_table)
    console.print(f"\nResults: {passed}/{len(results)} checks passed")


if __name__ == "__main__":
    try:
        asyncio.run(run_all_checks())
    except KeyboardInterrupt:
        console.print("\nChecks stopped by user", style="yellow")
