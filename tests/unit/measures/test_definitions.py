"""
Tests for measure definition management.

Covers:
- Validation order: syntax, missing dependencies, cycles
- Recalculation triggers (formula changes only)
- Cache invalidation on every successful write
- Deletion and rename blocking while dependents exist
"""

from collections.abc import AsyncIterator

import pytest

from adapters.memory.store import InMemoryDefinitionStore, InMemoryMeasureStore
from measures.domain.errors import (
    CircularDependencyError,
    DefinitionNotFoundError,
    DependentDefinitionsError,
    DuplicateDefinitionError,
    FormulaSyntaxError,
    InvalidDefinitionError,
    MissingDependencyError,
    SyntaxErrorCategory,
)
from measures.domain.models import (
    MetricDefinition,
    MetricDefinitionCreate,
    MetricDefinitionUpdate,
    MetricKind,
    RecalculationStatus,
)
from measures.services.cache import DefinitionCache
from measures.services.definitions import MetricDefinitionService
from measures.services.recalculation import RecalculationOrchestrator

BMI_FORMULA = "{weight} / ({height} * {height})"


@pytest.fixture
def definitions() -> InMemoryDefinitionStore:
    return InMemoryDefinitionStore(
        [MetricDefinition(name="weight", unit="kg"), MetricDefinition(name="height", unit="m")]
    )


@pytest.fixture
def cache() -> DefinitionCache:
    return DefinitionCache()


@pytest.fixture
async def orchestrator(
    definitions: InMemoryDefinitionStore, cache: DefinitionCache
) -> AsyncIterator[RecalculationOrchestrator]:
    orchestrator = RecalculationOrchestrator(definitions, InMemoryMeasureStore(), cache=cache)
    yield orchestrator
    await orchestrator.drain()


@pytest.fixture
def service(
    definitions: InMemoryDefinitionStore,
    orchestrator: RecalculationOrchestrator,
    cache: DefinitionCache,
) -> MetricDefinitionService:
    return MetricDefinitionService(definitions, orchestrator, cache)


def _calculated(name: str, formula: str, **kwargs) -> MetricDefinitionCreate:
    return MetricDefinitionCreate(name=name, kind=MetricKind.CALCULATED, formula=formula, **kwargs)


class TestValidateDefinitionFormula:
    async def test_returns_dependencies(self, service: MetricDefinitionService) -> None:
        assert await service.validate_definition_formula("bmi", BMI_FORMULA) == [
            "weight",
            "height",
        ]

    async def test_syntax_error(self, service: MetricDefinitionService) -> None:
        with pytest.raises(FormulaSyntaxError) as exc_info:
            await service.validate_definition_formula("bmi", "{weight} / ({height}")
        assert exc_info.value.category == SyntaxErrorCategory.UNBALANCED_PARENTHESES

    async def test_deeply_nested_formula(self, service: MetricDefinitionService) -> None:
        formula = "(" * 300 + "{weight}" + ")" * 300

        with pytest.raises(FormulaSyntaxError) as exc_info:
            await service.validate_definition_formula("nested", formula)
        assert exc_info.value.category == SyntaxErrorCategory.NESTING_TOO_DEEP

    async def test_missing_dependency(self, service: MetricDefinitionService) -> None:
        with pytest.raises(MissingDependencyError, match="Dependency not found: waist") as exc_info:
            await service.validate_definition_formula("whr", "{waist} / {hip} + {weight}")
        assert exc_info.value.missing == ["waist", "hip"]

    async def test_deleted_dependency_is_missing(
        self, service: MetricDefinitionService, definitions: InMemoryDefinitionStore
    ) -> None:
        height = await definitions.get_definition_by_name("height")
        assert height is not None
        await service.delete_definition(height.id)

        with pytest.raises(MissingDependencyError):
            await service.validate_definition_formula("bmi", BMI_FORMULA)

    async def test_self_reference_is_a_cycle(self, service: MetricDefinitionService) -> None:
        with pytest.raises(CircularDependencyError) as exc_info:
            await service.validate_definition_formula("bmi", "{bmi} + 1")
        assert exc_info.value.cycle == ["bmi", "bmi"]

    async def test_transitive_cycle_is_rendered(self, service: MetricDefinitionService) -> None:
        a = await service.create_definition(_calculated("a", "{weight} + 1"))
        await service.create_definition(_calculated("b", "{a} + 1"))
        await service.create_definition(_calculated("c", "{b} + 1"))

        with pytest.raises(CircularDependencyError, match="a → c → b → a"):
            await service.update_definition(a.id, MetricDefinitionUpdate(formula="{c} + 1"))


class TestCreateDefinition:
    async def test_create_calculated_definition(
        self, service: MetricDefinitionService, orchestrator: RecalculationOrchestrator
    ) -> None:
        bmi = await service.create_definition(_calculated("bmi", BMI_FORMULA), actor="admin")

        assert bmi.dependencies == ["weight", "height"]
        assert bmi.last_formula_change is not None
        run = orchestrator.latest_run(bmi.id)
        assert run is not None
        assert run.actor == "admin"

        await orchestrator.drain()
        assert run.status == RecalculationStatus.COMPLETED

    async def test_create_numeric_definition_does_not_recalculate(
        self, service: MetricDefinitionService, orchestrator: RecalculationOrchestrator
    ) -> None:
        waist = await service.create_definition(MetricDefinitionCreate(name="waist", unit="cm"))

        assert waist.dependencies == []
        assert orchestrator.latest_run(waist.id) is None

    async def test_duplicate_name(self, service: MetricDefinitionService) -> None:
        with pytest.raises(DuplicateDefinitionError, match="'weight' already exists"):
            await service.create_definition(MetricDefinitionCreate(name="weight"))

    async def test_calculated_without_formula(self, service: MetricDefinitionService) -> None:
        with pytest.raises(InvalidDefinitionError, match="Formula is required"):
            await service.create_definition(
                MetricDefinitionCreate(name="bmi", kind=MetricKind.CALCULATED)
            )

    async def test_numeric_with_formula(self, service: MetricDefinitionService) -> None:
        with pytest.raises(InvalidDefinitionError, match="Only calculated"):
            await service.create_definition(
                MetricDefinitionCreate(name="bmi", formula=BMI_FORMULA)
            )

    async def test_invalid_formula_is_not_saved(
        self, service: MetricDefinitionService, definitions: InMemoryDefinitionStore
    ) -> None:
        with pytest.raises(FormulaSyntaxError):
            await service.create_definition(_calculated("bmi", "sqrt({weight}, {height})"))

        assert await definitions.get_definition_by_name("bmi") is None

    async def test_works_without_orchestrator(self, definitions: InMemoryDefinitionStore) -> None:
        service = MetricDefinitionService(definitions)

        bmi = await service.create_definition(_calculated("bmi", BMI_FORMULA))

        assert bmi.is_calculated


class TestUpdateDefinition:
    @pytest.fixture
    async def bmi(
        self, service: MetricDefinitionService, orchestrator: RecalculationOrchestrator
    ) -> MetricDefinition:
        created = await service.create_definition(_calculated("bmi", BMI_FORMULA))
        await orchestrator.drain()
        return created

    async def test_formula_change_triggers_recalculation(
        self,
        service: MetricDefinitionService,
        orchestrator: RecalculationOrchestrator,
        bmi: MetricDefinition,
    ) -> None:
        first_run = orchestrator.latest_run(bmi.id)

        updated = await service.update_definition(
            bmi.id, MetricDefinitionUpdate(formula="{weight} / ({height} ^ 2)"), actor="editor"
        )

        assert updated.formula == "{weight} / ({height} ^ 2)"
        assert updated.dependencies == ["weight", "height"]
        second_run = orchestrator.latest_run(bmi.id)
        assert second_run is not first_run
        assert second_run is not None and second_run.actor == "editor"
        await orchestrator.drain()

    async def test_display_edit_does_not_trigger_recalculation(
        self,
        service: MetricDefinitionService,
        orchestrator: RecalculationOrchestrator,
        bmi: MetricDefinition,
    ) -> None:
        first_run = orchestrator.latest_run(bmi.id)

        updated = await service.update_definition(
            bmi.id, {"display_name": "Body Mass Index", "unit": "kg/m²"}
        )

        assert updated.display_name == "Body Mass Index"
        assert updated.formula == BMI_FORMULA
        assert orchestrator.latest_run(bmi.id) is first_run

    async def test_same_formula_does_not_trigger_recalculation(
        self,
        service: MetricDefinitionService,
        orchestrator: RecalculationOrchestrator,
        bmi: MetricDefinition,
    ) -> None:
        first_run = orchestrator.latest_run(bmi.id)

        await service.update_definition(bmi.id, MetricDefinitionUpdate(formula=BMI_FORMULA))

        assert orchestrator.latest_run(bmi.id) is first_run

    async def test_dependencies_follow_formula(
        self, service: MetricDefinitionService, orchestrator: RecalculationOrchestrator
    ) -> None:
        ratio = await service.create_definition(_calculated("ratio", "{weight} / {height}"))

        updated = await service.update_definition(ratio.id, {"formula": "{weight} * 2"})

        assert updated.dependencies == ["weight"]
        await orchestrator.drain()

    async def test_clearing_formula_of_calculated_definition(
        self, service: MetricDefinitionService, bmi: MetricDefinition
    ) -> None:
        with pytest.raises(InvalidDefinitionError):
            await service.update_definition(bmi.id, {"formula": None})

    async def test_convert_to_numeric_drops_formula(
        self, service: MetricDefinitionService, bmi: MetricDefinition
    ) -> None:
        updated = await service.update_definition(
            bmi.id, MetricDefinitionUpdate(kind=MetricKind.NUMERIC)
        )

        assert updated.formula is None
        assert updated.dependencies == []

    async def test_rename_blocked_while_referenced(
        self,
        service: MetricDefinitionService,
        definitions: InMemoryDefinitionStore,
        bmi: MetricDefinition,
    ) -> None:
        weight = await definitions.get_definition_by_name("weight")
        assert weight is not None

        with pytest.raises(DependentDefinitionsError, match="Cannot rename measure 'weight'"):
            await service.update_definition(weight.id, {"name": "body_weight"})

    async def test_rename_unreferenced_definition(
        self, service: MetricDefinitionService, bmi: MetricDefinition
    ) -> None:
        renamed = await service.update_definition(bmi.id, {"name": "body_mass_index"})
        assert renamed.name == "body_mass_index"

    async def test_rename_to_existing_name(
        self, service: MetricDefinitionService, bmi: MetricDefinition
    ) -> None:
        with pytest.raises(DuplicateDefinitionError):
            await service.update_definition(bmi.id, {"name": "weight"})

    async def test_unknown_definition(self, service: MetricDefinitionService) -> None:
        with pytest.raises(DefinitionNotFoundError):
            await service.update_definition("missing", {"unit": "kg"})


class TestDeleteDefinition:
    async def test_delete_blocked_while_referenced(
        self, service: MetricDefinitionService, definitions: InMemoryDefinitionStore
    ) -> None:
        bmi = await service.create_definition(_calculated("bmi", BMI_FORMULA))
        weight = await definitions.get_definition_by_name("weight")
        assert weight is not None

        with pytest.raises(DependentDefinitionsError) as exc_info:
            await service.delete_definition(weight.id)
        assert exc_info.value.dependents == ["bmi"]

        await service.delete_definition(bmi.id)
        deleted = await service.delete_definition(weight.id)

        assert deleted.is_deleted
        assert not deleted.is_active
        with pytest.raises(DefinitionNotFoundError):
            await service.get_definition(weight.id)

    async def test_name_can_be_reused_after_delete(
        self, service: MetricDefinitionService, definitions: InMemoryDefinitionStore
    ) -> None:
        height = await definitions.get_definition_by_name("height")
        assert height is not None
        await service.delete_definition(height.id)

        recreated = await service.create_definition(MetricDefinitionCreate(name="height"))

        assert recreated.id != height.id


class TestCacheInvalidation:
    async def test_every_write_invalidates(
        self,
        service: MetricDefinitionService,
        definitions: InMemoryDefinitionStore,
        cache: DefinitionCache,
    ) -> None:
        weight = await definitions.get_definition_by_name("weight")
        assert weight is not None

        await service.get_definition(weight.id)
        assert len(cache) == 1
        waist = await service.create_definition(MetricDefinitionCreate(name="waist"))
        assert len(cache) == 0

        await service.get_definition(weight.id)
        await service.update_definition(waist.id, {"unit": "cm"})
        assert len(cache) == 0

        await service.get_definition(weight.id)
        await service.delete_definition(waist.id)
        assert len(cache) == 0

    async def test_calculated_list_reflects_new_definitions(
        self, service: MetricDefinitionService
    ) -> None:
        assert await service.list_calculated_definitions() == []

        await service.create_definition(_calculated("bmi", BMI_FORMULA))

        assert [d.name for d in await service.list_calculated_definitions()] == ["bmi"]

    async def test_clear_cache(
        self,
        service: MetricDefinitionService,
        definitions: InMemoryDefinitionStore,
        cache: DefinitionCache,
    ) -> None:
        weight = await definitions.get_definition_by_name("weight")
        assert weight is not None
        await service.get_definition(weight.id)

        service.clear_cache()

        assert len(cache) == 0
