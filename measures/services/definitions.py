"""
Measure definition management.

Wraps the definition store with formula validation, dependency tracking,
cache invalidation and recalculation triggers. Validation order for a
calculated definition: syntax, then missing dependencies, then cycles.
"""

from collections.abc import Mapping
from typing import Any

import structlog

from measures.config import EngineConfig
from measures.domain.errors import (
    CircularDependencyError,
    DefinitionNotFoundError,
    DependentDefinitionsError,
    DuplicateDefinitionError,
    InvalidDefinitionError,
    MissingDependencyError,
)
from measures.domain.models import (
    MetricDefinition,
    MetricDefinitionCreate,
    MetricDefinitionUpdate,
    MetricKind,
    RecalculationRun,
    utcnow,
)
from measures.services.cache import DefinitionCache
from measures.services.dependencies import detect_circular_dependencies, extract_dependencies
from measures.services.formula_parser import parse_formula
from measures.services.recalculation import RecalculationOrchestrator
from measures.services.stores import DefinitionStore

logger = structlog.get_logger(__name__)

# Fields that may not be cleared by an explicit None in a partial update
_REQUIRED_FIELDS = ("name", "category", "kind", "decimal_places", "is_active")


class MetricDefinitionService:
    """Create, update and delete measure definitions while keeping the graph valid."""

    def __init__(
        self,
        definitions: DefinitionStore,
        orchestrator: RecalculationOrchestrator | None = None,
        cache: DefinitionCache | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.definitions = definitions
        self.orchestrator = orchestrator
        self.cache = cache or DefinitionCache()
        self.config = config or EngineConfig()
        self.logger = logger.bind(component="metric_definition_service")

    async def validate_definition_formula(
        self, name: str, formula: str, exclude_id: str | None = None
    ) -> list[str]:
        """
        Validate a formula for the definition called `name`.

        Args:
            name: Name the definition will have once saved
            formula: Formula text
            exclude_id: Id of the definition being edited, so its stored
                dependencies are replaced by the proposed ones

        Returns:
            The extracted dependency list.

        Raises:
            FormulaSyntaxError, MissingDependencyError, CircularDependencyError
        """
        tree = parse_formula(formula, max_length=self.config.max_formula_length)
        dependencies = extract_dependencies(tree)

        existing = {
            d.name: d for d in await self.definitions.list_definitions() if d.id != exclude_id
        }
        # A reference to the definition itself is reported as a cycle, not as missing
        missing = [dep for dep in dependencies if dep not in existing and dep != name]
        if missing:
            raise MissingDependencyError(missing)

        calculated = {n: d for n, d in existing.items() if d.is_calculated}
        result = detect_circular_dependencies(name, dependencies, calculated)
        if result.has_circular:
            raise CircularDependencyError(result.cycle or [name])

        return dependencies

    async def get_definition(self, definition_id: str) -> MetricDefinition:
        definition = await self.cache.get_or_load(definition_id, self.definitions.get_definition)
        if definition is None or definition.is_deleted:
            raise DefinitionNotFoundError(definition_id)
        return definition

    async def list_calculated_definitions(self) -> list[MetricDefinition]:
        """Active calculated definitions, served from the cache when warm."""

        async def load() -> list[MetricDefinition]:
            return await self.definitions.list_definitions(kind=MetricKind.CALCULATED)

        return await self.cache.calculated_definitions(load)

    def clear_cache(self) -> None:
        self.cache.invalidate_all()

    async def create_definition(
        self, data: MetricDefinitionCreate, actor: str | None = None
    ) -> MetricDefinition:
        if await self.definitions.get_definition_by_name(data.name) is not None:
            raise DuplicateDefinitionError(data.name)

        fields: dict[str, Any] = data.model_dump()
        if data.kind == MetricKind.CALCULATED:
            if not data.formula or not data.formula.strip():
                raise InvalidDefinitionError("Formula is required for calculated measures")
            fields["dependencies"] = await self.validate_definition_formula(
                data.name, data.formula
            )
            fields["last_formula_change"] = utcnow()
        elif data.formula:
            raise InvalidDefinitionError("Only calculated measures can have a formula")

        saved = await self.definitions.save_definition(MetricDefinition(**fields))
        self.cache.invalidate_all()
        self.logger.info(
            "definition_created",
            definition_id=saved.id,
            name=saved.name,
            kind=saved.kind.value,
            dependencies=saved.dependencies,
            actor=actor,
        )

        if saved.is_calculated:
            self._schedule_recalculation(saved, actor)
        return saved

    async def update_definition(
        self,
        definition_id: str,
        changes: MetricDefinitionUpdate | Mapping[str, Any],
        actor: str | None = None,
    ) -> MetricDefinition:
        """
        Apply a partial update.

        Only fields explicitly set on `changes` are applied. A formula change
        re-extracts dependencies, re-validates the graph and schedules a
        recalculation; other edits never trigger one.
        """
        if not isinstance(changes, MetricDefinitionUpdate):
            changes = MetricDefinitionUpdate.model_validate(changes)

        current = await self.get_definition(definition_id)
        updates = {
            key: value
            for key, value in changes.model_dump(exclude_unset=True).items()
            if not (key in _REQUIRED_FIELDS and value is None)
        }

        new_name = updates.get("name", current.name)
        if new_name != current.name:
            other = await self.definitions.get_definition_by_name(new_name)
            if other is not None and other.id != current.id:
                raise DuplicateDefinitionError(new_name)
            dependents = await self._direct_dependents(current)
            if dependents:
                raise DependentDefinitionsError(current.name, dependents, action="rename")

        kind = updates.get("kind", current.kind)
        formula = updates.get("formula", current.formula)
        formula_changed = False

        if kind == MetricKind.CALCULATED:
            if not formula or not formula.strip():
                raise InvalidDefinitionError("Formula is required for calculated measures")
            formula_changed = formula != current.formula or kind != current.kind
            if formula_changed or new_name != current.name:
                updates["dependencies"] = await self.validate_definition_formula(
                    new_name, formula, exclude_id=current.id
                )
            if formula_changed:
                updates["last_formula_change"] = utcnow()
        else:
            if updates.get("formula"):
                raise InvalidDefinitionError("Only calculated measures can have a formula")
            updates["formula"] = None
            updates["dependencies"] = []

        updated = MetricDefinition.model_validate(
            {**current.model_dump(), **updates, "updated_at": utcnow()}
        )
        saved = await self.definitions.save_definition(updated)
        self.cache.invalidate_all()
        self.logger.info(
            "definition_updated",
            definition_id=saved.id,
            name=saved.name,
            fields=sorted(updates),
            formula_changed=formula_changed,
            actor=actor,
        )

        if formula_changed and saved.is_calculated:
            self._schedule_recalculation(saved, actor)
        return saved

    async def delete_definition(self, definition_id: str, actor: str | None = None) -> MetricDefinition:
        """Soft-delete a definition. Rejected while other definitions depend on it."""
        current = await self.get_definition(definition_id)

        dependents = await self._direct_dependents(current)
        if dependents:
            self.logger.warning(
                "definition_delete_blocked", name=current.name, dependents=dependents, actor=actor
            )
            raise DependentDefinitionsError(current.name, dependents)

        now = utcnow()
        deleted = current.model_copy(update={"deleted_at": now, "updated_at": now, "is_active": False})
        saved = await self.definitions.save_definition(deleted)
        self.cache.invalidate_all()
        self.logger.info("definition_deleted", definition_id=saved.id, name=saved.name, actor=actor)
        return saved

    async def _direct_dependents(self, definition: MetricDefinition) -> list[str]:
        calculated = await self.definitions.list_definitions(kind=MetricKind.CALCULATED)
        return [
            d.name for d in calculated if d.id != definition.id and definition.name in d.dependencies
        ]

    def _schedule_recalculation(
        self, definition: MetricDefinition, actor: str | None
    ) -> RecalculationRun | None:
        if self.orchestrator is None:
            return None
        return self.orchestrator.recalculate_all_values_for_metric(definition.id, actor)
