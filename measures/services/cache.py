"""
Process-local cache of measure definitions.

Invalidation is coarse: any create/update/delete of any definition clears
everything. The cache holds no authoritative state; a cold cache always
rebuilds from the definition store.
"""

import time
from collections.abc import Awaitable, Callable

import structlog

from measures.domain.models import MetricDefinition

logger = structlog.get_logger(__name__)


class DefinitionCache:
    """Memoizes definitions by id and the active calculated-definition list."""

    def __init__(self, ttl_seconds: float = 300.0, enabled: bool = True) -> None:
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self.hits = 0
        self.misses = 0
        self._entries: dict[str, tuple[float, MetricDefinition]] = {}
        self._calculated: tuple[float, list[MetricDefinition]] | None = None
        self.logger = logger.bind(component="definition_cache")

    def _fresh(self, stored_at: float) -> bool:
        return time.monotonic() - stored_at < self.ttl_seconds

    def get(self, definition_id: str) -> MetricDefinition | None:
        """Cached definition, or None on a miss."""
        entry = self._entries.get(definition_id) if self.enabled else None
        if entry is not None and self._fresh(entry[0]):
            self.hits += 1
            return entry[1]
        if entry is not None:
            del self._entries[definition_id]
        self.misses += 1
        return None

    def put(self, definition: MetricDefinition) -> None:
        if self.enabled:
            self._entries[definition.id] = (time.monotonic(), definition)

    async def get_or_load(
        self,
        definition_id: str,
        loader: Callable[[str], Awaitable[MetricDefinition | None]],
    ) -> MetricDefinition | None:
        cached = self.get(definition_id)
        if cached is not None:
            return cached
        definition = await loader(definition_id)
        if definition is not None:
            self.put(definition)
        return definition

    async def calculated_definitions(
        self, loader: Callable[[], Awaitable[list[MetricDefinition]]]
    ) -> list[MetricDefinition]:
        """Active, non-deleted calculated definitions (memoized with TTL)."""
        if self.enabled and self._calculated is not None and self._fresh(self._calculated[0]):
            self.hits += 1
            return list(self._calculated[1])

        self.misses += 1
        definitions = [
            d for d in await loader() if d.is_calculated and d.is_active and not d.is_deleted
        ]
        if self.enabled:
            self._calculated = (time.monotonic(), definitions)
        return list(definitions)

    def invalidate_all(self) -> None:
        self._entries.clear()
        self._calculated = None
        self.logger.debug("definition_cache_invalidated")

    def __len__(self) -> int:
        return len(self._entries)
