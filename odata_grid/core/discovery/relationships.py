# odata_grid/core/discovery/relationships.py
"""
RELATIONSHIP RESOLVER - Find the lookup column that links a child entity to its parent

Strategies, in order:
    1. Cache                  (parent, child) already resolved → return it verbatim
    2. Schema                 child lookups targeting the parent
                                  exactly one  → confidence high
                                  several      → first one, confidence medium
    3. Record analysis        sample child rows, look for a *_value column whose
                              values overlap real parent ids → confidence low
    4. Column pattern probe   conventional names present in sampled rows → low
    5. Pattern guess          first conventional name, no evidence → low

Only successful resolutions are cached; "not found" is retried next time.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Union

from odata_grid.core.errors import EngineError, InvalidEntityNameError
from odata_grid.core.schemas import (
    Confidence,
    DiscoveredRelationship,
    EntitySchema,
    RelationshipSource,
)
from odata_grid.core.discovery.query_builder import build_relationship_filter
from odata_grid.core.discovery.schema_cache import EntitySchemaCache

logger = logging.getLogger(__name__)

# Parent-reference fields that exist on many entity types regardless of naming
GENERIC_PARENT_FIELDS = ("parentcustomerid", "parentaccountid")

PARENT_ID_SAMPLE_SIZE = 50


def lookup_column_patterns(parent_entity: str) -> List[str]:
    """Conventional lookup column names for a parent, most likely first."""
    return [
        f"_{parent_entity}_value",
        f"_{parent_entity}id_value",
        f"{parent_entity}id",
        *GENERIC_PARENT_FIELDS,
    ]


def is_lookup_column(column_name: str) -> bool:
    return column_name.endswith("_value") or "_value@" in column_name


def extract_field_name(column_name: str) -> str:
    """ "_projectid_value" → "projectid" """
    field = re.sub(r"_value.*$", "", column_name)
    return field[1:] if field.startswith("_") else field


def relationship_key(parent_entity: str, child_entity: str) -> str:
    return f"{parent_entity}->{child_entity}"


class RelationshipResolver:
    """
    Resolves and caches parent → child relationships.

    Args:
        schema_cache: Shared EntitySchemaCache
        client: Service client used to sample rows for the heuristic strategies
        sample_size: How many child rows to sample
        allow_pattern_guess: Fall back to a blind conventional-name guess

    Example:
        resolver = RelationshipResolver(schema_cache, client)
        rel = await resolver.resolve("project", "task")
        rel.lookup_column  # "project_ref"
    """

    def __init__(
        self,
        schema_cache: EntitySchemaCache,
        client=None,
        sample_size: int = 5,
        allow_pattern_guess: bool = True,
    ):
        self._schema_cache = schema_cache
        self._client = client
        self._sample_size = sample_size
        self._allow_pattern_guess = allow_pattern_guess
        self._relationships: Dict[str, DiscoveredRelationship] = {}
        self._in_flight: Dict[str, "asyncio.Task[Optional[DiscoveredRelationship]]"] = {}
        self._generation = 0

    # ------------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------------

    async def resolve(
        self,
        parent_entity: str,
        child_entity: str,
        timeout: Optional[float] = None,
        refresh: bool = False,
    ) -> Optional[DiscoveredRelationship]:
        """
        Find the attribute on child_entity that references parent_entity.

        With refresh=True a cached low-confidence guess is thrown away and
        discovery runs again; confident entries are still served from cache.

        Raises:
            InvalidEntityNameError: parent or child name is empty

        Returns:
            DiscoveredRelationship, or None when nothing could be found
        """
        if not parent_entity or not parent_entity.strip():
            raise InvalidEntityNameError("Parent entity name is required")
        if not child_entity or not child_entity.strip():
            raise InvalidEntityNameError("Child entity name is required")

        key = relationship_key(parent_entity, child_entity)
        cached = self._relationships.get(key)
        if cached is not None and refresh and cached.confidence == Confidence.LOW:
            logger.info(f"Re-discovering low-confidence relationship: {key}")
            del self._relationships[key]
            cached = None
        if cached is not None:
            logger.debug(f"Using cached relationship: {key}")
            return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._discover(parent_entity, child_entity, timeout, self._generation)
            )
            self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _discover(
        self,
        parent_entity: str,
        child_entity: str,
        timeout: Optional[float],
        generation: int,
    ) -> Optional[DiscoveredRelationship]:
        key = relationship_key(parent_entity, child_entity)
        logger.info(f"Discovering relationship: {key}")

        try:
            child_schema = await self._schema_cache.get_schema(child_entity, timeout=timeout)
            if child_schema is None:
                logger.warning(f"Could not get schema for child entity: {child_entity}")
                return None

            relationship = self._from_schema(parent_entity, child_schema)
            if relationship is None:
                logger.info(
                    f"No lookup from {child_entity} to {parent_entity} in schema, trying heuristics"
                )
                relationship = await self._from_heuristics(
                    parent_entity, child_schema, timeout
                )
        finally:
            if generation == self._generation:
                self._in_flight.pop(key, None)

        if relationship is None:
            logger.warning(f"All strategies failed for {key}")
            return None

        if generation != self._generation:
            logger.info(f"Relationship cache cleared while discovering {key}, not storing")
            return relationship

        self._relationships[key] = relationship
        logger.info(
            f"Discovered relationship {key} via {relationship.lookup_column} "
            f"(confidence={relationship.confidence.value}, source={relationship.source.value})"
        )
        return relationship

    def _from_schema(
        self, parent_entity: str, child_schema: EntitySchema
    ) -> Optional[DiscoveredRelationship]:
        matches = child_schema.lookups_targeting(parent_entity)
        if not matches:
            return None

        # Several foreign keys to the same parent: keep the first, flag ambiguity
        lookup = matches[0]
        return DiscoveredRelationship(
            parent_entity=parent_entity,
            child_entity=child_schema.logical_name,
            lookup_column=lookup.lookup_field_name,
            relationship_label=f"{parent_entity} -> {child_schema.logical_name} ({lookup.display_name})",
            confidence=Confidence.HIGH if len(matches) == 1 else Confidence.MEDIUM,
            source=RelationshipSource.SCHEMA,
        )

    async def _from_heuristics(
        self, parent_entity: str, child_schema: EntitySchema, timeout: Optional[float]
    ) -> Optional[DiscoveredRelationship]:
        rows = await self._sample_rows(
            f"{child_schema.collection_name}?$top={self._sample_size}", timeout
        )

        if rows:
            column = await self._match_parent_ids(parent_entity, child_schema, rows, timeout)
            if column:
                return self._heuristic(
                    parent_entity,
                    child_schema.logical_name,
                    column,
                    RelationshipSource.RECORD_ANALYSIS,
                    f"{parent_entity} lookup (matched sampled records)",
                )

            columns = {name for row in rows for name in row}
            for pattern in lookup_column_patterns(parent_entity):
                if pattern in columns:
                    return self._heuristic(
                        parent_entity,
                        child_schema.logical_name,
                        pattern,
                        RelationshipSource.PATTERN,
                        f"{parent_entity} lookup (matched column pattern)",
                    )

        if not self._allow_pattern_guess:
            return None

        return self._heuristic(
            parent_entity,
            child_schema.logical_name,
            lookup_column_patterns(parent_entity)[0],
            RelationshipSource.PATTERN,
            f"{parent_entity} lookup (guessed)",
        )

    async def _match_parent_ids(
        self,
        parent_entity: str,
        child_schema: EntitySchema,
        rows: List[Dict[str, Any]],
        timeout: Optional[float],
    ) -> Optional[str]:
        """Return the *_value column whose values best overlap real parent ids."""
        candidates = sorted(
            {
                name
                for row in rows
                for name in row
                if is_lookup_column(name)
                and "@" not in name
                and extract_field_name(name) != child_schema.primary_id_attribute
            }
        )
        if not candidates:
            return None

        parent_schema = await self._schema_cache.get_schema(parent_entity, timeout=timeout)
        if parent_schema is None:
            return None

        primary_id = parent_schema.primary_id_attribute
        parent_rows = await self._sample_rows(
            f"{parent_schema.collection_name}?$select={primary_id}&$top={PARENT_ID_SAMPLE_SIZE}",
            timeout,
        )
        parent_ids = {
            str(row[primary_id]).lower() for row in parent_rows if row.get(primary_id)
        }
        if not parent_ids:
            return None

        best_column, best_overlap = None, 0
        for column in candidates:
            values = {str(row[column]).lower() for row in rows if row.get(column)}
            overlap = len(values & parent_ids)
            if overlap > best_overlap:
                best_column, best_overlap = column, overlap

        return best_column

    async def _sample_rows(
        self, query_string: str, timeout: Optional[float]
    ) -> List[Dict[str, Any]]:
        if self._client is None:
            return []
        try:
            result = await self._client.retrieve_multiple(query_string, timeout=timeout)
        except EngineError as e:
            logger.warning(f"Record sampling failed for {query_string}: {e}")
            return []
        return result["entities"]

    @staticmethod
    def _heuristic(
        parent_entity: str,
        child_entity: str,
        lookup_column: str,
        source: RelationshipSource,
        label: str,
    ) -> DiscoveredRelationship:
        return DiscoveredRelationship(
            parent_entity=parent_entity,
            child_entity=child_entity,
            lookup_column=lookup_column,
            relationship_label=label,
            confidence=Confidence.LOW,
            source=source,
        )

    # ------------------------------------------------------------------------
    # Filters and cache management
    # ------------------------------------------------------------------------

    async def build_filter(
        self, parent_entity: str, child_entity: str, parent_record_id: str
    ) -> Optional[str]:
        """Build "<lookup> eq <parent id>" for the pair, or None if unresolved."""
        relationship = await self.resolve(parent_entity, child_entity)
        if relationship is None or not parent_record_id:
            return None
        return build_relationship_filter(relationship.lookup_column, parent_record_id)

    def discovered(self, entity_logical_name: Optional[str] = None) -> List[DiscoveredRelationship]:
        relationships = list(self._relationships.values())
        if not entity_logical_name:
            return relationships
        return [
            rel
            for rel in relationships
            if entity_logical_name in (rel.parent_entity, rel.child_entity)
        ]

    def register(
        self,
        parent_entity: str,
        child_entity: str,
        lookup_column: str,
        label: Optional[str] = None,
    ) -> DiscoveredRelationship:
        """Record a relationship supplied by an operator."""
        relationship = DiscoveredRelationship(
            parent_entity=parent_entity,
            child_entity=child_entity,
            lookup_column=lookup_column,
            relationship_label=label or f"{parent_entity} lookup (manual)",
            confidence=Confidence.HIGH,
            source=RelationshipSource.MANUAL,
        )
        self._relationships[relationship_key(parent_entity, child_entity)] = relationship
        logger.info(f"Registered manual relationship {parent_entity} -> {child_entity}: {lookup_column}")
        return relationship

    def export_mappings(self) -> Dict[str, Dict[str, Any]]:
        """Confident discoveries only; low-confidence guesses are not worth persisting."""
        return {
            key: rel.model_dump(mode="json")
            for key, rel in self._relationships.items()
            if rel.confidence != Confidence.LOW
        }

    def import_mappings(
        self, mappings: Dict[str, Union[DiscoveredRelationship, Dict[str, Any]]]
    ) -> int:
        imported = 0
        for value in mappings.values():
            relationship = (
                value
                if isinstance(value, DiscoveredRelationship)
                else DiscoveredRelationship.model_validate(value)
            )
            key = relationship_key(relationship.parent_entity, relationship.child_entity)
            self._relationships[key] = relationship
            imported += 1

        logger.info(f"Imported {imported} relationship mappings")
        return imported

    def clear(self) -> None:
        self._generation += 1
        self._relationships.clear()
        self._in_flight.clear()
        logger.info("Relationship cache cleared")
