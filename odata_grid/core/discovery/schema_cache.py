# odata_grid/core/discovery/schema_cache.py
"""
SCHEMA CACHE - Fetch and remember entity schemas

Purpose:
    1. Fetch one entity definition per entity (primary id/name, collection, lookups)
    2. Keep it for the life of the process (or until the optional TTL runs out)
    3. Never run two fetches for the same entity at the same time

Data Flow:
    get_schema("task") → cache hit?  → return
                       → in flight?  → await the same task
                       → otherwise   → fetch → parse_entity_definition() → cache
"""

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from odata_grid.core.errors import EngineError
from odata_grid.core.schemas import EntitySchema, LookupAttribute

logger = logging.getLogger(__name__)

UNKNOWN_ENTITY = "unknown"

# AttributeType values that reference another entity
LOOKUP_ATTRIBUTE_TYPES = {"Lookup", "Customer", "Owner"}


# ============================================================================
# PARSING
# ============================================================================


def is_valid_entity_name(entity_logical_name: Optional[str]) -> bool:
    return bool(
        entity_logical_name
        and entity_logical_name.strip()
        and entity_logical_name.strip().lower() != UNKNOWN_ENTITY
    )


def pluralize(entity_logical_name: str) -> str:
    """Collection name fallback: "task" → "tasks", "tasks" stays "tasks"."""
    if entity_logical_name.endswith("s"):
        return entity_logical_name
    return f"{entity_logical_name}s"


def read_label(value: Any, default: str) -> str:
    """
    Display names arrive either as plain strings or as localized label objects:
        {"UserLocalizedLabel": {"Label": "Task"}}
    """
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        label = (value.get("UserLocalizedLabel") or {}).get("Label")
        if label:
            return label
        localized = value.get("LocalizedLabels") or []
        if localized and localized[0].get("Label"):
            return localized[0]["Label"]
    return default


def parse_lookup_attribute(attribute: Dict[str, Any]) -> LookupAttribute:
    logical_name = attribute["LogicalName"]
    return LookupAttribute(
        logical_name=logical_name,
        display_name=read_label(attribute.get("DisplayName"), logical_name),
        targets=set(attribute.get("Targets") or []),
        lookup_field_name=attribute.get("LookupFieldName") or f"_{logical_name}_value",
    )


def parse_entity_definition(
    entity_logical_name: str, definition: Dict[str, Any]
) -> EntitySchema:
    """
    Turn a raw entity definition into an EntitySchema.

    Example:
        Input:
            {"LogicalName": "task", "EntitySetName": "tasks",
             "PrimaryIdAttribute": "taskId", "PrimaryNameAttribute": "subject",
             "Attributes": [{"LogicalName": "project", "AttributeType": "Lookup",
                             "Targets": ["project"], "LookupFieldName": "project_ref"}]}

        Output:
            EntitySchema(logical_name="task", collection_name="tasks", ...,
                         lookup_attributes=[LookupAttribute(logical_name="project",
                                                            lookup_field_name="project_ref", ...)])
    """
    logical_name = definition.get("LogicalName") or entity_logical_name

    lookups: List[LookupAttribute] = []
    for attribute in definition.get("Attributes") or []:
        if attribute.get("AttributeType") not in LOOKUP_ATTRIBUTE_TYPES:
            continue
        if not attribute.get("LogicalName"):
            continue
        lookup = parse_lookup_attribute(attribute)
        if not lookup.targets:
            logger.warning(
                f"Lookup {logical_name}.{lookup.logical_name} has no targets"
            )
        lookups.append(lookup)

    return EntitySchema(
        logical_name=logical_name,
        display_name=read_label(definition.get("DisplayName"), logical_name),
        collection_name=(
            definition.get("EntitySetName")
            or definition.get("LogicalCollectionName")
            or pluralize(logical_name)
        ),
        primary_id_attribute=definition.get("PrimaryIdAttribute") or f"{logical_name}id",
        primary_name_attribute=definition.get("PrimaryNameAttribute") or "name",
        lookup_attributes=lookups,
    )


# ============================================================================
# CACHE
# ============================================================================


class EntitySchemaCache:
    """
    Process-lifetime schema cache with single-flight fetching.

    Args:
        client: Anything with `async get_entity_definition(name, timeout=None)`
        ttl_seconds: Optional expiry; None keeps entries until clear()
        wait_timeout: How long a caller waits on somebody else's fetch

    Example:
        cache = EntitySchemaCache(client)
        schema = await cache.get_schema("task")
    """

    def __init__(
        self,
        client=None,
        ttl_seconds: Optional[float] = None,
        wait_timeout: float = 5.0,
    ):
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._wait_timeout = wait_timeout
        self._entries: Dict[str, Tuple[EntitySchema, float]] = {}
        self._in_flight: Dict[str, "asyncio.Task[Optional[EntitySchema]]"] = {}
        # Bumped by clear(); fetches started before a clear never write back
        self._generation = 0
        self.fetch_count = 0

    def peek(self, entity_logical_name: str) -> Optional[EntitySchema]:
        """Return a cached schema without touching the network."""
        entry = self._entries.get(entity_logical_name)
        if entry is None:
            return None

        schema, fetched_at = entry
        if self._ttl_seconds is not None and time.monotonic() - fetched_at > self._ttl_seconds:
            del self._entries[entity_logical_name]
            return None
        return schema

    async def get_schema(
        self, entity_logical_name: str, timeout: Optional[float] = None
    ) -> Optional[EntitySchema]:
        """
        Return the schema for an entity, fetching it at most once.

        Returns:
            EntitySchema, or None when the name is invalid or the fetch failed
        """
        if not is_valid_entity_name(entity_logical_name):
            logger.warning(f"Invalid entity name for schema lookup: '{entity_logical_name}'")
            return None

        cached = self.peek(entity_logical_name)
        if cached is not None:
            logger.debug(f"Using cached schema for {entity_logical_name}")
            return cached

        task = self._in_flight.get(entity_logical_name)
        wait_limit = None
        if task is None:
            if self._client is None:
                logger.warning("Service client not available for schema discovery")
                return None
            task = asyncio.ensure_future(
                self._fetch(entity_logical_name, timeout, self._generation)
            )
            self._in_flight[entity_logical_name] = task
        else:
            logger.info(f"Already fetching schema for {entity_logical_name}, waiting...")
            wait_limit = self._wait_timeout

        try:
            # shield: a cancelled waiter must not cancel the shared fetch
            return await asyncio.wait_for(asyncio.shield(task), wait_limit)
        except asyncio.TimeoutError:
            logger.warning(
                f"Timed out after {self._wait_timeout}s waiting for schema of {entity_logical_name}"
            )
            return None

    async def _fetch(
        self, entity_logical_name: str, timeout: Optional[float], generation: int
    ) -> Optional[EntitySchema]:
        self.fetch_count += 1
        try:
            logger.info(f"Fetching schema for entity: {entity_logical_name}")
            definition = await self._client.get_entity_definition(
                entity_logical_name, timeout=timeout
            )
            schema = parse_entity_definition(entity_logical_name, definition)
        except (EngineError, KeyError, TypeError, ValueError, AttributeError) as e:
            # Negative results are not cached; the next call hits the network again
            logger.error(f"Failed to fetch schema for {entity_logical_name}: {e}")
            return None
        finally:
            if generation == self._generation:
                self._in_flight.pop(entity_logical_name, None)

        if generation != self._generation:
            logger.info(f"Schema cache cleared while fetching {entity_logical_name}, not storing")
            return schema

        self._entries[entity_logical_name] = (schema, time.monotonic())
        logger.info(
            f"Fetched schema for {entity_logical_name}: "
            f"{len(schema.lookup_attributes)} lookup attributes"
        )
        return schema

    async def get_many(self, entity_logical_names: Iterable[str]) -> Dict[str, EntitySchema]:
        """Fetch several schemas concurrently; missing ones are left out."""
        names = list(dict.fromkeys(entity_logical_names))
        schemas = await asyncio.gather(*(self.get_schema(name) for name in names))
        return {name: schema for name, schema in zip(names, schemas) if schema is not None}

    def cached_entities(self) -> List[str]:
        return [name for name in list(self._entries) if self.peek(name) is not None]

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "in_flight": len(self._in_flight),
            "fetch_count": self.fetch_count,
            "ttl_seconds": self._ttl_seconds,
        }

    def clear(self) -> None:
        self._generation += 1
        self._entries.clear()
        self._in_flight.clear()
        logger.info("Schema cache cleared")
