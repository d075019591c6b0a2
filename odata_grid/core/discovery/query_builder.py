# odata_grid/core/discovery/query_builder.py
"""
QUERY BUILDER - Turn a dataset request into a query descriptor

Purpose:
    1. Build the query string: collection ? $select & $top & $orderby & savedQuery & $filter
    2. Validate descriptors before anything reaches the network
    3. Strip options that only cost the server work

Example:
    DatasetRequest(target_entity="task", parent_entity="project", parent_record_id="P-1")
        → "tasks?$select=*&$filter=project_ref eq P-1"
"""

import logging
import re
from typing import Dict, List, Optional, Union
from urllib.parse import quote

from odata_grid.core.schemas import (
    DatasetRequest,
    QueryDescriptor,
    ValidationReport,
)
from odata_grid.core.discovery.schema_cache import pluralize

logger = logging.getLogger(__name__)

PLACEHOLDER_VIEW_ID = "00000000-0000-0000-0000-000000000000"
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
EXPAND_ALL_CLAUSE = "$expand=*($levels=1)"

ENTITY_DEFINITION_SELECT = (
    "LogicalName,DisplayName,EntitySetName,LogicalCollectionName,"
    "PrimaryIdAttribute,PrimaryNameAttribute"
)
ATTRIBUTE_SELECT = "LogicalName,DisplayName,AttributeType,Targets,LookupFieldName"


# ============================================================================
# CLAUSE HELPERS
# ============================================================================


def should_skip_view_id(view_id: Optional[str], local_development: bool = False) -> bool:
    """
    Saved views are skipped when they cannot resolve:
        - no id, or the all-zero placeholder id
        - a local development service (views live on the real server only)
        - anything that is not a UUID
    """
    if not view_id or view_id == PLACEHOLDER_VIEW_ID:
        return True
    if local_development:
        logger.info(f"Skipping savedQuery in local development: {view_id}")
        return True
    return not UUID_PATTERN.match(view_id)


def build_select_clause(fields: Optional[List[str]] = None, include_all: bool = True) -> str:
    selected = ["*"] if include_all else []
    for field in fields or []:
        if field and field not in selected:
            selected.append(field)
    return ",".join(selected)


def build_relationship_filter(lookup_column: str, parent_record_id: str) -> str:
    # Identifiers go in unquoted: "_parentcustomerid_value eq 1234-..."
    # and percent-encoded, so "#" or "&" in an id cannot end the filter early
    return f"{lookup_column} eq {quote(parent_record_id, safe='-')}"


def build_entity_definition_path(entity_logical_name: str) -> str:
    return (
        f"EntityDefinitions(LogicalName='{entity_logical_name}')"
        f"?$select={ENTITY_DEFINITION_SELECT}"
        f"&$expand=Attributes($select={ATTRIBUTE_SELECT})"
    )


def parse_query_string(query_string: str) -> Dict[str, Union[str, int, List[str], None]]:
    """
    Split a query string into its parts.

    Example:
        "tasks?$select=*,subject&$top=5"
            → {"collection": "tasks", "select": ["*", "subject"], "top": 5, ...}
    """
    collection, _, options = query_string.partition("?")
    params: Dict[str, str] = {}
    for part in options.split("&") if options else []:
        name, _, value = part.partition("=")
        if name:
            params[name] = value

    def as_int(name: str) -> Optional[int]:
        value = params.get(name)
        return int(value) if value and value.isdigit() else None

    return {
        "collection": collection or None,
        "select": params["$select"].split(",") if params.get("$select") else None,
        "filter": params.get("$filter"),
        "orderby": params.get("$orderby"),
        "top": as_int("$top"),
        "skip": as_int("$skip"),
        "expand": params.get("$expand"),
        "count": params.get("$count"),
        "saved_query": params.get("savedQuery"),
    }


# ============================================================================
# VALIDATE / OPTIMIZE
# ============================================================================


def validate_query(descriptor: QueryDescriptor) -> ValidationReport:
    """
    Errors block execution; warnings only flag queries that may return too much.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not descriptor.entity_logical_name:
        errors.append("Entity logical name is required")

    if not descriptor.query_string:
        errors.append("Query string is required")
    elif "?" not in descriptor.query_string and not descriptor.query_string.startswith("$"):
        errors.append(
            "Query string must include query parameters or start with $ for option-only queries"
        )

    if descriptor.is_related_query and not descriptor.relationship_name:
        warnings.append("Related query without relationship name may not filter correctly")

    if descriptor.relationship_name and not descriptor.lookup_column:
        warnings.append("Relationship name provided but lookup column not resolved")

    return ValidationReport(is_valid=not errors, errors=errors, warnings=warnings)


def optimize_query(descriptor: QueryDescriptor) -> QueryDescriptor:
    query_string = descriptor.query_string

    if EXPAND_ALL_CLAUSE in query_string:
        query_string = query_string.replace(f"&{EXPAND_ALL_CLAUSE}", "")
        query_string = query_string.replace(f"?{EXPAND_ALL_CLAUSE}&", "?")
        query_string = query_string.replace(f"?{EXPAND_ALL_CLAUSE}", "?")
        logger.debug("Removed unnecessary $expand")

    if "$count=" not in query_string:
        separator = "" if query_string.endswith("?") else "&"
        query_string += f"{separator}$count=false"

    return descriptor.model_copy(update={"query_string": query_string})


# ============================================================================
# BUILDER
# ============================================================================


class QueryBuilder:
    """
    Builds query descriptors, consulting the schema cache for collection names
    and the relationship resolver for relationship filters.

    Args:
        schema_cache: EntitySchemaCache (optional; falls back to pluralizing)
        resolver: RelationshipResolver (optional; related queries get a warning)
        local_development: Skip saved views that only exist on the real server
    """

    def __init__(self, schema_cache=None, resolver=None, local_development: bool = False):
        self._schema_cache = schema_cache
        self._resolver = resolver
        self.local_development = local_development

    async def collection_for(self, entity_logical_name: str, timeout: Optional[float] = None) -> str:
        if self._schema_cache is not None:
            schema = await self._schema_cache.get_schema(entity_logical_name, timeout=timeout)
            if schema is not None:
                return schema.collection_name
        return pluralize(entity_logical_name)

    async def build(
        self, request: DatasetRequest, timeout: Optional[float] = None
    ) -> QueryDescriptor:
        warnings: List[str] = []
        collection = await self.collection_for(request.target_entity, timeout)

        query_string = f"{collection}?$select={build_select_clause(request.fields)}"

        if request.page_size:
            query_string += f"&$top={request.page_size}"
        if request.order_by:
            query_string += f"&$orderby={request.order_by}"
        if request.include_count:
            query_string += "&$count=true"

        if (
            request.view_id
            and not request.is_custom_view
            and not should_skip_view_id(request.view_id, self.local_development)
        ):
            query_string += f"&savedQuery={request.view_id}"

        relationship_name = request.relationship_name
        lookup_column = None

        if request.is_relationship_scoped:
            relationship_name = relationship_name or f"{request.parent_entity}_{request.target_entity}"
            relationship = None
            if self._resolver is not None:
                relationship = await self._resolver.resolve(
                    request.parent_entity, request.target_entity, timeout=timeout
                )

            if relationship is not None:
                lookup_column = relationship.lookup_column
                relationship_filter = build_relationship_filter(
                    lookup_column, request.parent_record_id
                )
                query_string += f"&$filter={relationship_filter}"
                logger.info(f"Applied relationship filter: {relationship_filter}")
            else:
                warning = (
                    f"Could not resolve relationship {request.parent_entity} -> "
                    f"{request.target_entity}; query is not filtered by parent"
                )
                logger.warning(warning)
                warnings.append(warning)

        return QueryDescriptor(
            entity_logical_name=request.target_entity,
            view_id=request.view_id,
            query_string=query_string,
            relationship_name=relationship_name,
            lookup_column=lookup_column,
            is_related_query=bool(relationship_name),
            source_control_id=request.source_control_id,
            source_form_id=request.source_form_id,
            warnings=warnings,
        )

    async def build_batch(self, requests: List[DatasetRequest]) -> List[QueryDescriptor]:
        return [await self.build(request) for request in requests]

    validate = staticmethod(validate_query)
    optimize = staticmethod(optimize_query)
