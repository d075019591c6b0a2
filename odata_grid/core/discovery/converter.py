# odata_grid/core/discovery/converter.py
"""
RECORD CONVERTER - Raw service rows → grid records

Why this matters:
    - Rows are keyed by whatever the entity's primary id attribute is ("taskId",
      "accountid", ...), so the schema decides which field is the record id
    - Lookups and option sets come with a formatted companion
      ("statuscode@OData.Community.Display.V1.FormattedValue": "Active")
      that the grid shows instead of the raw value
    - Annotations ("@odata.etag") are service metadata, not data
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from odata_grid.core.errors import SchemaNotFoundError
from odata_grid.core.schemas import (
    ConvertedRecordSet,
    DatasetRecord,
    EntitySchema,
    FieldValue,
)

logger = logging.getLogger(__name__)

METADATA_PREFIX = "@"
FORMATTED_VALUE_SUFFIX = "@OData.Community.Display.V1.FormattedValue"
NAME_LIKE_FIELDS = ("name", "title", "subject", "fullname", "lastname")


def _without_prefix(attribute: str) -> str:
    # "cr123_taskid" → "taskid"
    return re.sub(r"^[^_]+_", "", attribute)


def get_primary_key(row: Dict[str, Any], schema: EntitySchema) -> Optional[str]:
    for key in (schema.primary_id_attribute, _without_prefix(schema.primary_id_attribute)):
        value = row.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def get_primary_name(row: Dict[str, Any], schema: EntitySchema, record_id: str) -> str:
    """
    Display name, most specific source first:
        formatted primary name → primary name → primary name without prefix
        → name-like fields → "Record <id>"
    """
    name_attribute = schema.primary_name_attribute

    formatted = row.get(f"{name_attribute}{FORMATTED_VALUE_SUFFIX}")
    if formatted:
        return str(formatted)

    for key in (name_attribute, _without_prefix(name_attribute)):
        if row.get(key):
            return str(row[key])

    for field in NAME_LIKE_FIELDS:
        for key in (field, f"{schema.logical_name}_{field}"):
            if row.get(key):
                return str(row[key])

    return f"Record {record_id}"


def convert_row(
    row: Dict[str, Any],
    schema: EntitySchema,
    record_id: str,
    timestamp: Optional[datetime] = None,
) -> DatasetRecord:
    timestamp = timestamp or datetime.now()
    fields: Dict[str, FieldValue] = {}

    for key, value in row.items():
        # "@odata.etag" is metadata; "x@OData..." companions are attached below
        if METADATA_PREFIX in key:
            continue

        formatted = row.get(f"{key}{FORMATTED_VALUE_SUFFIX}")
        fields[key] = FieldValue(
            value=value,
            formatted_value=str(formatted) if formatted is not None else None,
            timestamp=timestamp,
        )

    return DatasetRecord(
        record_id=record_id,
        entity_type=schema.logical_name,
        primary_name=get_primary_name(row, schema, record_id),
        fields=fields,
    )


async def convert_records(
    rows: List[Dict[str, Any]],
    entity_logical_name: str,
    schema_cache,
) -> ConvertedRecordSet:
    """
    Convert raw rows to a record set keyed by record id.

    Args:
        rows: Raw rows from a successful QueryResult
        entity_logical_name: Entity the rows belong to
        schema_cache: EntitySchemaCache used to find primary id/name

    Raises:
        SchemaNotFoundError: the entity's schema could not be resolved

    Returns:
        ConvertedRecordSet; duplicate ids keep the last row and are counted
    """
    schema = await schema_cache.get_schema(entity_logical_name)
    if schema is None:
        raise SchemaNotFoundError(entity_logical_name)

    logger.info(f"Converting {len(rows)} rows to {entity_logical_name} records")

    timestamp = datetime.now()
    records: Dict[str, DatasetRecord] = {}
    duplicates = 0
    skipped = 0

    for idx, row in enumerate(rows, start=1):
        record_id = get_primary_key(row, schema)
        if record_id is None:
            skipped += 1
            logger.warning(
                f"Row {idx} has no {schema.primary_id_attribute}; "
                f"fields: {list(row)[:10]}"
            )
            continue

        if record_id in records:
            duplicates += 1
            logger.warning(f"Duplicate record id {record_id} (row {idx})")

        records[record_id] = convert_row(row, schema, record_id, timestamp)

    if duplicates:
        logger.warning(f"Found {duplicates} duplicate record ids")
    logger.info(
        f"Converted {len(records)} records using primary id field {schema.primary_id_attribute}"
    )

    return ConvertedRecordSet(
        entity_logical_name=entity_logical_name,
        records=records,
        duplicate_count=duplicates,
        skipped_count=skipped,
    )
