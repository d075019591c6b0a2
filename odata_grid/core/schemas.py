from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import httpx
from pydantic import BaseModel, ConfigDict, Field


# =========================
# Enums
# =========================
class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RelationshipSource(str, Enum):
    SCHEMA = "schema"
    PATTERN = "pattern"
    RECORD_ANALYSIS = "record-analysis"
    MANUAL = "manual"


class FailureKind(str, Enum):
    VALIDATION = "validation"
    UNAVAILABLE = "unavailable"
    TRANSPORT = "transport"
    REMOTE = "remote"
    PARSE = "parse"
    TIMEOUT = "timeout"


# =========================
# SCHEMA
# =========================
class LookupAttribute(BaseModel):
    logical_name: str
    display_name: str
    targets: Set[str] = set()
    lookup_field_name: str

    model_config = ConfigDict(frozen=True)


class EntitySchema(BaseModel):
    logical_name: str
    display_name: str
    collection_name: str
    primary_id_attribute: str
    primary_name_attribute: str
    lookup_attributes: List[LookupAttribute] = []

    model_config = ConfigDict(frozen=True)

    def lookups_targeting(self, entity_logical_name: str) -> List[LookupAttribute]:
        return [
            attr for attr in self.lookup_attributes if entity_logical_name in attr.targets
        ]


class DiscoveredRelationship(BaseModel):
    parent_entity: str
    child_entity: str
    lookup_column: str
    relationship_label: str
    discovered_at: datetime = Field(default_factory=datetime.now)
    confidence: Confidence
    source: RelationshipSource

    model_config = ConfigDict(frozen=True)


class RelationshipRequest(BaseModel):
    parent_entity: str = Field(min_length=1)
    child_entity: str = Field(min_length=1)


# =========================
# QUERY
# =========================
class DatasetRequest(BaseModel):
    """
    Logical dataset request coming from the grid.

    A request is relationship-scoped when both parent_entity and
    parent_record_id are present.
    """

    target_entity: str
    view_id: Optional[str] = None
    is_custom_view: bool = False
    parent_record_id: Optional[str] = None
    parent_entity: Optional[str] = None
    relationship_name: Optional[str] = None
    fields: List[str] = []
    page_size: Optional[int] = Field(default=None, gt=0)
    order_by: Optional[str] = None
    include_count: bool = False
    source_control_id: Optional[str] = None
    source_form_id: Optional[str] = None

    @property
    def is_relationship_scoped(self) -> bool:
        return bool(self.parent_entity and self.parent_record_id)


class QueryDescriptor(BaseModel):
    entity_logical_name: str
    view_id: Optional[str] = None
    query_string: str
    relationship_name: Optional[str] = None
    lookup_column: Optional[str] = None
    is_related_query: bool = False
    source_control_id: Optional[str] = None
    source_form_id: Optional[str] = None
    warnings: List[str] = []


class ValidationReport(BaseModel):
    is_valid: bool
    errors: List[str] = []
    warnings: List[str] = []


class FailedResponse(BaseModel):
    """Status, headers and body of a failed service call."""

    status_code: int
    reason: str = ""
    headers: Dict[str, str] = {}
    body: str = ""
    url: Optional[str] = None

    @classmethod
    def from_response(cls, response: httpx.Response) -> "FailedResponse":
        try:
            url = str(response.request.url)
        except RuntimeError:
            # Responses built by hand carry no request
            url = None
        return cls(
            status_code=response.status_code,
            reason=response.reason_phrase,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=response.text,
            url=url,
        )


class QueryResult(BaseModel):
    entities: List[Dict[str, Any]] = []
    entity_logical_name: str
    total_count: Optional[int] = None
    next_page_token: Optional[str] = None
    success: bool
    error: Optional[str] = None
    error_kind: Optional[FailureKind] = None
    failure: Optional[FailedResponse] = None

    model_config = ConfigDict(frozen=True)


class ConnectivityResult(BaseModel):
    success: bool
    error: Optional[str] = None


# =========================
# RECORDS
# =========================
class FieldValidation(BaseModel):
    is_valid: bool = True
    error_message: Optional[str] = None


class FieldValue(BaseModel):
    value: Any = None
    formatted_value: Optional[str] = None
    timestamp: datetime
    validation: FieldValidation = FieldValidation()


class DatasetRecord(BaseModel):
    record_id: str
    entity_type: str
    primary_name: str
    fields: Dict[str, FieldValue] = {}


class ConvertedRecordSet(BaseModel):
    entity_logical_name: str
    records: Dict[str, DatasetRecord] = {}
    duplicate_count: int = 0
    skipped_count: int = 0


# =========================
# DIAGNOSTICS
# =========================
class ErrorContext(BaseModel):
    operation: str = "query"
    entity_name: Optional[str] = None
    query: Optional[str] = None
    parent_entity: Optional[str] = None
    child_entity: Optional[str] = None


class ErrorDiagnosis(BaseModel):
    is_relationship_error: bool = False
    is_field_error: bool = False
    is_entity_error: bool = False
    is_permission_error: bool = False
    suggestions: List[str] = []
    error_code: Optional[str] = None
    message: Optional[str] = None
    status_code: Optional[int] = None
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    rate_limit_remaining: Optional[str] = None
    rate_limit_window: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def is_classified(self) -> bool:
        return (
            self.is_relationship_error
            or self.is_field_error
            or self.is_entity_error
            or self.is_permission_error
        )


# =========================
# API PAYLOADS
# =========================
class BatchDatasetRequest(BaseModel):
    requests: List[DatasetRequest] = Field(min_length=1)
    max_concurrency: Optional[int] = Field(default=None, ge=1)


class RelationshipImportRequest(BaseModel):
    mappings: Dict[str, DiscoveredRelationship]
