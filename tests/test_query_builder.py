import pytest

from odata_grid.core.schemas import (
    Confidence,
    DatasetRequest,
    DiscoveredRelationship,
    QueryDescriptor,
    RelationshipSource,
)
from odata_grid.core.discovery.query_builder import (
    PLACEHOLDER_VIEW_ID,
    QueryBuilder,
    build_select_clause,
    optimize_query,
    parse_query_string,
    should_skip_view_id,
    validate_query,
)
from odata_grid.core.discovery.relationships import RelationshipResolver
from odata_grid.core.discovery.schema_cache import EntitySchemaCache

VIEW_ID = "3f2504e0-4f89-11d3-9a0c-0305e82c3301"


class StubResolver:
    def __init__(self, lookup_column=None):
        self.lookup_column = lookup_column
        self.calls = []

    async def resolve(self, parent_entity, child_entity, timeout=None):
        self.calls.append((parent_entity, child_entity))
        if self.lookup_column is None:
            return None
        return DiscoveredRelationship(
            parent_entity=parent_entity,
            child_entity=child_entity,
            lookup_column=self.lookup_column,
            relationship_label="stub",
            confidence=Confidence.HIGH,
            source=RelationshipSource.SCHEMA,
        )


def test_should_skip_view_id():
    assert should_skip_view_id(None)
    assert should_skip_view_id(PLACEHOLDER_VIEW_ID)
    assert should_skip_view_id("not-a-guid")
    assert should_skip_view_id(VIEW_ID, local_development=True)
    assert not should_skip_view_id(VIEW_ID)


def test_build_select_clause():
    assert build_select_clause() == "*"
    assert build_select_clause(["subject", "subject", ""]) == "*,subject"
    assert build_select_clause(["subject"], include_all=False) == "subject"


@pytest.mark.asyncio
async def test_build_plain_request_pluralizes_without_schema():
    descriptor = await QueryBuilder().build(
        DatasetRequest(target_entity="task", page_size=10, order_by="subject asc", include_count=True)
    )

    assert descriptor.query_string == "tasks?$select=*&$top=10&$orderby=subject asc&$count=true"
    assert not descriptor.is_related_query
    assert descriptor.warnings == []


@pytest.mark.asyncio
async def test_build_uses_schema_collection_name(service_client):
    builder = QueryBuilder(EntitySchemaCache(service_client))
    descriptor = await builder.build(DatasetRequest(target_entity="project"))
    assert descriptor.query_string.startswith("projects?")


@pytest.mark.asyncio
async def test_saved_view_added_only_when_resolvable():
    builder = QueryBuilder()

    with_view = await builder.build(DatasetRequest(target_entity="task", view_id=VIEW_ID))
    placeholder = await builder.build(DatasetRequest(target_entity="task", view_id=PLACEHOLDER_VIEW_ID))
    custom = await builder.build(
        DatasetRequest(target_entity="task", view_id=VIEW_ID, is_custom_view=True)
    )
    local = await QueryBuilder(local_development=True).build(
        DatasetRequest(target_entity="task", view_id=VIEW_ID)
    )

    assert f"savedQuery={VIEW_ID}" in with_view.query_string
    assert "savedQuery" not in placeholder.query_string
    assert "savedQuery" not in custom.query_string
    assert "savedQuery" not in local.query_string


@pytest.mark.asyncio
async def test_relationship_scoped_request_gets_filter():
    resolver = StubResolver("project_ref")
    builder = QueryBuilder(resolver=resolver)

    descriptor = await builder.build(
        DatasetRequest(target_entity="task", parent_entity="project", parent_record_id="P-1")
    )

    assert descriptor.query_string.endswith("&$filter=project_ref eq P-1")
    assert descriptor.lookup_column == "project_ref"
    assert descriptor.relationship_name == "project_task"
    assert descriptor.is_related_query
    assert resolver.calls == [("project", "task")]


@pytest.mark.asyncio
async def test_parent_id_is_percent_encoded_in_filter():
    builder = QueryBuilder(resolver=StubResolver("project_ref"))

    descriptor = await builder.build(
        DatasetRequest(target_entity="task", parent_entity="project", parent_record_id="P-2#frag")
    )

    assert descriptor.query_string.endswith("&$filter=project_ref eq P-2%23frag")
    assert "#" not in descriptor.query_string


@pytest.mark.asyncio
async def test_unresolved_relationship_is_a_warning_not_an_error():
    builder = QueryBuilder(resolver=StubResolver(None))

    descriptor = await builder.build(
        DatasetRequest(target_entity="task", parent_entity="project", parent_record_id="P-1")
    )

    assert "$filter" not in descriptor.query_string
    assert descriptor.lookup_column is None
    assert len(descriptor.warnings) == 1
    report = validate_query(descriptor)
    assert report.is_valid
    assert "lookup column not resolved" in report.warnings[0]


@pytest.mark.asyncio
async def test_parent_without_record_id_is_not_scoped():
    resolver = StubResolver("project_ref")
    descriptor = await QueryBuilder(resolver=resolver).build(
        DatasetRequest(target_entity="task", parent_entity="project")
    )
    assert "$filter" not in descriptor.query_string
    assert resolver.calls == []


@pytest.mark.asyncio
async def test_build_against_fake_service(service_client):
    cache = EntitySchemaCache(service_client)
    builder = QueryBuilder(cache, RelationshipResolver(cache, service_client))

    descriptors = await builder.build_batch(
        [
            DatasetRequest(target_entity="task", parent_entity="project", parent_record_id="P-1"),
            DatasetRequest(target_entity="project"),
        ]
    )

    assert descriptors[0].query_string == "tasks?$select=*&$filter=project_ref eq P-1"
    assert descriptors[1].query_string == "projects?$select=*"


@pytest.mark.parametrize(
    "descriptor, error",
    [
        (QueryDescriptor(entity_logical_name="", query_string="tasks?$top=1"),
         "Entity logical name is required"),
        (QueryDescriptor(entity_logical_name="task", query_string=""),
         "Query string is required"),
        (QueryDescriptor(entity_logical_name="task", query_string="tasks"),
         "Query string must include query parameters or start with $ for option-only queries"),
    ],
)
def test_validate_errors(descriptor, error):
    report = validate_query(descriptor)
    assert not report.is_valid
    assert report.errors == [error]


def test_validate_accepts_option_only_query():
    report = validate_query(QueryDescriptor(entity_logical_name="task", query_string="$top=5"))
    assert report.is_valid


def test_validate_warns_on_related_query_without_name():
    report = validate_query(
        QueryDescriptor(entity_logical_name="task", query_string="tasks?$top=1", is_related_query=True)
    )
    assert report.is_valid
    assert report.warnings == ["Related query without relationship name may not filter correctly"]


def test_optimize_strips_expand_and_disables_count():
    descriptor = QueryDescriptor(
        entity_logical_name="task", query_string="tasks?$select=*&$expand=*($levels=1)"
    )

    optimized = optimize_query(descriptor)

    assert optimized.query_string == "tasks?$select=*&$count=false"
    # The input is left untouched
    assert descriptor.query_string == "tasks?$select=*&$expand=*($levels=1)"


def test_optimize_keeps_explicit_count():
    descriptor = QueryDescriptor(entity_logical_name="task", query_string="tasks?$count=true")
    assert optimize_query(descriptor).query_string == "tasks?$count=true"


def test_parse_query_string():
    parts = parse_query_string("tasks?$select=*,subject&$top=5&$filter=project_ref eq P-1")
    assert parts["collection"] == "tasks"
    assert parts["select"] == ["*", "subject"]
    assert parts["top"] == 5
    assert parts["filter"] == "project_ref eq P-1"
    assert parts["skip"] is None
