import json

import httpx
import pytest

from odata_grid.core.errors import TransportError
from odata_grid.core.schemas import (
    Confidence,
    DiscoveredRelationship,
    ErrorContext,
    FailedResponse,
    RelationshipSource,
)
from odata_grid.core.discovery.diagnostics import (
    ClassificationRule,
    ErrorClassifier,
    extract_quoted_name,
    parse_error_payload,
)

CONTEXT = ErrorContext(
    entity_name="task",
    query="tasks?$filter=parentcustomerid eq P-1",
    parent_entity="project",
    child_entity="task",
)


def failure(status_code: int, message: str, headers=None) -> FailedResponse:
    return FailedResponse(
        status_code=status_code,
        reason="Bad Request" if status_code == 400 else "",
        headers=headers or {},
        body=json.dumps({"error": {"code": "0x80060888", "message": message}}),
        url="http://service.test/api/data/v9.2/tasks",
    )


def test_parse_error_payload():
    assert parse_error_payload('{"error": {"code": "0x1", "message": "boom"}}') == ("0x1", "boom")
    assert parse_error_payload("<html>Bad gateway</html>") == (None, None)
    assert parse_error_payload("") == (None, None)
    assert parse_error_payload('["not", "an", "object"]') == (None, None)


def test_extract_quoted_name():
    assert extract_quoted_name("Could not find a property named 'subjectx' on type 'task'") == "subjectx"
    assert extract_quoted_name("Could not find a property named subjectx.") == "subjectx."
    assert extract_quoted_name("nothing here") is None


@pytest.mark.asyncio
async def test_generic_parent_field_is_relationship_and_field_error():
    classifier = ErrorClassifier()

    diagnosis = await classifier.classify(
        failure(400, "Could not find a property named 'parentcustomerid' on type 'Microsoft.Dynamics.CRM.task'.")
    )

    assert diagnosis.is_relationship_error
    assert diagnosis.is_field_error
    assert not diagnosis.is_entity_error
    assert diagnosis.error_code == "0x80060888"
    assert "_parentcustomerid_value" in diagnosis.suggestions[0]
    assert any("'parentcustomerid' does not exist" in s for s in diagnosis.suggestions)


@pytest.mark.asyncio
async def test_unknown_lookup_column_is_relationship_error():
    diagnosis = await ErrorClassifier().classify(
        failure(400, "Could not find a property named '_projectx_value' on type 'task'.")
    )
    assert diagnosis.is_relationship_error
    assert diagnosis.suggestions[0] == 'Invalid lookup field: "_projectx_value"'


@pytest.mark.asyncio
async def test_plain_missing_field_is_only_field_error():
    diagnosis = await ErrorClassifier().classify(
        failure(400, "Could not find a property named 'subjectx' on type 'task'.")
    )
    assert diagnosis.is_field_error
    assert not diagnosis.is_relationship_error
    assert diagnosis.suggestions == [
        "Field 'subjectx' does not exist - check spelling or the entity schema"
    ]


@pytest.mark.asyncio
async def test_missing_segment_is_entity_error():
    diagnosis = await ErrorClassifier().classify(
        failure(404, "Resource not found for the segment 'taskz'.")
    )
    assert diagnosis.is_entity_error
    assert "'taskz'" in diagnosis.suggestions[0]


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_auth_status_is_permission_error(status_code):
    diagnosis = await ErrorClassifier().classify(failure(status_code, "Principal user is missing privileges"))
    assert diagnosis.is_permission_error
    assert diagnosis.suggestions


@pytest.mark.asyncio
async def test_suggestion_only_rules():
    classifier = ErrorClassifier()

    syntax = await classifier.classify(failure(400, "Syntax error at position 12 in 'name eq'."))
    missing = await classifier.classify(failure(404, "Entity 'task' With Id = 123 Does Not Exist"))

    assert not syntax.is_classified
    assert syntax.suggestions == ["Query syntax error at position 12 - check the query syntax"]
    assert missing.suggestions == ["Record not found - check the id or verify the record was not deleted"]


@pytest.mark.asyncio
async def test_classified_failures_always_have_suggestions():
    classifier = ErrorClassifier()
    messages = [
        (400, "Could not find a property named 'parentaccountid' on type 'contact'."),
        (400, "Invalid column name 'x'."),
        (404, "Resource not found for the segment 'ghosts'."),
        (403, "Forbidden"),
    ]
    for status_code, message in messages:
        diagnosis = await classifier.classify(failure(status_code, message))
        assert diagnosis.is_classified
        assert diagnosis.suggestions


@pytest.mark.asyncio
async def test_unparseable_body_is_unclassified():
    classifier = ErrorClassifier()
    bad_gateway = FailedResponse(status_code=502, reason="Bad Gateway", body="<html>Bad gateway</html>")

    diagnosis = await classifier.classify(bad_gateway)
    report = await classifier.describe(bad_gateway, diagnosis=diagnosis)

    assert not diagnosis.is_classified
    assert diagnosis.message is None
    assert diagnosis.suggestions == []
    assert "Raw Response: <html>Bad gateway</html>" in report


@pytest.mark.asyncio
async def test_headers_are_extracted_from_httpx_response():
    response = httpx.Response(
        429,
        json={"error": {"code": "0x80072322", "message": "Rate limit exceeded"}},
        headers={
            "mise-correlation-id": "corr-1",
            "x-ms-service-request-id": "req-1",
            "x-ms-ratelimit-burst-remaining-xrm-requests": "0",
            "x-ms-ratelimit-time-remaining-xrm-requests": "300",
        },
    )

    diagnosis = await ErrorClassifier().classify(response)

    assert diagnosis.status_code == 429
    assert diagnosis.correlation_id == "corr-1"
    assert diagnosis.request_id == "req-1"
    assert diagnosis.rate_limit_remaining == "0"
    assert diagnosis.rate_limit_window == "300"


@pytest.mark.asyncio
async def test_self_heal_prepends_discovered_relationship():
    calls = []

    async def discover(parent, child):
        calls.append((parent, child))
        return DiscoveredRelationship(
            parent_entity=parent,
            child_entity=child,
            lookup_column="project_ref",
            relationship_label="Project",
            confidence=Confidence.HIGH,
            source=RelationshipSource.SCHEMA,
        )

    classifier = ErrorClassifier(discover=discover)
    diagnosis = await classifier.classify(
        failure(400, "Could not find a property named 'parentcustomerid' on type 'task'."), CONTEXT
    )

    assert calls == [("project", "task")]
    assert diagnosis.suggestions[0] == 'Discovery found relationship: "project_ref"'
    assert diagnosis.suggestions[1] == "Confidence: high (schema)"
    assert "project_ref eq [parent-id]" in diagnosis.suggestions[2]


@pytest.mark.asyncio
async def test_self_heal_reports_failed_discovery():
    async def discover_nothing(parent, child):
        return None

    async def discover_broken(parent, child):
        raise TransportError("connection refused")

    message = "Could not find a property named 'parentcustomerid' on type 'task'."

    nothing = await ErrorClassifier(discover=discover_nothing).classify(failure(400, message), CONTEXT)
    broken = await ErrorClassifier(discover=discover_broken).classify(failure(400, message), CONTEXT)

    assert nothing.suggestions[0] == "Runtime discovery failed for project -> task"
    assert broken.suggestions[0] == "Runtime discovery unavailable: connection refused"


@pytest.mark.asyncio
async def test_self_heal_needs_parent_and_child():
    calls = []

    async def discover(parent, child):
        calls.append((parent, child))

    classifier = ErrorClassifier(discover=discover)
    await classifier.classify(
        failure(400, "Invalid column name 'parentcustomerid'."), ErrorContext(entity_name="task")
    )
    assert calls == []


@pytest.mark.asyncio
async def test_history_is_bounded():
    classifier = ErrorClassifier()
    for i in range(105):
        await classifier.classify(failure(400, f"Could not find a property named 'f{i}'"))

    history = classifier.history()
    assert len(history) == 100
    assert history[-1].message == "Could not find a property named 'f104'"
    assert len(classifier.history(5)) == 5

    classifier.clear_history()
    assert classifier.history() == []


@pytest.mark.asyncio
async def test_describe_report():
    classifier = ErrorClassifier()
    response = failure(
        400, "Could not find a property named 'subjectx' on type 'task'.", {"ms-cv": "cv-1"}
    )

    report = await classifier.describe(response, CONTEXT)

    assert report.startswith("Service API Error: 400 Bad Request")
    assert "Operation: query" in report
    assert "Entity: task" in report
    assert "API: http://service.test/api/data/v9.2/tasks" in report
    assert "Error Code: 0x80060888" in report
    assert "  - Field 'subjectx' does not exist" in report
    assert "Correlation ID: cv-1" in report


@pytest.mark.asyncio
async def test_classify_message_without_response():
    classifier = ErrorClassifier()

    network = await classifier.classify_message("Network connection failed")
    unavailable = await classifier.classify_message("Service client is not available")
    validation = await classifier.classify_message("Query validation failed: Query string is required")

    assert network.suggestions == ["Check network connection and service availability"]
    assert unavailable.suggestions
    assert validation.suggestions == []
    assert not validation.is_classified


@pytest.mark.asyncio
async def test_custom_rules_replace_defaults():
    rule = ClassificationRule(
        name="throttled",
        matches=lambda r: r.status_code == 429,
        suggest=lambda r: ["Slow down"],
    )
    diagnosis = await ErrorClassifier(rules=[rule]).classify(failure(429, "Too many requests"))
    assert diagnosis.suggestions == ["Slow down"]
