# odata_grid/core/discovery/diagnostics.py
"""
ERROR CLASSIFIER - Explain failed service calls

Purpose:
    1. Parse the failure body ({"error": {"code": ..., "message": ...}})
    2. Classify it with a rule table: relationship / field / entity / permission
    3. Attach human-readable suggestions, in rule order
    4. Optionally ask the relationship resolver for the right lookup column
    5. Keep a rolling history of the last diagnoses

Example:
    message: "Could not find a property named 'parentcustomerid' on type 'contact'"
        → is_relationship_error, is_field_error
        → ["Use the lookup form of the relationship field ...",
           "Field 'parentcustomerid' does not exist - check spelling or the entity schema", ...]
"""

import asyncio
import json
import logging
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Deque, List, Optional, Sequence, Tuple, Union

import httpx

from odata_grid.core.errors import EngineError
from odata_grid.core.schemas import (
    DiscoveredRelationship,
    ErrorContext,
    ErrorDiagnosis,
    FailedResponse,
)
from odata_grid.core.discovery.relationships import GENERIC_PARENT_FIELDS, is_lookup_column

logger = logging.getLogger(__name__)

PROPERTY_NOT_FOUND = "Could not find a property named"
SEGMENT_NOT_FOUND = "Resource not found for the segment"
INVALID_COLUMN = "Invalid column name"

CORRELATION_HEADERS = ("mise-correlation-id", "ms-cv")
REQUEST_ID_HEADERS = ("x-ms-service-request-id", "req_id")
RATE_LIMIT_REMAINING_HEADER = "x-ms-ratelimit-burst-remaining-xrm-requests"
RATE_LIMIT_WINDOW_HEADER = "x-ms-ratelimit-time-remaining-xrm-requests"

DiscoverCallback = Callable[[str, str], Awaitable[Optional[DiscoveredRelationship]]]


# ============================================================================
# RULE TABLE
# ============================================================================


@dataclass(frozen=True)
class RuleInput:
    message: str
    status_code: int
    name: Optional[str]  # first quoted name in the message, if any


@dataclass(frozen=True)
class ClassificationRule:
    """
    One row of the rule table.

    flag: ErrorDiagnosis attribute set to True on match (None = suggestions only)
    """

    name: str
    matches: Callable[[RuleInput], bool]
    suggest: Callable[[RuleInput], List[str]]
    flag: Optional[str] = None


def extract_quoted_name(message: str) -> Optional[str]:
    match = re.search(r"'([^']+)'", message) or re.search(r"named\s+([^\s,]+)", message)
    return match.group(1) if match else None


def _is_relationship_error(rule_input: RuleInput) -> bool:
    lowered = rule_input.message.lower()
    if any(token in lowered for token in GENERIC_PARENT_FIELDS):
        return True
    if INVALID_COLUMN.lower() in lowered:
        return True
    # A lookup-shaped column the service does not know
    return (
        PROPERTY_NOT_FOUND.lower() in lowered
        and rule_input.name is not None
        and is_lookup_column(rule_input.name)
    )


def _relationship_suggestions(rule_input: RuleInput) -> List[str]:
    if rule_input.name and is_lookup_column(rule_input.name):
        return [
            f'Invalid lookup field: "{rule_input.name}"',
            "Try discovering the relationship at runtime to find the correct lookup column",
        ]
    return [
        "Use the lookup form of the relationship field, e.g. '_parentcustomerid_value' "
        "for account-contact relationships",
        "Enable runtime relationship discovery to find the correct lookup column automatically",
    ]


def _field_suggestions(rule_input: RuleInput) -> List[str]:
    if rule_input.name:
        return [f"Field '{rule_input.name}' does not exist - check spelling or the entity schema"]
    return ["A referenced field does not exist - check spelling or the entity schema"]


def _entity_suggestions(rule_input: RuleInput) -> List[str]:
    entity = f"'{rule_input.name}' " if rule_input.name else ""
    return [
        f"Entity {entity}not found - check the name or use the collection (plural) form, "
        "e.g. 'contacts' not 'contact'"
    ]


def _syntax_suggestions(rule_input: RuleInput) -> List[str]:
    match = re.search(r"position (\d+)", rule_input.message)
    return [f"Query syntax error at position {match.group(1)} - check the query syntax"]


DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        name="relationship",
        matches=_is_relationship_error,
        suggest=_relationship_suggestions,
        flag="is_relationship_error",
    ),
    ClassificationRule(
        name="field",
        matches=lambda r: PROPERTY_NOT_FOUND.lower() in r.message.lower(),
        suggest=_field_suggestions,
        flag="is_field_error",
    ),
    ClassificationRule(
        name="entity",
        matches=lambda r: SEGMENT_NOT_FOUND.lower() in r.message.lower(),
        suggest=_entity_suggestions,
        flag="is_entity_error",
    ),
    ClassificationRule(
        name="permission",
        matches=lambda r: r.status_code in (401, 403),
        suggest=lambda r: ["Check user permissions for the target entity and related records"],
        flag="is_permission_error",
    ),
    ClassificationRule(
        name="syntax",
        matches=lambda r: re.search(r"Syntax error at position \d+", r.message) is not None,
        suggest=_syntax_suggestions,
    ),
    ClassificationRule(
        name="missing-record",
        matches=lambda r: "Entity" in r.message and "Does Not Exist" in r.message,
        suggest=lambda r: ["Record not found - check the id or verify the record was not deleted"],
    ),
)

# Failures that never produced a response (network, offline, auth handshakes)
COMMON_ERROR_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        name="network",
        matches=lambda r: any(
            token in r.message.lower() for token in ("network", "connect", "timed out", "timeout")
        ),
        suggest=lambda r: ["Check network connection and service availability"],
    ),
    ClassificationRule(
        name="authorization",
        matches=lambda r: any(
            token in r.message.lower() for token in ("unauthorized", "forbidden", "401", "403")
        ),
        suggest=lambda r: ["Check user permissions and authentication status"],
        flag="is_permission_error",
    ),
    ClassificationRule(
        name="unavailable",
        matches=lambda r: "not available" in r.message.lower(),
        suggest=lambda r: ["The service client is not initialized - check the service configuration"],
    ),
)


def parse_error_payload(body: str) -> Tuple[Optional[str], Optional[str]]:
    """Return (code, message) from an error body; (None, None) if unparseable."""
    try:
        data = json.loads(body) if body else None
    except ValueError:
        return None, None

    error = data.get("error") if isinstance(data, dict) else None
    if not isinstance(error, dict):
        return None, None

    code = error.get("code")
    message = error.get("message")
    return (str(code) if code is not None else None), message


def _first_header(failure: FailedResponse, names: Sequence[str]) -> Optional[str]:
    for name in names:
        if failure.headers.get(name):
            return failure.headers[name]
    return None


# ============================================================================
# CLASSIFIER
# ============================================================================


class ErrorClassifier:
    """
    Rule-driven failure classifier with an opt-in self-healing hook.

    Args:
        rules: Rule table applied to service failures (defaults to DEFAULT_RULES)
        discover: Optional async callback (parent, child) → DiscoveredRelationship;
                  when set, relationship errors trigger a fresh discovery
        history_limit: Size of the rolling diagnosis history

    Example:
        classifier = ErrorClassifier(discover=resolver.resolve)
        diagnosis = await classifier.classify(response, ErrorContext(parent_entity="account",
                                                                     child_entity="contact"))
    """

    def __init__(
        self,
        rules: Optional[Sequence[ClassificationRule]] = None,
        discover: Optional[DiscoverCallback] = None,
        history_limit: int = 100,
        message_rules: Optional[Sequence[ClassificationRule]] = None,
    ):
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES
        self.message_rules = (
            tuple(message_rules) if message_rules is not None else COMMON_ERROR_RULES
        )
        self._discover = discover
        self._history: Deque[ErrorDiagnosis] = deque(maxlen=history_limit)

    @staticmethod
    def _apply_rules(
        diagnosis: ErrorDiagnosis,
        rules: Sequence[ClassificationRule],
        rule_input: RuleInput,
    ) -> None:
        for rule in rules:
            if not rule.matches(rule_input):
                continue
            if rule.flag:
                setattr(diagnosis, rule.flag, True)
            for suggestion in rule.suggest(rule_input):
                if suggestion not in diagnosis.suggestions:
                    diagnosis.suggestions.append(suggestion)

    async def classify(
        self,
        response: Union[FailedResponse, httpx.Response],
        context: Optional[ErrorContext] = None,
    ) -> ErrorDiagnosis:
        """
        Classify a failed service response.

        Returns:
            A fresh ErrorDiagnosis (also appended to the history)
        """
        failure = (
            FailedResponse.from_response(response)
            if isinstance(response, httpx.Response)
            else response
        )
        code, message = parse_error_payload(failure.body)

        diagnosis = ErrorDiagnosis(
            status_code=failure.status_code,
            error_code=code,
            message=message,
            correlation_id=_first_header(failure, CORRELATION_HEADERS),
            request_id=_first_header(failure, REQUEST_ID_HEADERS),
            rate_limit_remaining=failure.headers.get(RATE_LIMIT_REMAINING_HEADER),
            rate_limit_window=failure.headers.get(RATE_LIMIT_WINDOW_HEADER),
        )

        text = message or ""
        self._apply_rules(
            diagnosis,
            self.rules,
            RuleInput(message=text, status_code=failure.status_code, name=extract_quoted_name(text)),
        )

        if (
            diagnosis.is_relationship_error
            and self._discover is not None
            and context is not None
            and context.parent_entity
            and context.child_entity
        ):
            await self._add_discovery_suggestions(diagnosis, context)

        return self._record(diagnosis)

    async def classify_message(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        status_code: int = 0,
    ) -> ErrorDiagnosis:
        """Classify a failure that has no service response (network, offline, ...)."""
        diagnosis = ErrorDiagnosis(status_code=status_code or None, message=message)
        rule_input = RuleInput(
            message=message, status_code=status_code, name=extract_quoted_name(message)
        )
        self._apply_rules(diagnosis, self.message_rules, rule_input)
        self._apply_rules(diagnosis, self.rules, rule_input)
        return self._record(diagnosis)

    async def _add_discovery_suggestions(
        self, diagnosis: ErrorDiagnosis, context: ErrorContext
    ) -> None:
        parent, child = context.parent_entity, context.child_entity
        logger.info(f"Attempting runtime discovery for error analysis: {parent} -> {child}")

        try:
            relationship = await self._discover(parent, child)
        except (EngineError, asyncio.TimeoutError) as e:
            logger.warning(f"Runtime discovery failed during error analysis: {e}")
            diagnosis.suggestions[:0] = [
                f"Runtime discovery unavailable: {e}",
                "Check service access and entity permissions",
            ]
            return

        if relationship is not None:
            diagnosis.suggestions[:0] = [
                f'Discovery found relationship: "{relationship.lookup_column}"',
                f"Confidence: {relationship.confidence.value} ({relationship.source.value})",
                f"Use this lookup column in your queries: {relationship.lookup_column} eq [parent-id]",
            ]
        else:
            diagnosis.suggestions[:0] = [
                f"Runtime discovery failed for {parent} -> {child}",
                "Possible reasons: no relationship exists, incorrect entity names, or permission issues",
            ]

    def _record(self, diagnosis: ErrorDiagnosis) -> ErrorDiagnosis:
        self._history.append(diagnosis)
        if diagnosis.is_classified:
            logger.warning(
                f"Classified failure (status={diagnosis.status_code}): "
                f"relationship={diagnosis.is_relationship_error}, field={diagnosis.is_field_error}, "
                f"entity={diagnosis.is_entity_error}, permission={diagnosis.is_permission_error}"
            )
        else:
            logger.warning(f"Unclassified failure (status={diagnosis.status_code}): {diagnosis.message}")
        return diagnosis

    async def describe(
        self,
        response: Union[FailedResponse, httpx.Response],
        context: Optional[ErrorContext] = None,
        diagnosis: Optional[ErrorDiagnosis] = None,
    ) -> str:
        """
        Human-readable report for a failed response.

        Pass an existing diagnosis to avoid classifying (and recording) twice.
        """
        failure = (
            FailedResponse.from_response(response)
            if isinstance(response, httpx.Response)
            else response
        )
        if diagnosis is None:
            diagnosis = await self.classify(failure, context)

        lines = [f"Service API Error: {failure.status_code} {failure.reason}".rstrip()]
        if context is not None:
            lines.append(f"Operation: {context.operation}")
            if context.entity_name:
                lines.append(f"Entity: {context.entity_name}")
            if context.query:
                lines.append(f"Query: {context.query}")
        if failure.url:
            lines.append(f"API: {failure.url}")

        if diagnosis.error_code is None and diagnosis.message is None and failure.body:
            lines.append(f"Raw Response: {failure.body}")
        if diagnosis.error_code:
            lines.append(f"Error Code: {diagnosis.error_code}")
        if diagnosis.message:
            lines.append(f"Message: {diagnosis.message}")

        if diagnosis.suggestions:
            lines.append("Suggestions:")
            lines.extend(f"  - {suggestion}" for suggestion in diagnosis.suggestions)

        if diagnosis.correlation_id:
            lines.append(f"Correlation ID: {diagnosis.correlation_id}")
        if diagnosis.request_id:
            lines.append(f"Request ID: {diagnosis.request_id}")
        if diagnosis.rate_limit_remaining or diagnosis.rate_limit_window:
            lines.append(
                f"Rate Limit: {diagnosis.rate_limit_remaining or 'N/A'} requests remaining, "
                f"{diagnosis.rate_limit_window or 'N/A'}s window"
            )

        lines.append(f"Time: {datetime.now().isoformat()}")
        return "\n".join(lines)

    def history(self, limit: Optional[int] = None) -> List[ErrorDiagnosis]:
        entries = list(self._history)
        return entries[-limit:] if limit else entries

    def clear_history(self) -> None:
        self._history.clear()
