import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from odata_grid.core.config import settings
from odata_grid.core.errors import EngineError, SchemaNotFoundError
from odata_grid.core.schemas import (
    DatasetRequest,
    ErrorContext,
    FailureKind,
    QueryDescriptor,
    QueryResult,
)
from odata_grid.core.discovery import converter, executor
from odata_grid.core.discovery.query_builder import optimize_query, validate_query


# -----------------------------------------------------------------------------
# PIPELINE MODULE - Orchestration
# Purpose: Run request → query → rows → records in the right order, diagnose failures,
#          collect per-run logs, report engine health
# Why: One entry point for the API and for direct callers
# -----------------------------------------------------------------------------


class PipelineStatus(Enum):
    """Pipeline execution status."""

    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStep(Enum):
    """Individual pipeline steps."""

    BUILD = "build"
    VALIDATE = "validate"
    OPTIMIZE = "optimize"
    EXECUTE = "execute"
    CONVERT = "convert"
    DIAGNOSE = "diagnose"


# Configure logging for pipeline
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


class PipelineLogger:
    """Collects the step logs of one pipeline run."""

    def __init__(self, run_name: str):
        """
        Args:
            run_name: Label for the run, usually the target entity

        Example:
            pipeline_logger = PipelineLogger("task")
        """
        self.run_name = run_name
        self.start_time = datetime.now()
        self.logs = []

    def log(self, step: PipelineStep, message: str, level: str = "info"):
        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "step": step.value,
            "message": message,
            "level": level,
            "elapsed_seconds": (datetime.now() - self.start_time).total_seconds(),
        }
        self.logs.append(log_entry)

        # Also log to console
        if level == "error":
            logger.error(f"[{self.run_name}] {step.value}: {message}")
        elif level == "warning":
            logger.warning(f"[{self.run_name}] {step.value}: {message}")
        else:
            logger.info(f"[{self.run_name}] {step.value}: {message}")

    def get_logs(self) -> List[Dict[str, Any]]:
        return self.logs

    def get_summary(self) -> Dict[str, Any]:
        end_time = datetime.now()
        return {
            "run_name": self.run_name,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": (end_time - self.start_time).total_seconds(),
            "total_logs": len(self.logs),
        }


def _error_context(request: DatasetRequest, descriptor: QueryDescriptor) -> ErrorContext:
    return ErrorContext(
        operation="retrieveMultiple",
        entity_name=request.target_entity,
        query=descriptor.query_string,
        parent_entity=request.parent_entity if request.is_relationship_scoped else None,
        child_entity=request.target_entity if request.is_relationship_scoped else None,
    )


async def _build(
    request: DatasetRequest, engine, pipeline_logger: PipelineLogger, timeout: Optional[float]
) -> QueryDescriptor:
    pipeline_logger.log(PipelineStep.BUILD, f"Building query for {request.target_entity}")
    descriptor = await engine.builder.build(request, timeout=timeout)
    for warning in descriptor.warnings:
        pipeline_logger.log(PipelineStep.BUILD, warning, "warning")
    pipeline_logger.log(PipelineStep.BUILD, f"Query: {descriptor.query_string}")
    return descriptor


async def _complete(
    request: DatasetRequest,
    descriptor: QueryDescriptor,
    query_result: QueryResult,
    engine,
    pipeline_logger: PipelineLogger,
) -> Dict[str, Any]:
    """Convert a successful result, or diagnose a failed one."""
    outcome: Dict[str, Any] = {
        "status": PipelineStatus.FAILED,
        "descriptor": descriptor,
        "validation": validate_query(descriptor),
        "total_count": query_result.total_count,
        "next_page_token": query_result.next_page_token,
        "records": None,
        "diagnosis": None,
        "report": None,
        "error": query_result.error,
    }

    if query_result.success:
        pipeline_logger.log(
            PipelineStep.EXECUTE, f"Retrieved {len(query_result.entities)} rows"
        )
        try:
            record_set = await converter.convert_records(
                query_result.entities, request.target_entity, engine.schema_cache
            )
        except SchemaNotFoundError as e:
            pipeline_logger.log(PipelineStep.CONVERT, str(e), "error")
            outcome["error"] = str(e)
            return outcome

        pipeline_logger.log(
            PipelineStep.CONVERT,
            f"Converted {len(record_set.records)} records "
            f"({record_set.duplicate_count} duplicates, {record_set.skipped_count} skipped)",
        )
        outcome.update(status=PipelineStatus.COMPLETED, records=record_set)
        return outcome

    pipeline_logger.log(PipelineStep.EXECUTE, f"Query failed: {query_result.error}", "error")

    if query_result.error_kind == FailureKind.VALIDATION:
        outcome["report"] = query_result.error
        return outcome

    context = _error_context(request, descriptor)
    if query_result.failure is not None:
        diagnosis = await engine.classifier.classify(query_result.failure, context)
        report = await engine.classifier.describe(query_result.failure, context, diagnosis)
    else:
        diagnosis = await engine.classifier.classify_message(query_result.error or "", context)
        report = "\n".join([query_result.error or "Query failed"] + diagnosis.suggestions)

    pipeline_logger.log(
        PipelineStep.DIAGNOSE,
        f"{len(diagnosis.suggestions)} suggestions: {'; '.join(diagnosis.suggestions)}",
        "warning",
    )
    outcome.update(diagnosis=diagnosis, report=report)
    return outcome


async def run_dataset_pipeline(
    request: DatasetRequest, engine, timeout: Optional[float] = None
) -> Dict[str, Any]:
    """
    Run one dataset request end to end.

    Args:
        request: Dataset request from the grid
        engine: Engine (client + caches)
        timeout: Per network call timeout in seconds

    Returns:
        {status, descriptor, validation, records, diagnosis, report, logs, ...}

    Example flow:
        1. Build:    request → "tasks?$select=*&$filter=project_ref eq P-1"
        2. Validate: errors stop here, before any network call
        3. Optimize: drop $expand, add $count=false
        4. Execute:  rows or a failed result
        5. Convert:  rows → records keyed by primary id
           Diagnose: failure → classification + suggestions + report
    """
    pipeline_logger = PipelineLogger(request.target_entity)

    try:
        descriptor = await _build(request, engine, pipeline_logger, timeout)
    except EngineError as e:
        pipeline_logger.log(PipelineStep.BUILD, f"Build failed: {e}", "error")
        return {
            "status": PipelineStatus.FAILED,
            "error": str(e),
            "logs": pipeline_logger.get_logs(),
        }

    validation = validate_query(descriptor)
    if not validation.is_valid:
        pipeline_logger.log(
            PipelineStep.VALIDATE, f"Invalid query: {', '.join(validation.errors)}", "error"
        )
    for warning in validation.warnings:
        pipeline_logger.log(PipelineStep.VALIDATE, warning, "warning")

    optimized = optimize_query(descriptor)
    pipeline_logger.log(PipelineStep.OPTIMIZE, f"Optimized query: {optimized.query_string}")

    # Invalid descriptors come back failed without touching the network
    query_result = await executor.execute_query(optimized, engine.client, timeout=timeout)

    outcome = await _complete(request, optimized, query_result, engine, pipeline_logger)
    outcome["logs"] = pipeline_logger.get_logs()
    outcome["summary"] = pipeline_logger.get_summary()
    return outcome


async def run_batch_pipeline(
    requests: List[DatasetRequest],
    engine,
    max_concurrency: Optional[int] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Run many dataset requests with bounded concurrency.

    Results are index-aligned with `requests`; one failure never affects the others.
    """
    max_concurrency = max_concurrency or engine.settings.MAX_CONCURRENCY
    pipeline_logger = PipelineLogger("batch")
    pipeline_logger.log(
        PipelineStep.BUILD,
        f"Starting batch of {len(requests)} requests (max {max_concurrency} concurrent)",
    )

    async def build_one(request: DatasetRequest):
        try:
            return await engine.builder.build(request, timeout=timeout), None
        except EngineError as e:
            pipeline_logger.log(
                PipelineStep.BUILD, f"Build failed for {request.target_entity}: {e}", "error"
            )
            return None, str(e)

    # Schema and relationship lookups are single-flight, so building concurrently is safe
    built = await asyncio.gather(*(build_one(request) for request in requests))
    runnable = [optimize_query(descriptor) for descriptor, _ in built if descriptor is not None]

    optimized = iter(runnable)
    query_results = iter(
        await executor.execute_batch(
            runnable, engine.client, max_concurrency=max_concurrency, timeout=timeout
        )
    )

    results = []
    for request, (descriptor, build_error) in zip(requests, built):
        if descriptor is None:
            results.append({"status": PipelineStatus.FAILED, "error": build_error, "logs": []})
            continue

        item_logger = PipelineLogger(request.target_entity)
        outcome = await _complete(
            request, next(optimized), next(query_results), engine, item_logger
        )
        outcome["logs"] = item_logger.get_logs()
        results.append(outcome)

    failed = sum(1 for outcome in results if outcome["status"] == PipelineStatus.FAILED)
    pipeline_logger.log(
        PipelineStep.EXECUTE,
        f"Batch finished: {len(results) - failed} succeeded, {failed} failed",
        "warning" if failed else "info",
    )

    return {
        "status": PipelineStatus.COMPLETED if failed == 0 else PipelineStatus.FAILED,
        "succeeded": len(results) - failed,
        "failed": failed,
        "results": results,
        "logs": pipeline_logger.get_logs(),
    }


async def discover_relationship(
    engine, parent_entity: str, child_entity: str, timeout: Optional[float] = None
) -> Dict[str, Any]:
    """
    Resolve parent → child through the engine's resolver.

    Raises:
        InvalidEntityNameError: parent or child name is blank
    """
    pipeline_logger = PipelineLogger(f"{parent_entity}->{child_entity}")
    pipeline_logger.log(PipelineStep.BUILD, "Discovering relationship")

    relationship = await engine.resolver.resolve(parent_entity, child_entity, timeout=timeout)

    if relationship is None:
        pipeline_logger.log(PipelineStep.BUILD, "No relationship found", "warning")
        return {
            "status": PipelineStatus.FAILED,
            "relationship": None,
            "logs": pipeline_logger.get_logs(),
        }

    pipeline_logger.log(
        PipelineStep.BUILD,
        f"Found {relationship.lookup_column} "
        f"(confidence={relationship.confidence.value}, source={relationship.source.value})",
    )
    return {
        "status": PipelineStatus.COMPLETED,
        "relationship": relationship,
        "filter_example": f"{relationship.lookup_column} eq [parent-id]",
        "logs": pipeline_logger.get_logs(),
    }


async def get_engine_health(engine) -> Dict[str, Any]:
    """
    Connectivity probe plus cache statistics.

    Returns:
        {"overall_status": "healthy" | "unhealthy", "checks": [...], "caches": {...}, "timestamp": ...}
    """
    health_status: Dict[str, Any] = {
        "overall_status": "healthy",
        "checks": [],
        "caches": {
            "schemas": engine.schema_cache.stats(),
            "relationships": len(engine.resolver.discovered()),
            "diagnoses": len(engine.classifier.history()),
        },
        "timestamp": datetime.now().isoformat(),
    }

    connectivity = await executor.test_connectivity(
        engine.client,
        probe=engine.settings.CONNECTIVITY_PROBE,
        timeout=engine.settings.REQUEST_TIMEOUT_SECONDS,
    )
    if connectivity.success:
        health_status["checks"].append(
            {
                "name": "service_connectivity",
                "status": "pass",
                "message": "Service connection successful",
            }
        )
    else:
        health_status["checks"].append(
            {
                "name": "service_connectivity",
                "status": "fail",
                "message": f"Service connection failed: {connectivity.error}",
            }
        )
        health_status["overall_status"] = "unhealthy"

    return health_status
