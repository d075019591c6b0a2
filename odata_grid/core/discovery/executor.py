# odata_grid/core/discovery/executor.py
"""
QUERY EXECUTOR - Run query descriptors against the service

Every function here returns a value, never raises: validation failures,
a missing client, network errors, service errors and timeouts all come back
as a failed QueryResult.
"""

import asyncio
import logging
from typing import List, Optional

from odata_grid.core.errors import (
    ParseError,
    RemoteError,
    TransportError,
)
from odata_grid.core.schemas import (
    ConnectivityResult,
    FailureKind,
    QueryDescriptor,
    QueryResult,
)
from odata_grid.core.discovery.query_builder import validate_query

logger = logging.getLogger(__name__)

SERVICE_UNAVAILABLE = "Service client is not available"
DEFAULT_CONNECTIVITY_PROBE = "systemusers?$select=systemuserid&$top=1"


def _failed(
    descriptor: QueryDescriptor, error: str, kind: FailureKind, failure=None
) -> QueryResult:
    return QueryResult(
        entity_logical_name=descriptor.entity_logical_name,
        success=False,
        error=error,
        error_kind=kind,
        failure=failure,
    )


async def execute_query(
    descriptor: QueryDescriptor, client, timeout: Optional[float] = None
) -> QueryResult:
    """
    Execute a single query descriptor.

    Args:
        descriptor: Built (and ideally optimized) query descriptor
        client: ServiceClient, or None when running offline
        timeout: Optional per-call timeout in seconds

    Returns:
        QueryResult with entities on success, error details on failure
    """
    validation = validate_query(descriptor)
    if not validation.is_valid:
        return _failed(
            descriptor,
            f"Query validation failed: {', '.join(validation.errors)}",
            FailureKind.VALIDATION,
        )

    if client is None:
        return _failed(descriptor, SERVICE_UNAVAILABLE, FailureKind.UNAVAILABLE)

    logger.info(f"Executing query for {descriptor.entity_logical_name}: {descriptor.query_string}")

    try:
        response = await asyncio.wait_for(
            client.retrieve_multiple(descriptor.query_string, timeout=timeout), timeout
        )
    except asyncio.TimeoutError:
        logger.error(f"Query for {descriptor.entity_logical_name} timed out after {timeout}s")
        return _failed(descriptor, f"Query timed out after {timeout}s", FailureKind.TIMEOUT)
    except RemoteError as e:
        logger.error(f"Query failed for {descriptor.entity_logical_name}: {e}")
        return _failed(descriptor, str(e), FailureKind.REMOTE, failure=e.failure)
    except TransportError as e:
        logger.error(f"Query failed for {descriptor.entity_logical_name}: {e}")
        return _failed(descriptor, str(e), FailureKind.TRANSPORT)
    except ParseError as e:
        logger.error(f"Query failed for {descriptor.entity_logical_name}: {e}")
        return _failed(descriptor, str(e), FailureKind.PARSE)
    except Exception as e:
        logger.exception(f"Unexpected error querying {descriptor.entity_logical_name}")
        return _failed(descriptor, str(e) or e.__class__.__name__, FailureKind.TRANSPORT)

    entities = response["entities"]
    logger.info(f"Query successful: {len(entities)} records retrieved")

    total_count = response.get("total_count")
    return QueryResult(
        entities=entities,
        entity_logical_name=descriptor.entity_logical_name,
        total_count=total_count if total_count is not None else len(entities),
        next_page_token=response.get("next_link"),
        success=True,
    )


async def execute_batch(
    descriptors: List[QueryDescriptor],
    client,
    max_concurrency: int = 5,
    timeout: Optional[float] = None,
) -> List[QueryResult]:
    """
    Execute many descriptors with at most `max_concurrency` in flight.

    A slot frees up as soon as any query finishes, so one slow query never
    holds back the rest. Results come back index-aligned with the input.
    """
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")

    semaphore = asyncio.Semaphore(max_concurrency)

    async def run(descriptor: QueryDescriptor) -> QueryResult:
        async with semaphore:
            return await execute_query(descriptor, client, timeout=timeout)

    # gather preserves input order regardless of completion order
    return list(await asyncio.gather(*(run(descriptor) for descriptor in descriptors)))


async def test_connectivity(
    client,
    probe: str = DEFAULT_CONNECTIVITY_PROBE,
    timeout: Optional[float] = 10.0,
) -> ConnectivityResult:
    """Cheap query against an always-present collection."""
    if client is None:
        return ConnectivityResult(success=False, error=SERVICE_UNAVAILABLE)

    try:
        await asyncio.wait_for(client.retrieve_multiple(probe, timeout=timeout), timeout)
    except asyncio.TimeoutError:
        return ConnectivityResult(success=False, error=f"Connectivity probe timed out after {timeout}s")
    except (TransportError, RemoteError, ParseError) as e:
        logger.error(f"Service connectivity test failed: {e}")
        return ConnectivityResult(success=False, error=str(e))
    except Exception as e:
        logger.exception("Service connectivity test failed unexpectedly")
        return ConnectivityResult(success=False, error=str(e) or e.__class__.__name__)

    return ConnectivityResult(success=True)

