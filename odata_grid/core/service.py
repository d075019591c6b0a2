# odata_grid/core/service.py
"""
ENGINE - Wire the discovery components together

One Engine per service connection. It owns the client and the two caches
(schemas, relationships); everything else is stateless and borrows them.

    ServiceClient ─┬─ EntitySchemaCache ── RelationshipResolver ─┐
                   │                                              ├─ QueryBuilder
                   └──────────────────────────────────────────────┘
    ErrorClassifier(discover=resolver.resolve)   # refresh=True; only if runtime discovery is enabled
"""

import logging
from functools import partial
from typing import Optional

import httpx
from fastapi import Request

from odata_grid.core.client import ServiceClient
from odata_grid.core.config import Settings, settings as default_settings
from odata_grid.core.discovery.diagnostics import ErrorClassifier
from odata_grid.core.discovery.query_builder import QueryBuilder
from odata_grid.core.discovery.relationships import RelationshipResolver
from odata_grid.core.discovery.schema_cache import EntitySchemaCache

logger = logging.getLogger(__name__)


class Engine:
    def __init__(
        self,
        settings: Settings,
        client: Optional[ServiceClient],
        schema_cache: EntitySchemaCache,
        resolver: RelationshipResolver,
        builder: QueryBuilder,
        classifier: ErrorClassifier,
    ):
        self.settings = settings
        self.client = client
        self.schema_cache = schema_cache
        self.resolver = resolver
        self.builder = builder
        self.classifier = classifier

    def clear_caches(self) -> None:
        """Drop cached schemas and relationships; the next lookup refetches."""
        self.schema_cache.clear()
        self.resolver.clear()
        logger.info("Engine caches cleared")

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()


def build_engine(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Engine:
    """
    Build an Engine from settings.

    Args:
        settings: Defaults to the process-wide settings
        http_client: Pre-built httpx client (tests pass one with a MockTransport)
    """
    settings = settings or default_settings

    client = ServiceClient(
        base_url=settings.SERVICE_URL,
        api_path=settings.API_PATH,
        access_token=settings.ACCESS_TOKEN,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        http_client=http_client,
    )
    schema_cache = EntitySchemaCache(
        client,
        ttl_seconds=settings.SCHEMA_CACHE_TTL_SECONDS,
        wait_timeout=settings.SCHEMA_WAIT_TIMEOUT_SECONDS,
    )
    resolver = RelationshipResolver(
        schema_cache, client, sample_size=settings.RECORD_SAMPLE_SIZE
    )
    builder = QueryBuilder(
        schema_cache, resolver, local_development=settings.LOCAL_DEVELOPMENT
    )
    classifier = ErrorClassifier(
        discover=(
            partial(resolver.resolve, refresh=True)
            if settings.ENABLE_RUNTIME_DISCOVERY
            else None
        ),
        history_limit=settings.ERROR_HISTORY_LIMIT,
    )

    logger.info(f"Engine built for {client.base_url}")
    return Engine(settings, client, schema_cache, resolver, builder, classifier)


# Dependency
def get_engine(request: Request) -> Engine:
    return request.app.state.engine
