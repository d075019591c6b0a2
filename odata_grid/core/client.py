# odata_grid/core/client.py
"""
SERVICE CLIENT - Talk to the remote entity service

Purpose:
    1. Run read-only list queries ("tasks?$select=*&$top=25")
    2. Fetch entity definitions (schema introspection)
    3. Map every failure onto the engine's error taxonomy

Data Flow:
    query string → GET → JSON body → {"entities", "next_link", "total_count"}
                     ↘ httpx error  → TransportError (bad URLs and broken streams too)
                     ↘ 4xx / 5xx    → RemoteError(FailedResponse)
                     ↘ not JSON     → ParseError
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from odata_grid.core.errors import ParseError, RemoteError, TransportError
from odata_grid.core.schemas import FailedResponse
from odata_grid.core.discovery.query_builder import build_entity_definition_path

logger = logging.getLogger(__name__)

NEXT_LINK_KEY = "@odata.nextLink"
COUNT_KEY = "@odata.count"


def extract_error_message(body: str) -> Optional[str]:
    """Pull error.message out of an OData error payload, if there is one."""
    try:
        data = json.loads(body) if body else None
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return data["error"].get("message")
    return None


class ServiceClient:
    """
    Thin async wrapper around one httpx.AsyncClient.

    Args:
        base_url: Service root, e.g. "https://org.example.com"
        api_path: REST prefix, e.g. "/api/data/v9.2"
        access_token: Optional bearer token
        timeout: Default request timeout in seconds
        http_client: Pre-built httpx client (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_path: str = "",
        access_token: Optional[str] = None,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/") + "/" + api_path.strip("/")
        headers = {
            "Accept": "application/json",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
            "Prefer": 'odata.include-annotations="*"',
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        self._http = http_client or httpx.AsyncClient(
            base_url=self.base_url.rstrip("/") + "/",
            headers=headers,
            timeout=timeout,
        )
        self._owns_http = http_client is None

    async def _get(self, path: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        request_kwargs: Dict[str, Any] = {}
        if timeout is not None:
            request_kwargs["timeout"] = timeout

        try:
            response = await self._http.get(path.lstrip("/"), **request_kwargs)
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as e:
            logger.error(f"Request to {path} failed: {e}")
            raise TransportError(str(e) or e.__class__.__name__) from e

        if response.is_error:
            failure = FailedResponse.from_response(response)
            message = extract_error_message(failure.body)
            detail = f": {message}" if message else ""
            raise RemoteError(
                failure,
                f"Service error {response.status_code} {response.reason_phrase}{detail}",
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ParseError(f"Response from {path} is not valid JSON") from e

        if not isinstance(data, dict):
            raise ParseError(f"Unexpected response format: {type(data).__name__}")
        return data

    async def retrieve_multiple(
        self, query_string: str, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Run a list query.

        Args:
            query_string: Collection plus options, e.g. "tasks?$select=*&$top=5"
            timeout: Per-call timeout override in seconds

        Returns:
            {"entities": [...], "next_link": str | None, "total_count": int | None}
        """
        data = await self._get(query_string, timeout)
        entities = data.get("value")
        if not isinstance(entities, list):
            raise ParseError("List response is missing the 'value' array")

        return {
            "entities": entities,
            "next_link": data.get(NEXT_LINK_KEY),
            "total_count": data.get(COUNT_KEY),
        }

    async def get_entity_definition(
        self, entity_logical_name: str, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """Fetch the entity definition with its attributes expanded."""
        return await self._get(build_entity_definition_path(entity_logical_name), timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
