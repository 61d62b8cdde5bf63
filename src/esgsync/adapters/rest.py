"""REST adapter for the managed backend's table and function endpoints."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, cast

import httpx

from esgsync.errors import BackendError
from esgsync.types import Writer

logger = logging.getLogger(__name__)


def _eq_params(filters: Mapping[str, Any] | None) -> dict[str, str]:
    """Translate {column: value} into PostgREST equality query params."""
    return {column: f"eq.{value}" for column, value in (filters or {}).items()}


class AsyncRestBackend:
    """Async client for the backend's table REST API and serverless functions."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Send a request and decode its JSON body, raising on failure."""
        logger.debug("%s %s params=%s", method, endpoint, params)
        response = await self._client.request(
            method, endpoint, params=params, json=body, headers=headers
        )
        if not response.is_success:
            try:
                payload = response.json()
                error = payload.get("message") or payload.get("error") or "Request failed"
            except (ValueError, AttributeError):
                error = response.text or "Request failed"
            raise BackendError(response.status_code, error)
        if not response.content:
            return None
        return response.json()

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch rows of a table matching equality filters."""
        params = {"select": columns, **_eq_params(filters)}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        rows = await self._request("GET", f"/rest/v1/{table}", params=params)
        return cast(list[dict[str, Any]], rows or [])

    async def insert(
        self, table: str, rows: dict[str, Any] | list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Insert one or more rows, returning them as stored."""
        created = await self._request(
            "POST",
            f"/rest/v1/{table}",
            body=rows,
            headers={"Prefer": "return=representation"},
        )
        return cast(list[dict[str, Any]], created or [])

    async def update(
        self, table: str, match: Mapping[str, Any], values: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Update the rows matching ``match`` with ``values``."""
        if not match:
            raise ValueError("update requires at least one match column")
        updated = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=_eq_params(match),
            body=values,
            headers={"Prefer": "return=representation"},
        )
        return cast(list[dict[str, Any]], updated or [])

    async def delete(self, table: str, match: Mapping[str, Any]) -> None:
        """Delete the rows matching ``match``."""
        if not match:
            raise ValueError("delete requires at least one match column")
        await self._request("DELETE", f"/rest/v1/{table}", params=_eq_params(match))

    async def invoke_function(
        self, name: str, body: dict[str, Any] | None = None
    ) -> Any:
        """Call a serverless function and return its decoded JSON result."""
        return await self._request("POST", f"/functions/v1/{name}", body=body or {})

    def writer_for(self, table: str, *, id_column: str = "id") -> Writer:
        """Adapt :meth:`update` into an auto-save writer for one table."""

        async def write(record_id: str, update: dict[str, Any]) -> Any:
            return await self.update(table, {id_column: record_id}, update)

        return write

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
