"""
hetzner_k3s/cloud/client.py

An asynchronous Hetzner Cloud API client exposing generic collection calls:
list (with pagination), get, create, delete and resource actions.

Only idempotent reads are retried, and only on connection-level errors;
mutating calls surface the provider's error payload immediately.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

import aiohttp

from hetzner_k3s.models.config import HetznerSettings
from hetzner_k3s.models.validator import validate_type
from hetzner_k3s.utils.async_retry import async_retry


class HetznerAPIError(RuntimeError):
    """A non-2xx response from the Hetzner API.

    Attributes:
        status (int): HTTP status code.
        payload (Dict[str, Any]): Decoded response body (the 'error' object
            when present).
    """

    def __init__(self, method: str, path: str, status: int, payload: Dict[str, Any]):
        error = payload.get("error") if isinstance(payload.get("error"), dict) else payload
        super().__init__(f"{method} {path} failed with {status}: {error}")
        self.status = status
        self.payload = payload


class HetznerNotFoundError(HetznerAPIError):
    """404 from the Hetzner API."""


def _is_connection_error(exc: Exception) -> bool:
    return isinstance(exc, aiohttp.ClientConnectionError)


class AsyncHetznerClient:
    """An asynchronous Hetzner Cloud client.

    Use as an async context manager; the aiohttp session is created on entry
    (or lazily) and closed on exit.
    """

    def __init__(self, settings: HetznerSettings) -> None:
        """
        Initialize the AsyncHetznerClient.

        Args:
            settings (HetznerSettings): Must carry a token.

        Raises:
            ValueError: If no API token is configured.
        """
        if not settings.token:
            raise ValueError(
                "No Hetzner API token: set HCLOUD_TOKEN or 'hetzner_token' in the config file."
            )
        self._api_url = settings.api_url.rstrip("/")
        self._token = settings.token
        self._timeout = aiohttp.ClientTimeout(total=settings.request_timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> AsyncHetznerClient:
        await self.ensure_session()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        """Ensure an aiohttp session is available, creating one if needed."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=self._timeout,
            )
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        session = await self.ensure_session()
        url = f"{self._api_url}{path}"
        async with session.request(method, url, params=params, json=payload) as resp:
            if resp.status == 204:
                return {}
            raw_js = await resp.json(content_type=None)
            js = validate_type(raw_js or {}, Dict[str, Any], context=f"{method} {path}")
            if resp.status == 404:
                raise HetznerNotFoundError(method, path, resp.status, js)
            if resp.status >= 400:
                raise HetznerAPIError(method, path, resp.status, js)
            return js

    @async_retry(retries=3, delay=1.0, noisy=True, retry_if=_is_connection_error)
    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def list(
        self, collection: str, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """List every object of a collection, following pagination.

        Args:
            collection (str): e.g. 'servers', 'ssh_keys'.
            params (Optional[Dict[str, Any]]): Query filters such as
                {'label_selector': 'cluster=foo'} or {'name': 'foo'}.
        """
        items: List[Dict[str, Any]] = []
        page: Optional[int] = 1
        while page is not None:
            query = dict(params or {})
            query.update({"page": page, "per_page": 50})
            js = await self._get(f"/{collection}", query)
            items += validate_type(
                js.get(collection, []), List[Dict[str, Any]], context=f"GET /{collection}"
            )
            pagination = (js.get("meta") or {}).get("pagination") or {}
            next_page = pagination.get("next_page")
            page = int(next_page) if next_page else None
        return items

    async def get(self, collection: str, resource_id: int) -> Dict[str, Any]:
        """Fetch one object; the singular key ('server' for 'servers') is unwrapped."""
        js = await self._get(f"/{collection}/{resource_id}")
        return validate_type(js.get(collection[:-1]), Dict[str, Any], context=collection)

    async def create(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a new object; returns the full response body."""
        return await self._request("POST", f"/{collection}", payload=payload)

    async def delete(self, collection: str, resource_id: int) -> None:
        await self._request("DELETE", f"/{collection}/{resource_id}")

    async def action(
        self,
        collection: str,
        resource_id: int,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """POST /{collection}/{id}/actions/{action}."""
        return await self._request(
            "POST", f"/{collection}/{resource_id}/actions/{action}", payload=payload or {}
        )
